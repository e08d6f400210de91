"""Pydantic models: csr.json (CSR document) and ca-config.json (signing policy document)."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class _Document(BaseModel):
    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True, indent=2) + "\n"


# -------------------- CSR DOCUMENT -------------------- #

class KeySpec(_Document):
    algo: str = "rsa"
    size: int = 2048      # RSA bits, or 256/384 for ECDSA curves


class NameEntry(_Document):
    C: Optional[str] = None     # country
    ST: Optional[str] = None    # state / province
    L: Optional[str] = None     # locality
    O: Optional[str] = None     # organization
    OU: Optional[str] = None    # organizational unit


class CaSection(_Document):
    expiry: str           # e.g. "87600h"


class CsrDocument(_Document):
    CN: str
    key: KeySpec
    names: List[NameEntry] = Field(default_factory=list)
    ca: Optional[CaSection] = None
    hosts: Optional[List[str]] = None


# -------------------- SIGNING POLICY DOCUMENT -------------------- #

class CaConstraint(_Document):
    is_ca: bool = True
    max_path_len: Optional[int] = None
    max_path_len_zero: bool = False


class ProfileDocument(_Document):
    usages: List[str] = Field(default_factory=list)
    expiry: Optional[str] = None
    ca_constraint: Optional[CaConstraint] = None


class DefaultDocument(_Document):
    expiry: str


class SigningDocument(_Document):
    default: DefaultDocument
    profiles: Dict[str, ProfileDocument] = Field(default_factory=dict)


class CaConfigDocument(_Document):
    signing: SigningDocument
