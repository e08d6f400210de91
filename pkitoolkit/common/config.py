"""
Toolkit configuration.

Settings are read once from the environment (and an optional .env file) into an
immutable object that is passed to each component at construction.
"""

import os
import datetime
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from pkitoolkit.common.errors import UnsupportedAlgorithm
from pkitoolkit.common.utils import parse_expiry
from pkitoolkit.crypto.keys import key_parameters


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource_dir: str = os.path.join("resources", "certificate_authority")
    key_algo: str = "rsa"
    key_size: int = 2048
    root_ca_expiry: str = "87600h"
    int_ca_expiry: str = "43800h"
    leaf_expiry: str = "8670h"
    country: str = "US"
    state: str = "California"
    locality: str = "Sunnyvale"
    lock_timeout: float = 10.0

    @field_validator("root_ca_expiry", "int_ca_expiry", "leaf_expiry")
    @classmethod
    def _check_expiry(cls, v: str) -> str:
        parse_expiry(v)
        return v

    @field_validator("key_algo")
    @classmethod
    def _lower_algo(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("country")
    @classmethod
    def _check_country(cls, v: str) -> str:
        v = v.strip()
        if len(v) != 2:
            raise ValueError(f"country '{v}' must be a two-letter code")
        return v

    @model_validator(mode="after")
    def _check_key(self) -> "Settings":
        try:
            key_parameters(self.key_algo, self.key_size)
        except UnsupportedAlgorithm as e:
            raise ValueError(e.message) from e
        return self

    # -------------------- ENVIRONMENT -------------------- #

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None, **overrides) -> "Settings":
        """Build settings from PKI_* environment variables, loading .env if present."""
        load_dotenv(dotenv_path)
        env = {
            "resource_dir": os.getenv("PKI_RESOURCE_DIR"),
            "key_algo": os.getenv("PKI_KEY_ALGO"),
            "key_size": os.getenv("PKI_KEY_SIZE"),
            "root_ca_expiry": os.getenv("PKI_ROOT_CA_EXPIRY"),
            "int_ca_expiry": os.getenv("PKI_INT_CA_EXPIRY"),
            "leaf_expiry": os.getenv("PKI_LEAF_EXPIRY"),
            "country": os.getenv("PKI_COUNTRY"),
            "state": os.getenv("PKI_STATE"),
            "locality": os.getenv("PKI_LOCALITY"),
            "lock_timeout": os.getenv("PKI_LOCK_TIMEOUT"),
        }
        values = {k: v for k, v in env.items() if v is not None}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    # -------------------- DERIVED VALUES -------------------- #

    @property
    def root_ca_validity(self) -> datetime.timedelta:
        return parse_expiry(self.root_ca_expiry)

    @property
    def int_ca_validity(self) -> datetime.timedelta:
        return parse_expiry(self.int_ca_expiry)

    @property
    def leaf_validity(self) -> datetime.timedelta:
        return parse_expiry(self.leaf_expiry)
