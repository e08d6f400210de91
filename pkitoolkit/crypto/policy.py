"""
Signing profiles and the policy store (ca-config.json).

Usage names follow the cfssl vocabulary ("signing", "cert sign", "server auth", ...).
"""
import enum
import logging
import datetime
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, List, Optional

from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID

from pkitoolkit.common.documents import (
    CaConfigDocument, CaConstraint, DefaultDocument, ProfileDocument, SigningDocument,
)
from pkitoolkit.common.errors import PolicyError, UnknownProfile
from pkitoolkit.common.utils import format_expiry, parse_expiry

LOGGER = logging.getLogger(__name__)


class KeyUsage(str, enum.Enum):
    SIGNING = "signing"
    DIGITAL_SIGNATURE = "digital signature"
    CONTENT_COMMITMENT = "content commitment"
    KEY_ENCIPHERMENT = "key encipherment"
    KEY_AGREEMENT = "key agreement"
    DATA_ENCIPHERMENT = "data encipherment"
    CERT_SIGN = "cert sign"
    CRL_SIGN = "crl sign"
    SERVER_AUTH = "server auth"
    CLIENT_AUTH = "client auth"
    CODE_SIGNING = "code signing"
    EMAIL_PROTECTION = "email protection"
    OCSP_SIGNING = "ocsp signing"
    TIMESTAMPING = "timestamping"

    @classmethod
    def parse(cls, name: str) -> "KeyUsage":
        key = name.strip().lower()
        key = _USAGE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError as e:
            raise PolicyError(f"Unknown key usage '{name}'", value=name) from e


# older ca-config.json files spell "digital signature" as "digital signing"
_USAGE_ALIASES = {"digital signing": "digital signature", "s/mime": "email protection"}

_EKU_OIDS = {
    KeyUsage.SERVER_AUTH: ExtendedKeyUsageOID.SERVER_AUTH,
    KeyUsage.CLIENT_AUTH: ExtendedKeyUsageOID.CLIENT_AUTH,
    KeyUsage.CODE_SIGNING: ExtendedKeyUsageOID.CODE_SIGNING,
    KeyUsage.EMAIL_PROTECTION: ExtendedKeyUsageOID.EMAIL_PROTECTION,
    KeyUsage.OCSP_SIGNING: ExtendedKeyUsageOID.OCSP_SIGNING,
    KeyUsage.TIMESTAMPING: ExtendedKeyUsageOID.TIME_STAMPING,
}

INTERMEDIATE_CA = "intermediate_ca"
PEER = "peer"
SERVER = "server"
CLIENT = "client"


# -------------------- PROFILE -------------------- #

@dataclass(frozen=True)
class SigningProfile:
    name: str
    usages: FrozenSet[KeyUsage] = field(default_factory=frozenset)
    expiry: Optional[datetime.timedelta] = None     # None: inherit the default profile's
    is_ca: bool = False
    max_path_len: Optional[int] = None              # None: unlimited

    def __post_init__(self):
        object.__setattr__(self, "usages", frozenset(
            u if isinstance(u, KeyUsage) else KeyUsage.parse(u) for u in self.usages
        ))
        if self.max_path_len is not None and not self.is_ca:
            raise PolicyError(f"Profile '{self.name}': max_path_len requires a CA profile", value=self.name)
        if self.max_path_len is not None and self.max_path_len < 0:
            raise PolicyError(f"Profile '{self.name}': max_path_len must be >= 0", value=str(self.max_path_len))
        if self.expiry is not None and self.expiry <= datetime.timedelta(0):
            raise PolicyError(f"Profile '{self.name}': expiry must be positive", value=self.name)

    def key_usage(self) -> x509.KeyUsage:
        u = self.usages
        return x509.KeyUsage(
            digital_signature=bool(u & {KeyUsage.SIGNING, KeyUsage.DIGITAL_SIGNATURE}),
            content_commitment=KeyUsage.CONTENT_COMMITMENT in u,
            key_encipherment=KeyUsage.KEY_ENCIPHERMENT in u,
            data_encipherment=KeyUsage.DATA_ENCIPHERMENT in u,
            key_agreement=KeyUsage.KEY_AGREEMENT in u,
            key_cert_sign=KeyUsage.CERT_SIGN in u,
            crl_sign=KeyUsage.CRL_SIGN in u,
            encipher_only=False,
            decipher_only=False,
        )

    def extended_key_usage(self) -> Optional[x509.ExtendedKeyUsage]:
        oids = [oid for usage, oid in _EKU_OIDS.items() if usage in self.usages]
        return x509.ExtendedKeyUsage(oids) if oids else None

    def basic_constraints(self) -> x509.BasicConstraints:
        if not self.is_ca:
            return x509.BasicConstraints(ca=False, path_length=None)
        return x509.BasicConstraints(ca=True, path_length=self.max_path_len)

    # -------------------- document mapping -------------------- #

    def to_document(self) -> ProfileDocument:
        constraint = None
        if self.is_ca:
            constraint = CaConstraint(
                is_ca=True,
                max_path_len=self.max_path_len if self.max_path_len is not None else 0,
                max_path_len_zero=self.max_path_len == 0,
            )
        return ProfileDocument(
            usages=[u.value for u in sorted(self.usages, key=_usage_order)],
            expiry=format_expiry(self.expiry) if self.expiry else None,
            ca_constraint=constraint,
        )

    @classmethod
    def from_document(cls, name: str, doc: ProfileDocument) -> "SigningProfile":
        is_ca = bool(doc.ca_constraint and doc.ca_constraint.is_ca)
        max_path_len = None
        if is_ca:
            c = doc.ca_constraint
            # cfssl: a zero max_path_len means "unlimited" unless max_path_len_zero is set
            if c.max_path_len or c.max_path_len_zero:
                max_path_len = c.max_path_len or 0
        try:
            expiry = parse_expiry(doc.expiry) if doc.expiry else None
        except ValueError as e:
            raise PolicyError(f"Profile '{name}': {e}", value=doc.expiry) from e
        return cls(
            name=name,
            usages=frozenset(KeyUsage.parse(u) for u in doc.usages),
            expiry=expiry,
            is_ca=is_ca,
            max_path_len=max_path_len,
        )


def _usage_order(u: KeyUsage) -> int:
    return list(KeyUsage).index(u)


# -------------------- STORE -------------------- #

class SigningPolicyStore:
    """Named signing profiles plus a default; pre-populated with the four fixed profiles."""

    DEFAULT = "default"

    def __init__(self, default_expiry: datetime.timedelta,
                 intermediate_expiry: Optional[datetime.timedelta] = None):
        self._profiles: Dict[str, SigningProfile] = {}
        self._default = SigningProfile(name=self.DEFAULT, expiry=default_expiry)
        self._populate(intermediate_expiry or default_expiry)

    def _populate(self, intermediate_expiry: datetime.timedelta):
        base = {KeyUsage.SIGNING, KeyUsage.DIGITAL_SIGNATURE, KeyUsage.KEY_ENCIPHERMENT}
        self.register(INTERMEDIATE_CA, SigningProfile(
            name=INTERMEDIATE_CA,
            usages=frozenset(base | {KeyUsage.CERT_SIGN, KeyUsage.CRL_SIGN,
                                     KeyUsage.SERVER_AUTH, KeyUsage.CLIENT_AUTH}),
            expiry=intermediate_expiry,
            is_ca=True,
            max_path_len=0,
        ))
        self.register(PEER, SigningProfile(
            name=PEER, usages=frozenset(base | {KeyUsage.CLIENT_AUTH, KeyUsage.SERVER_AUTH}),
        ))
        self.register(SERVER, SigningProfile(
            name=SERVER, usages=frozenset(base | {KeyUsage.SERVER_AUTH}),
        ))
        self.register(CLIENT, SigningProfile(
            name=CLIENT, usages=frozenset(base | {KeyUsage.CLIENT_AUTH}),
        ))

    @property
    def default(self) -> SigningProfile:
        return self._default

    def register_default(self, profile: SigningProfile):
        if profile.expiry is None:
            raise PolicyError("Default profile must define an expiry")
        self._default = replace(profile, name=self.DEFAULT)

    def register(self, name: str, profile: SigningProfile):
        if not name or name == self.DEFAULT:
            raise PolicyError(f"Invalid profile name '{name}'", value=name)
        if profile.name != name:
            profile = replace(profile, name=name)
        self._profiles[name] = profile
        LOGGER.debug("Registered signing profile %s", name)

    def resolve(self, name: str) -> SigningProfile:
        """Return the named profile with the default's expiry filled in where it has none."""
        try:
            profile = self._profiles[name]
        except KeyError:
            raise UnknownProfile(
                f"Unknown signing profile '{name}', known profiles: {', '.join(self.names())}",
                value=name,
            ) from None
        if profile.expiry is None:
            profile = replace(profile, expiry=self._default.expiry)
        return profile

    def names(self) -> List[str]:
        return sorted(self._profiles)

    def __contains__(self, name: str) -> bool:
        return name in self._profiles

    # -------------------- ca-config.json -------------------- #

    def to_document(self) -> CaConfigDocument:
        profiles = {}
        for name in self.names():
            profile = self._profiles[name]
            doc = profile.to_document()
            if doc.expiry is None:
                doc.expiry = format_expiry(self._default.expiry)
            profiles[name] = doc
        return CaConfigDocument(signing=SigningDocument(
            default=DefaultDocument(expiry=format_expiry(self._default.expiry)),
            profiles=profiles,
        ))

    @classmethod
    def from_document(cls, doc: CaConfigDocument) -> "SigningPolicyStore":
        try:
            default_expiry = parse_expiry(doc.signing.default.expiry)
        except ValueError as e:
            raise PolicyError(f"Invalid default expiry: {e}", value=doc.signing.default.expiry) from e
        store = cls(default_expiry)
        for name, pdoc in doc.signing.profiles.items():
            store.register(name, SigningProfile.from_document(name, pdoc))
        return store
