"""
Certificate authorities.

A CertificateAuthority owns its KeyPair and certificate. Lifecycle:

    UNINITIALIZED -> SELF_SIGNED (root) | SIGNED_BY_PARENT (intermediate) -> ACTIVE

Only an ACTIVE authority signs subordinate requests.
"""
import enum
import logging
import datetime
import threading
from dataclasses import dataclass, field
from typing import Optional

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import serialization

from pkitoolkit.common.errors import (
    AuthorityNotActive, DomainScopeViolation, InputValidationError, NotACaRequest,
    ProfilePolicyMismatch, StateError,
)
from pkitoolkit.common.utils import fingerprint, now_utc
from pkitoolkit.crypto.csr import CertificateRequest, in_domain_scope
from pkitoolkit.crypto.keys import KeyPair
from pkitoolkit.crypto.policy import SigningProfile

LOGGER = logging.getLogger(__name__)

DEFAULT_ROOT_VALIDITY = datetime.timedelta(hours=87600)


# -------------------- ISSUED CERTIFICATE -------------------- #

@dataclass(frozen=True)
class IssuedCertificate:
    certificate: x509.Certificate
    issuer: Optional["IssuedCertificate"] = field(default=None, repr=False)   # None: self-signed
    profile_name: Optional[str] = None

    @property
    def serial_number(self) -> int:
        return self.certificate.serial_number

    @property
    def subject(self) -> x509.Name:
        return self.certificate.subject

    @property
    def common_name(self) -> Optional[str]:
        attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return attrs[0].value if attrs else None

    @property
    def not_before(self) -> datetime.datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime.datetime:
        return self.certificate.not_valid_after_utc

    @property
    def is_self_signed(self) -> bool:
        return self.certificate.issuer == self.certificate.subject

    @property
    def identity(self):
        """(issuer DER, serial): unique per issued certificate."""
        return self.certificate.issuer.public_bytes(), self.certificate.serial_number

    def _basic_constraints(self) -> Optional[x509.BasicConstraints]:
        try:
            return self.certificate.extensions.get_extension_for_class(x509.BasicConstraints).value
        except x509.ExtensionNotFound:
            return None

    @property
    def is_ca(self) -> bool:
        bc = self._basic_constraints()
        return bool(bc and bc.ca)

    @property
    def max_path_len(self) -> Optional[int]:
        bc = self._basic_constraints()
        return bc.path_length if bc and bc.ca else None

    @property
    def hosts(self):
        try:
            san = self.certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        except x509.ExtensionNotFound:
            return []
        return san.get_values_for_type(x509.DNSName)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.certificate)

    def to_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    @classmethod
    def from_pem(cls, pem: bytes, issuer: Optional["IssuedCertificate"] = None,
                 profile_name: Optional[str] = None) -> "IssuedCertificate":
        return cls(x509.load_pem_x509_certificate(pem), issuer, profile_name)


# -------------------- AUTHORITY -------------------- #

class AuthorityState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    SELF_SIGNED = "self_signed"
    SIGNED_BY_PARENT = "signed_by_parent"
    ACTIVE = "active"


class CertificateAuthority:
    def __init__(self, authority_id: str, key: KeyPair, domain: Optional[str] = None,
                 parent: Optional["CertificateAuthority"] = None):
        self.authority_id = authority_id
        self.domain = domain.lower().strip(".") if domain else None
        self.parent = parent
        self._key = key
        self._certificate: Optional[IssuedCertificate] = None
        self._state = AuthorityState.UNINITIALIZED
        self._lock = threading.Lock()

    def __repr__(self):
        return f"CertificateAuthority({self.authority_id!r}, state={self._state.value})"

    @property
    def state(self) -> AuthorityState:
        return self._state

    @property
    def certificate(self) -> IssuedCertificate:
        if self._certificate is None:
            raise AuthorityNotActive(f"Authority '{self.authority_id}' has no certificate yet")
        return self._certificate

    @property
    def key(self) -> KeyPair:
        return self._key

    @property
    def is_root(self) -> bool:
        return self.parent is None

    # -------------------- creation -------------------- #

    def self_sign(self, csr: CertificateRequest) -> IssuedCertificate:
        """Issue this authority's own root certificate (issuer == subject)."""
        if not csr.is_ca:
            raise NotACaRequest(
                f"Cannot self-sign non-CA request '{csr.subject.common_name}'",
                value=csr.subject.common_name,
            )
        if not self.is_root:
            raise StateError(f"Authority '{self.authority_id}' has a parent and cannot self-sign")
        self._require_state(AuthorityState.UNINITIALIZED)
        self._require_own_key(csr)

        name = csr.subject.to_x509_name()
        now = now_utc()
        validity = csr.ca_expiry or DEFAULT_ROOT_VALIDITY
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self._key.public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + validity)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ), critical=True)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(self._key.public_key), critical=False)
            .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(self._key.public_key), critical=False)
            .sign(self._key.private_key, self._key.signature_hash())
        )
        issued = IssuedCertificate(cert, issuer=None, profile_name=None)
        self._certificate = issued
        self._state = AuthorityState.SELF_SIGNED
        LOGGER.info("Root CA '%s' self-signed (serial %x)", self.authority_id, issued.serial_number)
        self._activate()
        return issued

    def accept(self, issued: IssuedCertificate):
        """Install a certificate issued to this authority by its parent."""
        if self.is_root:
            raise StateError(f"Root authority '{self.authority_id}' must self-sign")
        self._require_state(AuthorityState.UNINITIALIZED)
        if not issued.is_ca:
            raise ProfilePolicyMismatch(
                f"Certificate for '{self.authority_id}' is not a CA certificate",
                value=issued.common_name,
            )
        if _public_der(issued.certificate.public_key()) != _public_der(self._key.public_key):
            raise InputValidationError(
                f"Certificate for '{self.authority_id}' does not match the authority key",
                value=issued.common_name,
            )
        self._certificate = issued
        self._state = AuthorityState.SIGNED_BY_PARENT
        self._activate()

    def _activate(self):
        self._state = AuthorityState.ACTIVE

    @classmethod
    def create_root(cls, authority_id: str, csr: CertificateRequest,
                    domain: Optional[str] = None) -> "CertificateAuthority":
        ca = cls(authority_id, csr.key, domain=domain)
        ca.self_sign(csr)
        return ca

    @classmethod
    def create_intermediate(cls, authority_id: str, csr: CertificateRequest,
                            parent: "CertificateAuthority", profile: SigningProfile,
                            domain: Optional[str] = None) -> "CertificateAuthority":
        ca = cls(authority_id, csr.key, domain=domain or parent.domain, parent=parent)
        ca.accept(parent.sign(csr, profile))
        return ca

    @classmethod
    def from_stored(cls, authority_id: str, key: KeyPair, certificate: IssuedCertificate,
                    domain: Optional[str] = None,
                    parent: Optional["CertificateAuthority"] = None) -> "CertificateAuthority":
        """Rehydrate an already-issued authority straight into ACTIVE."""
        ca = cls(authority_id, key, domain=domain, parent=parent)
        if _public_der(certificate.certificate.public_key()) != _public_der(key.public_key):
            raise InputValidationError(
                f"Stored certificate for '{authority_id}' does not match its key",
                value=authority_id,
            )
        ca._certificate = certificate
        ca._state = AuthorityState.SELF_SIGNED if parent is None else AuthorityState.SIGNED_BY_PARENT
        ca._activate()
        return ca

    # -------------------- signing -------------------- #

    def sign(self, csr: CertificateRequest, profile: SigningProfile) -> IssuedCertificate:
        """Issue a subordinate certificate for csr under profile."""
        with self._lock:
            self._require_state(AuthorityState.ACTIVE)
            self._check_policy(csr, profile)
            if not csr.is_ca and self.domain:
                for host in csr.hosts:
                    if not in_domain_scope(host, self.domain):
                        raise DomainScopeViolation(
                            f"Invalid host '{host}': must be '{self.domain}' or exactly one subdomain of it",
                            value=host,
                        )
            if profile.expiry is None:
                raise ProfilePolicyMismatch(f"Profile '{profile.name}' has no expiry", value=profile.name)

            now = now_utc()
            issuer_cert = self.certificate.certificate
            builder = (
                x509.CertificateBuilder()
                .subject_name(csr.subject.to_x509_name())
                .issuer_name(issuer_cert.subject)
                .public_key(csr.public_key)
                .serial_number(x509.random_serial_number())
                .not_valid_before(now)
                .not_valid_after(now + profile.expiry)
                .add_extension(profile.basic_constraints(), critical=True)
                .add_extension(profile.key_usage(), critical=True)
                .add_extension(x509.SubjectKeyIdentifier.from_public_key(csr.public_key), critical=False)
                .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(self._key.public_key), critical=False)
            )
            eku = profile.extended_key_usage()
            if eku is not None:
                builder = builder.add_extension(eku, critical=False)
            if csr.hosts:
                builder = builder.add_extension(
                    x509.SubjectAlternativeName([x509.DNSName(h) for h in csr.hosts]),
                    critical=False,
                )
            cert = builder.sign(self._key.private_key, self._key.signature_hash())

        issued = IssuedCertificate(cert, issuer=self.certificate, profile_name=profile.name)
        LOGGER.info(
            "'%s' signed '%s' under profile %s (serial %x)",
            self.authority_id, csr.subject.common_name, profile.name, issued.serial_number,
        )
        return issued

    def _check_policy(self, csr: CertificateRequest, profile: SigningProfile):
        if csr.is_ca and not profile.is_ca:
            raise ProfilePolicyMismatch(
                f"CA request '{csr.subject.common_name}' needs a CA profile, got '{profile.name}'",
                value=profile.name,
            )
        if not csr.is_ca and profile.is_ca:
            raise ProfilePolicyMismatch(
                f"Leaf request '{csr.subject.common_name}' cannot use CA profile '{profile.name}'",
                value=profile.name,
            )
        if csr.is_ca and self.certificate.max_path_len == 0:
            raise ProfilePolicyMismatch(
                f"Authority '{self.authority_id}' has path length 0 and cannot sign CA requests",
                value=csr.subject.common_name,
            )

    def _require_state(self, expected: AuthorityState):
        if self._state != expected:
            error = AuthorityNotActive if expected == AuthorityState.ACTIVE else StateError
            raise error(
                f"Authority '{self.authority_id}' is {self._state.value}, expected {expected.value}",
                value=self.authority_id,
            )

    def _require_own_key(self, csr: CertificateRequest):
        if _public_der(csr.public_key) != _public_der(self._key.public_key):
            raise InputValidationError(
                f"Request '{csr.subject.common_name}' was not made with the key of '{self.authority_id}'",
                value=csr.subject.common_name,
            )


def _public_der(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
