"""
Certificate signing requests.

SubjectInfo + KeyPair + hosts -> CertificateRequest, with the host rules:
  * every host is a DNS name, or a "*." wildcard of one
  * under a domain, a host is the domain itself or exactly one label below it
"""
import re
import logging
import datetime
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import serialization

from pkitoolkit.common.documents import CaSection, CsrDocument, KeySpec, NameEntry
from pkitoolkit.common.errors import (
    DomainScopeViolation, InvalidHost, InvalidSubject, NoHostsForLeaf,
)
from pkitoolkit.common.utils import format_expiry, parse_expiry
from pkitoolkit.crypto.keys import KeyPair

LOGGER = logging.getLogger(__name__)

_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")
_TRIM = " \t,;."


# -------------------- SUBJECT -------------------- #

@dataclass(frozen=True)
class SubjectInfo:
    common_name: str
    organization: Optional[str] = None
    organizational_unit: Optional[str] = None
    country: Optional[str] = None
    state: Optional[str] = None
    locality: Optional[str] = None

    def to_x509_name(self) -> x509.Name:
        attrs = []
        for oid, value in (
            (NameOID.COUNTRY_NAME, self.country),
            (NameOID.STATE_OR_PROVINCE_NAME, self.state),
            (NameOID.LOCALITY_NAME, self.locality),
            (NameOID.ORGANIZATION_NAME, self.organization),
            (NameOID.ORGANIZATIONAL_UNIT_NAME, self.organizational_unit),
        ):
            if value:
                attrs.append(x509.NameAttribute(oid, value))
        attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, self.common_name))
        return x509.Name(attrs)

    def to_name_entry(self) -> NameEntry:
        return NameEntry(
            C=self.country, ST=self.state, L=self.locality,
            O=self.organization, OU=self.organizational_unit,
        )

    @classmethod
    def from_document(cls, doc: CsrDocument) -> "SubjectInfo":
        entry = doc.names[0] if doc.names else NameEntry()
        return cls(
            common_name=doc.CN,
            organization=entry.O,
            organizational_unit=entry.OU,
            country=entry.C,
            state=entry.ST,
            locality=entry.L,
        )


def check_country(country: Optional[str]) -> None:
    """x509 countryName is a two-letter code."""
    if country is not None and len(country) != 2:
        raise InvalidSubject(f"Invalid subject: country '{country}' must be a two-letter code", value=country)


# -------------------- HOST RULES -------------------- #

def normalize_host(host: str) -> str:
    return host.strip().strip(_TRIM).lower()


def is_valid_dns_name(host: str) -> bool:
    """True for a syntactically valid DNS name, or "*." followed by one."""
    if not host or len(host) > 253:
        return False
    name = host[2:] if host.startswith("*.") else host
    if not name:
        return False
    return all(_LABEL_RE.match(label) for label in name.split("."))


def in_domain_scope(host: str, domain: str) -> bool:
    """host == domain, or host is exactly one label followed by domain."""
    host = host.lower()
    domain = domain.lower().strip(".")
    if host.startswith("*."):
        host = host[2:]
    if host == domain:
        return True
    suffix = "." + domain
    if not host.endswith(suffix):
        return False
    prefix = host[: -len(suffix)]
    return bool(prefix) and "." not in prefix


def check_host(host: str, domain: Optional[str] = None) -> None:
    if not is_valid_dns_name(host):
        raise InvalidHost(f"Invalid host '{host}': not a valid DNS name", value=host)
    if domain is not None and not in_domain_scope(host, domain):
        raise DomainScopeViolation(
            f"Invalid host '{host}': must be '{domain}' or exactly one subdomain of it",
            value=host,
        )


def parse_sans(sans: Optional[str]) -> List[str]:
    """Split a comma separated SAN list ("a.example.com, b.example.com")."""
    if not sans:
        return []
    return [s for s in (normalize_host(p) for p in sans.split(",")) if s]


def _dedupe(hosts: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for h in hosts:
        if h and h not in seen:
            seen.add(h)
            out.append(h)
    return out


# -------------------- REQUEST -------------------- #

@dataclass(frozen=True)
class CertificateRequest:
    subject: SubjectInfo
    key: KeyPair
    hosts: Tuple[str, ...] = ()
    is_ca: bool = False
    ca_expiry: Optional[datetime.timedelta] = None

    @property
    def public_key(self):
        return self.key.public_key

    def to_x509(self) -> x509.CertificateSigningRequest:
        """Build the PKCS#10 request, signed with the request's own key."""
        builder = x509.CertificateSigningRequestBuilder().subject_name(self.subject.to_x509_name())
        if self.is_ca:
            builder = builder.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        else:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(h) for h in self.hosts]),
                critical=False,
            )
        return builder.sign(self.key.private_key, self.key.signature_hash())

    def to_pem(self) -> bytes:
        return self.to_x509().public_bytes(serialization.Encoding.PEM)

    def to_document(self) -> CsrDocument:
        return CsrDocument(
            CN=self.subject.common_name,
            key=KeySpec(algo=self.key.algorithm, size=self.key.size),
            names=[self.subject.to_name_entry()],
            ca=CaSection(expiry=format_expiry(self.ca_expiry)) if self.is_ca and self.ca_expiry else None,
            hosts=None if self.is_ca else list(self.hosts),
        )

    @classmethod
    def from_document(cls, doc: CsrDocument, key: KeyPair) -> "CertificateRequest":
        is_ca = doc.ca is not None
        return cls(
            subject=SubjectInfo.from_document(doc),
            key=key,
            hosts=tuple(doc.hosts or ()),
            is_ca=is_ca,
            ca_expiry=parse_expiry(doc.ca.expiry) if is_ca else None,
        )


class CertificateRequestBuilder:
    """
    Validates and assembles CertificateRequests.
    With a domain set, every leaf host must satisfy the single-subdomain rule.
    """

    def __init__(self, domain: Optional[str] = None):
        self.domain = normalize_host(domain) if domain else None

    def leaf_hosts(self, common_name: str, hosts: Iterable[str] = (), wildcard: bool = False,
                   include_common_name: bool = True) -> List[str]:
        """[common_name, *.common_name (wildcard), *hosts], trimmed and deduplicated in order."""
        cn = normalize_host(common_name)
        ordered = []
        if include_common_name:
            ordered.append(cn)
        if wildcard:
            ordered.append(f"*.{cn}")
        ordered.extend(normalize_host(h) for h in hosts)
        return _dedupe(ordered)

    def validate(self, subject: SubjectInfo, hosts: Iterable[str] = (), is_ca: bool = False,
                 wildcard: bool = False, include_common_name: bool = True) -> List[str]:
        """Check the request invariants without any key material; returns the final host list."""
        if not subject.common_name or not subject.common_name.strip():
            raise InvalidSubject("Invalid subject: common name must not be empty", value=subject.common_name)
        check_country(subject.country)

        if is_ca:
            extra = [h for h in (hosts or ()) if h and h.strip()]
            if extra or wildcard:
                raise InvalidHost(
                    f"CA request '{subject.common_name}' must not carry hosts",
                    value=",".join(extra),
                )
            return []

        final_hosts = self.leaf_hosts(subject.common_name, hosts or (), wildcard, include_common_name)
        if not final_hosts:
            raise NoHostsForLeaf(f"Leaf request '{subject.common_name}' has no hosts")
        for h in final_hosts:
            check_host(h, self.domain)
        return final_hosts

    def build(self, subject: SubjectInfo, key: KeyPair, hosts: Iterable[str] = (),
              is_ca: bool = False, wildcard: bool = False, include_common_name: bool = True,
              ca_expiry: Optional[datetime.timedelta] = None) -> CertificateRequest:
        final_hosts = self.validate(subject, hosts, is_ca, wildcard, include_common_name)
        if is_ca:
            return CertificateRequest(subject=subject, key=key, is_ca=True, ca_expiry=ca_expiry)
        LOGGER.debug("CSR for %s with hosts %s", subject.common_name, final_hosts)
        return CertificateRequest(subject=subject, key=key, hosts=tuple(final_hosts), is_ca=False)
