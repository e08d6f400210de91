"""
Trust chain bundles (leaf first) and chain verification.
Only public certificates are read here; no private key ever reaches this module.
"""
import datetime
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from pkitoolkit.common.errors import BrokenChain, ChainVerificationError
from pkitoolkit.common.utils import now_utc
from pkitoolkit.crypto.ca import IssuedCertificate

# root -> intermediate -> leaf
MAX_CHAIN_LENGTH = 3


@dataclass(frozen=True)
class TrustChainBundle:
    certificates: Tuple[IssuedCertificate, ...]

    def __len__(self):
        return len(self.certificates)

    def __iter__(self) -> Iterator[IssuedCertificate]:
        return iter(self.certificates)

    def __getitem__(self, index) -> IssuedCertificate:
        return self.certificates[index]

    @property
    def leaf(self) -> IssuedCertificate:
        return self.certificates[0]

    def identities(self) -> List[tuple]:
        return [c.identity for c in self.certificates]

    def to_pem(self) -> bytes:
        return b"".join(c.to_pem() for c in self.certificates)


class ChainAssembler:
    """Walks issuer links upward from a certificate."""

    def assemble(self, leaf: IssuedCertificate, include_root: bool = True) -> TrustChainBundle:
        chain = [leaf]
        current = leaf
        while not current.is_self_signed:
            # without the root, stop at the first CA above the starting certificate
            if not include_root and current.is_ca and len(chain) > 1:
                break
            issuer = current.issuer
            if issuer is None:
                raise BrokenChain(
                    f"Issuer of '{current.common_name}' is not available",
                    value=current.common_name,
                )
            if current.certificate.issuer != issuer.certificate.subject:
                raise BrokenChain(
                    f"Issuer link of '{current.common_name}' points to '{issuer.common_name}' "
                    f"which did not issue it",
                    value=current.common_name,
                )
            chain.append(issuer)
            if len(chain) > MAX_CHAIN_LENGTH:
                raise BrokenChain(
                    f"Chain for '{leaf.common_name}' exceeds {MAX_CHAIN_LENGTH} certificates",
                    value=leaf.common_name,
                )
            current = issuer

        if not include_root and len(chain) > 1 and chain[-1].is_self_signed:
            chain.pop()
        return TrustChainBundle(tuple(chain))


# -------------------- VERIFICATION -------------------- #

def verify_signature(cert: IssuedCertificate, issuer: IssuedCertificate):
    """Check cert's signature against issuer's public key. Raises ChainVerificationError."""
    public_key = issuer.certificate.public_key()
    hash_algorithm = cert.certificate.signature_hash_algorithm
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(
                cert.certificate.signature,
                cert.certificate.tbs_certificate_bytes,
                padding.PKCS1v15(),
                hash_algorithm,
            )
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(
                cert.certificate.signature,
                cert.certificate.tbs_certificate_bytes,
                ec.ECDSA(hash_algorithm),
            )
        else:
            raise ChainVerificationError(
                f"Unsupported issuer key type for '{issuer.common_name}'",
                value=issuer.common_name,
            )
    except InvalidSignature as e:
        raise ChainVerificationError(
            f"BAD CERT: signature of '{cert.common_name}' not made by '{issuer.common_name}'",
            value=cert.common_name,
        ) from e


def verify_chain(bundle: TrustChainBundle, at: Optional[datetime.datetime] = None,
                 trust_anchor: Optional[IssuedCertificate] = None) -> bool:
    """
    Verify a leaf-first bundle: names link up, each signature is made by the next
    certificate, issuers are CAs and every certificate is valid at `at` (default: now).
    A bundle that stops below the root is checked against trust_anchor when given.
    """
    when = at or now_utc()
    certs = list(bundle)
    if not certs:
        raise ChainVerificationError("Empty chain")

    for position, cert in enumerate(certs):
        if cert.not_before > when or cert.not_after < when:
            raise ChainVerificationError(
                f"BAD CERT: '{cert.common_name}' (position {position}) is expired or not yet valid",
                value=cert.common_name,
            )
        if position + 1 < len(certs):
            issuer = certs[position + 1]
        elif cert.is_self_signed:
            issuer = cert
        elif trust_anchor is not None:
            issuer = trust_anchor
        else:
            continue

        if cert.certificate.issuer != issuer.certificate.subject:
            raise ChainVerificationError(
                f"BAD CERT: '{cert.common_name}' (position {position}) is not issued by '{issuer.common_name}'",
                value=cert.common_name,
            )
        if not issuer.is_ca:
            raise ChainVerificationError(
                f"BAD CERT: issuer '{issuer.common_name}' is not a CA",
                value=issuer.common_name,
            )
        verify_signature(cert, issuer)
    return True
