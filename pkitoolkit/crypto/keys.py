"""
Key pair generation (RSA 2048/3072/4096, ECDSA P-256/P-384) and PEM helpers.
Private key bytes never leave the KeyPair except through private_pem().
"""
import logging
from dataclasses import dataclass, field
from typing import Tuple, Union

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from pkitoolkit.common.errors import UnsupportedAlgorithm

LOGGER = logging.getLogger(__name__)

RSA_SIZES = (2048, 3072, 4096)
EC_CURVES = {
    "P-256": ec.SECP256R1,
    "P-384": ec.SECP384R1,
}
# cfssl writes ECDSA keys as {"algo": "ecdsa", "size": 256}
_EC_SIZE_TO_CURVE = {256: "P-256", 384: "P-384"}


@dataclass(frozen=True)
class KeyPair:
    algorithm: str                      # "rsa" | "ecdsa"
    size: int                           # RSA modulus bits, or curve field size
    private_key: Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey] = field(repr=False)

    @property
    def public_key(self):
        return self.private_key.public_key()

    @property
    def curve(self):
        if self.algorithm != "ecdsa":
            return None
        return _EC_SIZE_TO_CURVE[self.size]

    def signature_hash(self) -> hashes.HashAlgorithm:
        """Hash used when this key signs certificates and CSRs."""
        if self.algorithm == "ecdsa" and self.size == 384:
            return hashes.SHA384()
        return hashes.SHA256()

    def private_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )


def key_parameters(algorithm: str, size_or_curve: Union[int, str]) -> Tuple[str, Union[int, str]]:
    """Normalize an algorithm/size pair: ("rsa", bits) or ("ecdsa", curve name). Raises UnsupportedAlgorithm."""
    algo = (algorithm or "").strip().lower()
    if algo == "rsa":
        size = _as_int(size_or_curve)
        if size not in RSA_SIZES:
            raise UnsupportedAlgorithm(
                f"unsupported RSA key size {size_or_curve!r}, expected one of {RSA_SIZES}",
                value=str(size_or_curve),
            )
        return "rsa", size
    if algo in ("ecdsa", "ec"):
        return "ecdsa", _curve_name(size_or_curve)
    raise UnsupportedAlgorithm(f"unsupported key algorithm {algorithm!r}", value=str(algorithm))


class KeyMaterialGenerator:
    """Creates key pairs for the supported algorithm/size combinations."""

    def generate(self, algorithm: str, size_or_curve: Union[int, str]) -> KeyPair:
        algo, size = key_parameters(algorithm, size_or_curve)
        if algo == "rsa":
            key = rsa.generate_private_key(public_exponent=65537, key_size=size)
            LOGGER.debug("Generated RSA-%d key", size)
            return KeyPair("rsa", size, key)

        key = ec.generate_private_key(EC_CURVES[size]())
        LOGGER.debug("Generated ECDSA %s key", size)
        return KeyPair("ecdsa", key.curve.key_size, key)


def load_private_key(pem: bytes) -> KeyPair:
    """Rebuild a KeyPair from a stored, unencrypted PEM private key."""
    key = serialization.load_pem_private_key(pem, password=None)
    if isinstance(key, rsa.RSAPrivateKey):
        return KeyPair("rsa", key.key_size, key)
    if isinstance(key, ec.EllipticCurvePrivateKey):
        if key.curve.key_size not in _EC_SIZE_TO_CURVE:
            raise UnsupportedAlgorithm(f"unsupported curve {key.curve.name}", value=key.curve.name)
        return KeyPair("ecdsa", key.curve.key_size, key)
    raise UnsupportedAlgorithm(f"unsupported key type {type(key).__name__}")


def _as_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise UnsupportedAlgorithm(f"invalid key size {value!r}", value=str(value)) from e


def _curve_name(value) -> str:
    if isinstance(value, str) and value.upper() in EC_CURVES:
        return value.upper()
    try:
        size = int(value)
    except (TypeError, ValueError):
        size = None
    if size in _EC_SIZE_TO_CURVE:
        return _EC_SIZE_TO_CURVE[size]
    raise UnsupportedAlgorithm(
        f"unsupported ECDSA curve {value!r}, expected one of {sorted(EC_CURVES)}",
        value=str(value),
    )
