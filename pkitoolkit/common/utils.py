"""Helper signatures: now_utc, parse_expiry, format_expiry, fingerprint."""

import re
import datetime

from cryptography import x509
from cryptography.hazmat.primitives import hashes

_EXPIRY_RE = re.compile(r"^\s*(\d+)\s*([hms])\s*$")
_UNIT_SECONDS = {"h": 3600, "m": 60, "s": 1}


def now_utc() -> datetime.datetime:
    """Return the current time as an aware UTC datetime, truncated to seconds."""
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def parse_expiry(value) -> datetime.timedelta:
    """Parse a cfssl-style duration ("87600h", "30m", "45s") into a timedelta."""
    if isinstance(value, datetime.timedelta):
        return value
    m = _EXPIRY_RE.match(str(value))
    if not m:
        raise ValueError(f"invalid expiry {value!r}, expected e.g. '8760h'")
    amount = int(m.group(1))
    if amount <= 0:
        raise ValueError(f"invalid expiry {value!r}, must be positive")
    return datetime.timedelta(seconds=amount * _UNIT_SECONDS[m.group(2)])


def format_expiry(delta: datetime.timedelta) -> str:
    """Inverse of parse_expiry; whole hours are written as '<n>h'."""
    seconds = int(delta.total_seconds())
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def fingerprint(cert: x509.Certificate) -> str:
    """Return SHA-256 fingerprint of certificate as hex string."""
    return cert.fingerprint(hashes.SHA256()).hex()
