"""Error taxonomy: input validation, policy, state and storage failures."""

from typing import Optional


class PKIError(Exception):
    """Base class for every error raised by pkitoolkit."""

    def __init__(self, message: str, value: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.value = value


# -------------------- INPUT VALIDATION -------------------- #

class InputValidationError(PKIError):
    """Bad subject, host or key parameters. Raised before any artifact is touched."""


class UnsupportedAlgorithm(InputValidationError):
    pass


class InvalidSubject(InputValidationError):
    pass


class InvalidHost(InputValidationError):
    pass


class DomainScopeViolation(InvalidHost):
    """Host is not the domain itself or exactly one label below it."""


class NoHostsForLeaf(InputValidationError):
    pass


# -------------------- POLICY -------------------- #

class PolicyError(PKIError):
    """Unknown or mismatched signing profile."""


class UnknownProfile(PolicyError):
    pass


class ProfilePolicyMismatch(PolicyError):
    pass


class NotACaRequest(PolicyError):
    pass


# -------------------- STATE -------------------- #

class StateError(PKIError):
    """Operation attempted in the wrong lifecycle state, or a broken chain."""


class AuthorityNotActive(StateError):
    pass


class BrokenChain(StateError):
    pass


class ChainVerificationError(StateError):
    pass


# -------------------- STORAGE -------------------- #

class StorageError(PKIError):
    """Artifact read/write/lock failure. Safe to retry once the cause is fixed."""


class LockTimeout(StorageError):
    pass


class ArtifactMissing(StorageError):
    pass
