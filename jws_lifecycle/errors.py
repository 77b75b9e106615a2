"""
Error taxonomy for the token lifecycle. Only ConfigurationError is meant to stop the process;
the others are caught at the collaborator seam and logged.
"""


class TokenLifecycleError(Exception):
    """Base class for token lifecycle errors."""


class TransientIOError(TokenLifecycleError):
    """Store read/write failed. In-memory state stays authoritative."""


class SigningError(TokenLifecycleError):
    """Signer could not produce a token. Rotation is deferred to the next tick."""


class CorruptRecordError(TokenLifecycleError):
    """A persisted record is missing fields or has unparsable values."""


class ConfigurationError(TokenLifecycleError):
    """Lifecycle policy is nonsensical (e.g. non-positive rotation period)."""
