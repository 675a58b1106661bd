"""
VaultStore Exceptions.

Every error raised by the engine derives from ``VaultStoreError``.

Security Note:
    ``InvalidKey`` and ``DecryptionFailed`` carry the same user-facing
    message. Callers must not surface which of the two occurred.
"""
from typing import Optional


class VaultStoreError(Exception):
    """Base class for vault storage errors."""

    message: str = "Vault storage error"

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


class ValidationError(VaultStoreError):
    """Malformed vault snapshot or item. Never retried."""

    message = "Invalid vault data"


class KeyDerivationFailed(VaultStoreError):
    """The key derivation primitive is unavailable or failed."""

    message = "Failed to derive encryption key"


class UnlockError(VaultStoreError):
    """Wrong password or corrupted ciphertext.

    Subclasses exist for internal handling only; ``str()`` is identical
    for all of them.
    """

    message = "Cannot unlock vault"

    def __init__(self, message: Optional[str] = None, **details):
        # user-facing text is fixed regardless of the cause
        super().__init__(UnlockError.message, **details)


class InvalidKey(UnlockError):
    """Derived key does not match the payload key id."""


class DecryptionFailed(UnlockError):
    """Authentication tag check failed or the payload is malformed."""


class DecompressionFailed(VaultStoreError):
    """Compressed stream is corrupt or unrecognized."""

    message = "Failed to decompress vault data"


class ChecksumMismatch(VaultStoreError):
    """Delta or blob integrity check failed."""

    message = "Checksum verification failed"


class TransportError(VaultStoreError):
    """Base class for blob transport errors."""

    message = "Blob transport error"


class TransientBlobError(TransportError):
    """A retryable blob store failure (timeouts, 5xx, throttling)."""

    message = "Transient blob store failure"


class TransportFailed(TransportError):
    """Retries were exhausted. ``__cause__`` holds the last error."""

    message = "Blob transport failed"

    def __init__(self, operation: str, attempts: int, message: Optional[str] = None):
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            message or f"Blob {operation} failed after {attempts} attempt(s)",
            operation=operation,
            attempts=attempts,
        )


class PayloadTooLarge(TransportError):
    """Blob exceeds the configured maximum size."""

    message = "Payload too large"


class BlobNotFound(TransportError):
    """The blob store has no blob under this reference."""

    message = "Blob not found"


class BlobRejected(TransportError):
    """A well-formed rejection from the blob store (quota, auth, ...)."""

    message = "Blob store rejected the request"


class CacheError(VaultStoreError):
    """The persistent cache is unavailable."""

    message = "Local cache unavailable"


class VaultNotFound(VaultStoreError):
    """No ledger record for the vault."""

    message = "Vault not found"


class SessionExpired(VaultStoreError):
    """Session missing or expired."""

    message = "Session expired"


class PermissionDenied(VaultStoreError):
    """Session lacks the permission for this operation."""

    message = "Permission denied"
