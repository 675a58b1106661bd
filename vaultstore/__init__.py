"""VaultStore — Encrypted vault storage over a remote blob store.

Security Note (Threat Model):
    Vault snapshots are compressed and encrypted client-side before they
    leave the process; the blob store only ever sees ciphertext.
    The local cache holds decrypted snapshots so that repeated reads need
    no network round trip. Anyone able to read the cache file can read
    the vaults in it. Protecting that file is the host's responsibility.
"""
from .version import __version__
from .config import StorageConfig
from .exceptions import (
    VaultStoreError,
    ValidationError,
    KeyDerivationFailed,
    UnlockError,
    InvalidKey,
    DecryptionFailed,
    DecompressionFailed,
    ChecksumMismatch,
    TransportError,
    TransientBlobError,
    TransportFailed,
    PayloadTooLarge,
    BlobNotFound,
    BlobRejected,
    CacheError,
    VaultNotFound,
    SessionExpired,
    PermissionDenied,
)
from .models import (
    SecretItem,
    Folder,
    VaultSnapshot,
    EncryptedPayload,
    CompressionInfo,
    Change,
    DeltaUpdate,
    Permission,
    SessionRecord,
    CacheStats,
    StorageStats,
    AuditEvent,
)
from .crypto import VaultCipher, KeyDerivation
from .compression import Compressor
from .transport import BlobTransport, HttpBlobClient, MemoryBlobStore
from .delta import DeltaEngine
from .cache import PersistentCache, MemoryCache, HybridCache
from .audit import LoggingAuditSink, MemoryAuditLog
from .ledger import MemoryLedger
from .storage import VaultStorageService

__all__ = [
    "__version__",
    "StorageConfig",
    "VaultStorageService",
    "VaultCipher",
    "KeyDerivation",
    "Compressor",
    "BlobTransport",
    "HttpBlobClient",
    "MemoryBlobStore",
    "DeltaEngine",
    "PersistentCache",
    "MemoryCache",
    "HybridCache",
    "LoggingAuditSink",
    "MemoryAuditLog",
    "MemoryLedger",
    "SecretItem",
    "Folder",
    "VaultSnapshot",
    "EncryptedPayload",
    "CompressionInfo",
    "Change",
    "DeltaUpdate",
    "Permission",
    "SessionRecord",
    "CacheStats",
    "StorageStats",
    "AuditEvent",
    "VaultStoreError",
    "ValidationError",
    "KeyDerivationFailed",
    "UnlockError",
    "InvalidKey",
    "DecryptionFailed",
    "DecompressionFailed",
    "ChecksumMismatch",
    "TransportError",
    "TransientBlobError",
    "TransportFailed",
    "PayloadTooLarge",
    "BlobNotFound",
    "BlobRejected",
    "CacheError",
    "VaultNotFound",
    "SessionExpired",
    "PermissionDenied",
]
