"""
VaultStorageService — encrypted vault storage over a remote blob store.

Provides the public API of the engine:
- ``upload_vault(vault, password)`` — validate, compress, encrypt, store
- ``download_vault(blob_ref, password)`` — cache → blob store → decrypt
- ``delete_vault(blob_ref)`` — remove from blob store and cache
- ``create_delta()`` / ``apply_delta()`` / ``upload_delta()`` /
  ``download_delta()`` — incremental updates
- ``get_storage_stats()`` / ``blob_available()`` / ``estimate_storage_cost()``
  — blob size and storage cost accounting
- ``save_vault()`` / ``load_vault()`` — ledger-backed convenience calls
- ``unlock()`` / ``lock()`` / ``authorize()`` — short-lived sessions

Lookup order for ``download_vault()``: cache (with password check) →
blob store. A failed stage never mutates the cache.

Security Note:
    Never log passwords, keys, plaintext or ciphertext values. Only log
    vault ids, blob references, sizes and durations. The service performs
    no locking: callers must not interleave a read and a write against the
    same blob reference.
"""
import time
import base64
import asyncio
import hashlib
import hmac
import logging
import secrets
from collections.abc import Mapping
from typing import Any, Callable, Optional, Sequence, Union

import orjson
import pydantic

from .audit import AuditSink, LoggingAuditSink
from .cache import HybridCache, MemoryCache, PersistentCache, VaultCache
from .compression import Compressor, sniff
from .config import StorageConfig
from .crypto import SALT_SIZE, VaultCipher, decode_payload, encode_payload
from .delta import DeltaEngine
from .exceptions import (
    CacheError,
    ChecksumMismatch,
    PermissionDenied,
    SessionExpired,
    TransportError,
    ValidationError,
    VaultNotFound,
    VaultStoreError,
)
from .ledger import Ledger
from .models import (
    AuditEvent,
    CacheStats,
    CompressionInfo,
    DeltaUpdate,
    EncryptedPayload,
    Permission,
    SessionRecord,
    StorageStats,
    VaultSnapshot,
    now_ms,
)
from .transport import BlobClient, BlobTransport, HttpBlobClient

logger = logging.getLogger("vaultstore")

VaultInput = Union[VaultSnapshot, Mapping[str, Any]]

DEFAULT_SESSION_TTL = 30 * 60  # seconds


def vault_context(vault_id: str) -> str:
    """Key context for full vault payloads."""
    return f"vault:{vault_id}"


def delta_context(vault_id: str) -> str:
    """Key context for delta payloads."""
    return f"delta:{vault_id}"


def session_key(user_id: str, vault_id: str) -> str:
    return f"{user_id}:{vault_id}"


class VaultStorageService:
    """Orchestrates validation, compression, encryption, transport and cache.

    Every collaborator is injected; use :meth:`from_config` to build the
    default object graph.
    """

    def __init__(
        self,
        transport: BlobTransport,
        cache: Optional[VaultCache] = None,
        cipher: Optional[VaultCipher] = None,
        compressor: Optional[Compressor] = None,
        delta: Optional[DeltaEngine] = None,
        audit: Optional[AuditSink] = None,
        ledger: Optional[Ledger] = None,
        config: Optional[StorageConfig] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or StorageConfig()
        self._clock = clock
        self.transport = transport
        self.cache = cache
        self.cipher = cipher or VaultCipher.from_config(self.config)
        self.compressor = compressor or Compressor(
            threshold=self.config.compression_threshold
        )
        self.delta = delta or DeltaEngine()
        self.audit = audit or LoggingAuditSink()
        self.ledger = ledger

    @classmethod
    def from_config(
        cls,
        config: StorageConfig,
        client: Optional[BlobClient] = None,
        audit: Optional[AuditSink] = None,
        ledger: Optional[Ledger] = None,
    ) -> "VaultStorageService":
        """Build a service with an HTTP blob client and a hybrid cache.

        Args:
            config: Engine configuration.
            client: Blob client; defaults to ``HttpBlobClient`` for the
                configured publisher/aggregator.
            audit: Audit sink; defaults to logging.
            ledger: Optional ledger for ``save_vault``/``load_vault``.
        """
        client = client or HttpBlobClient.from_config(config)
        cache = HybridCache(
            PersistentCache.from_config(config),
            MemoryCache.from_config(config),
        )
        return cls(
            transport=BlobTransport.from_config(config, client),
            cache=cache,
            audit=audit,
            ledger=ledger,
            config=config,
        )

    async def close(self) -> None:
        """Release the blob client session and the cache store."""
        close = getattr(self.transport.client, "close", None)
        if close is not None:
            await close()
        persistent = getattr(self.cache, "persistent", self.cache)
        if isinstance(persistent, PersistentCache):
            await persistent.close()

    async def __aenter__(self) -> "VaultStorageService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, vault: VaultInput) -> VaultSnapshot:
        """Validate a snapshot before upload or after download.

        Args:
            vault: Snapshot model or its mapping form.

        Returns:
            The validated VaultSnapshot.

        Raises:
            ValidationError: Missing id or checksum, non-positive version,
                too many items, malformed or duplicate items.
            ChecksumMismatch: If the checksum does not match the content.
        """
        if not isinstance(vault, VaultSnapshot):
            try:
                vault = VaultSnapshot.model_validate(vault)
            except pydantic.ValidationError as err:
                raise ValidationError(
                    f"Malformed vault data ({err.error_count()} error(s))"
                ) from err
        if not vault.id:
            raise ValidationError("Invalid vault metadata: missing id")
        if not vault.checksum:
            raise ValidationError("Missing vault checksum", vault_id=vault.id)
        if vault.version <= 0:
            raise ValidationError(
                f"Invalid vault version: {vault.version}", vault_id=vault.id
            )
        if len(vault.items) > self.config.max_items:
            raise ValidationError(
                f"Vault contains too many items ({len(vault.items)} > "
                f"{self.config.max_items})",
                vault_id=vault.id,
            )
        seen: set[str] = set()
        for item in vault.items:
            if not item.id or not item.title:
                raise ValidationError(
                    "Invalid item structure", vault_id=vault.id, item_id=item.id
                )
            if item.id in seen:
                raise ValidationError(
                    f"Duplicate item id: {item.id}", vault_id=vault.id
                )
            seen.add(item.id)
        if not hmac.compare_digest(vault.compute_checksum(), vault.checksum):
            raise ChecksumMismatch("Vault checksum does not match its items")
        return vault

    # ------------------------------------------------------------------
    # Audit and cache helpers
    # ------------------------------------------------------------------

    async def _audit(
        self,
        action: str,
        resource_id: str = "",
        error: Optional[BaseException] = None,
        resource_type: str = "vault",
        **metadata: Any,
    ) -> None:
        """Record an audit event. Sink failures are logged, never raised."""
        event = AuditEvent(
            action=action,
            resource_id=resource_id,
            resource_type=resource_type,
            success=error is None,
            error_message=str(error) if error is not None else "",
            metadata=metadata,
        )
        try:
            await self.audit.record(event)
        except Exception as err:  # audit must never abort the operation
            logger.warning("Audit sink failed for %s: %s", action, err)

    async def _cache_get(self, blob_ref: str) -> Optional[dict]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get_vault(blob_ref)
        except CacheError as err:
            logger.warning("Cache read failed for %s: %s", blob_ref, err)
            await self._audit("cache_read", blob_ref, error=err)
            return None

    async def _cache_set(self, blob_ref: str, entry: dict) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set_vault(blob_ref, entry)
        except CacheError as err:
            logger.warning("Cache write failed for %s: %s", blob_ref, err)
            await self._audit("cache_write", blob_ref, error=err)

    async def _cache_delete(self, blob_ref: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.delete_vault(blob_ref)
        except CacheError as err:
            logger.warning("Cache delete failed for %s: %s", blob_ref, err)
            await self._audit("cache_delete", blob_ref, error=err)

    @staticmethod
    def _cache_entry(snapshot: VaultSnapshot, payload: EncryptedPayload) -> dict:
        # salt and key id let a cache hit check the password offline
        return {
            "snapshot": snapshot.model_dump(mode="json"),
            "salt": base64.b64encode(payload.salt).decode("ascii"),
            "key_id": payload.key_id,
            "context": payload.context,
        }

    def _from_cache_entry(self, entry: dict, password: str) -> VaultSnapshot:
        salt = base64.b64decode(entry["salt"], validate=True)
        if len(salt) != SALT_SIZE:
            raise ValueError(f"Cached salt is {len(salt)} bytes")
        self.cipher.verify(password, salt, entry["key_id"], entry.get("context"))
        return VaultSnapshot.model_validate(entry["snapshot"])

    @staticmethod
    def _elapsed(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    @staticmethod
    def _vault_id(vault: Any) -> str:
        if isinstance(vault, VaultSnapshot):
            return vault.id
        if isinstance(vault, Mapping):
            return str(vault.get("id", ""))
        return ""

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    @staticmethod
    def _serialize(snapshot: VaultSnapshot) -> bytes:
        return orjson.dumps(snapshot.model_dump(mode="json", exclude={"compression"}))

    def _parse(self, plaintext: bytes) -> VaultSnapshot:
        try:
            raw = orjson.loads(plaintext)
        except orjson.JSONDecodeError as err:
            raise ValidationError("Vault payload is not valid JSON") from err
        return self.validate(raw)

    def _seal(
        self, plaintext: bytes, password: str, context: str
    ) -> tuple[bytes, CompressionInfo, EncryptedPayload]:
        stored, info = self.compressor.compress(plaintext)
        payload = self.cipher.encrypt(stored, password, context=context)
        return encode_payload(payload), info, payload

    def _unseal(
        self, blob: bytes, password: str
    ) -> tuple[bytes, EncryptedPayload, str]:
        payload = decode_payload(blob)
        stored = self.cipher.decrypt(payload, password)
        return self.compressor.decompress(stored), payload, sniff(stored)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def upload_vault(self, vault: VaultInput, password: str) -> str:
        """Validate, compress, encrypt and store a vault snapshot.

        Validation failures abort before any network or cache effect.

        Args:
            vault: Snapshot to store.
            password: Master password.

        Returns:
            Blob reference of the stored payload.
        """
        started = time.monotonic()
        try:
            snapshot = self.validate(vault)
            plaintext = self._serialize(snapshot)
            blob, info, payload = self._seal(
                plaintext, password, vault_context(snapshot.id)
            )
            blob_ref = await self.transport.put(blob)
        except Exception as err:
            await self._audit("upload_vault", self._vault_id(vault), error=err)
            raise
        snapshot = snapshot.model_copy(update={"compression": info})
        await self._cache_set(blob_ref, self._cache_entry(snapshot, payload))
        await self._audit(
            "upload_vault",
            blob_ref,
            vault_id=snapshot.id,
            size=info.compressed_size,
            compression_ratio=info.ratio,
            duration=self._elapsed(started),
        )
        logger.info(
            "Uploaded vault %s v%d as blob %s (%d bytes)",
            snapshot.id, snapshot.version, blob_ref, len(blob),
        )
        return blob_ref

    async def download_vault(self, blob_ref: str, password: str) -> VaultSnapshot:
        """Return the vault stored under ``blob_ref``.

        A cache hit still verifies the password against the cached key id,
        without any network call.

        Raises:
            InvalidKey: Wrong password (cache hit or download).
            DecryptionFailed: Corrupted payload.
            TransportFailed: Blob store unreachable after retries.
        """
        started = time.monotonic()
        cached = await self._cache_get(blob_ref)
        if cached is not None:
            try:
                snapshot = self._from_cache_entry(cached, password)
            except VaultStoreError as err:
                await self._audit("download_vault", blob_ref, error=err, cache=True)
                raise
            except (KeyError, TypeError, ValueError) as err:
                logger.warning("Discarding unreadable cache entry %s: %s", blob_ref, err)
                await self._cache_delete(blob_ref)
            else:
                await self._audit(
                    "download_vault", blob_ref, cache=True,
                    duration=self._elapsed(started),
                )
                return snapshot
        try:
            blob = await self.transport.get(blob_ref)
            plaintext, payload, algorithm = self._unseal(blob, password)
            snapshot = self._parse(plaintext)
        except Exception as err:
            await self._audit("download_vault", blob_ref, error=err, cache=False)
            raise
        snapshot.compression = CompressionInfo(
            algorithm=algorithm,
            original_size=len(plaintext),
            compressed_size=len(payload.ciphertext),
            ratio=(
                round(len(payload.ciphertext) / len(plaintext) * 100)
                if plaintext else 100
            ),
        )
        await self._cache_set(blob_ref, self._cache_entry(snapshot, payload))
        await self._audit(
            "download_vault", blob_ref, cache=False, size=len(blob),
            duration=self._elapsed(started),
        )
        logger.info(
            "Downloaded vault %s v%d from blob %s",
            snapshot.id, snapshot.version, blob_ref,
        )
        return snapshot

    async def delete_vault(self, blob_ref: str) -> None:
        """Delete a blob from the store and drop its cache entry."""
        try:
            await self.transport.delete(blob_ref)
        except Exception as err:
            await self._audit("delete_vault", blob_ref, error=err)
            raise
        await self._cache_delete(blob_ref)
        await self._audit("delete_vault", blob_ref)

    async def batch_upload_vaults(
        self, vaults: Sequence[VaultInput], password: str
    ) -> list[str]:
        """Upload several vaults, ``batch_concurrency`` at a time.

        Failed uploads are logged and skipped.

        Returns:
            Blob references of the successful uploads, in input order.
        """
        size = self.config.batch_concurrency
        refs: list[str] = []
        for start in range(0, len(vaults), size):
            batch = vaults[start:start + size]
            results = await asyncio.gather(
                *(self.upload_vault(vault, password) for vault in batch),
                return_exceptions=True,
            )
            for vault, result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.error(
                        "Batch upload of vault %s failed: %s",
                        self._vault_id(vault), result,
                    )
                elif isinstance(result, BaseException):
                    raise result
                else:
                    refs.append(result)
        return refs

    async def verify_data_integrity(self, blob_ref: str, expected_checksum: str) -> bool:
        """Compare the SHA-256 of a stored blob with ``expected_checksum``."""
        try:
            blob = await self.transport.get(blob_ref)
        except TransportError as err:
            logger.error("Integrity check of %s failed: %s", blob_ref, err)
            return False
        return hmac.compare_digest(hashlib.sha256(blob).hexdigest(), expected_checksum)

    async def cache_stats(self) -> Optional[CacheStats]:
        if self.cache is None:
            return None
        try:
            return await self.cache.stats()
        except CacheError as err:
            logger.warning("Cache stats unavailable: %s", err)
            return None

    # ------------------------------------------------------------------
    # Storage accounting
    # ------------------------------------------------------------------

    def estimate_storage_cost(self, size: int, epochs: Optional[int] = None) -> float:
        """Estimated cost of keeping ``size`` bytes for ``epochs`` epochs.

        ``epochs`` defaults to the configured ``storage_epochs``.
        """
        if size < 0:
            raise ValidationError(f"Blob size must not be negative: {size}")
        if epochs is None:
            epochs = self.config.storage_epochs
        elif epochs < 1:
            raise ValidationError(f"Storage epochs must be positive: {epochs}")
        return size * epochs * self.config.storage_cost_per_byte_epoch

    async def blob_available(self, blob_ref: str) -> bool:
        """True when the blob store can serve ``blob_ref``."""
        try:
            await self.transport.get(blob_ref)
        except TransportError as err:
            logger.debug("Blob %s unavailable: %s", blob_ref, err)
            return False
        return True

    async def get_storage_stats(self, blob_ref: str) -> StorageStats:
        """Size and estimated cost of a stored blob.

        Raises:
            TransportError: If the blob cannot be fetched.
        """
        try:
            blob = await self.transport.get(blob_ref)
        except TransportError as err:
            logger.error("Failed to get storage stats for %s: %s", blob_ref, err)
            raise
        epochs = self.config.storage_epochs
        return StorageStats(
            blob_ref=blob_ref,
            size=len(blob),
            storage_epochs=epochs,
            cost=self.estimate_storage_cost(len(blob), epochs),
            checked_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Deltas
    # ------------------------------------------------------------------

    def create_delta(self, current: VaultInput, previous: VaultInput) -> DeltaUpdate:
        return self.delta.diff(self.validate(current), self.validate(previous))

    def apply_delta(self, base: VaultInput, delta: DeltaUpdate) -> VaultSnapshot:
        return self.delta.apply(self.validate(base), delta)

    async def upload_delta(
        self, current: VaultInput, previous: VaultInput, password: str
    ) -> tuple[str, DeltaUpdate]:
        """Encrypt and store only the changes between two snapshots.

        Returns:
            Tuple of (delta blob reference, DeltaUpdate).
        """
        started = time.monotonic()
        vault_id = self._vault_id(current)
        try:
            delta = self.create_delta(current, previous)
            blob, info, _ = self._seal(
                orjson.dumps(delta.model_dump(mode="json")),
                password,
                delta_context(vault_id),
            )
            blob_ref = await self.transport.put(blob)
        except Exception as err:
            await self._audit("upload_delta", vault_id, error=err)
            raise
        await self._audit(
            "upload_delta", blob_ref, vault_id=vault_id,
            changes=len(delta.changes), size=info.compressed_size,
            duration=self._elapsed(started),
        )
        return blob_ref, delta

    async def download_delta(
        self, delta_ref: str, base: VaultInput, password: str
    ) -> VaultSnapshot:
        """Fetch a stored delta and apply it to ``base``.

        Raises:
            ValidationError: If the blob is not a delta for this vault.
            ChecksumMismatch: If the delta fails verification.
        """
        started = time.monotonic()
        try:
            snapshot = self.validate(base)
            blob = await self.transport.get(delta_ref)
            if decode_payload(blob).context != delta_context(snapshot.id):
                raise ValidationError(
                    f"Blob {delta_ref} is not a delta for vault {snapshot.id}"
                )
            plaintext, _, _ = self._unseal(blob, password)
            try:
                delta = DeltaUpdate.model_validate(orjson.loads(plaintext))
            except (orjson.JSONDecodeError, pydantic.ValidationError) as err:
                raise ValidationError("Malformed delta payload") from err
            updated = self.validate(self.delta.apply(snapshot, delta))
        except Exception as err:
            await self._audit("download_delta", delta_ref, error=err)
            raise
        await self._audit(
            "download_delta", delta_ref, vault_id=updated.id,
            changes=len(delta.changes), duration=self._elapsed(started),
        )
        return updated

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def _require_ledger(self) -> Ledger:
        if self.ledger is None:
            raise RuntimeError("No ledger configured for this storage service")
        return self.ledger

    async def save_vault(self, owner: str, vault: VaultInput, password: str) -> str:
        """Upload a vault and point its ledger record at the new blob."""
        ledger = self._require_ledger()
        blob_ref = await self.upload_vault(vault, password)
        vault_id = self._vault_id(vault)
        if await ledger.get_blob_reference(vault_id) is None:
            await ledger.create_vault_record(owner, vault_id, blob_ref)
        else:
            await ledger.update_blob_reference(vault_id, blob_ref)
        return blob_ref

    async def load_vault(self, vault_id: str, password: str) -> VaultSnapshot:
        """Resolve a vault id through the ledger and download it."""
        blob_ref = await self._require_ledger().get_blob_reference(vault_id)
        if blob_ref is None:
            raise VaultNotFound(f"Vault not found: {vault_id}", vault_id=vault_id)
        return await self.download_vault(blob_ref, password)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def unlock(
        self,
        user_id: str,
        vault_id: str,
        blob_ref: str,
        password: str,
        permissions: Permission = Permission.READ | Permission.WRITE,
        ttl: int = DEFAULT_SESSION_TTL,
    ) -> tuple[VaultSnapshot, str, SessionRecord]:
        """Open a vault and start a session for it.

        Returns:
            Tuple of (snapshot, session key, session record).
        """
        snapshot = await self.download_vault(blob_ref, password)
        if snapshot.id != vault_id:
            raise ValidationError(
                f"Blob {blob_ref} holds vault {snapshot.id}, not {vault_id}"
            )
        key = session_key(user_id, vault_id)
        record = SessionRecord(
            user_id=user_id,
            vault_id=vault_id,
            token=secrets.token_urlsafe(32),
            expires_at=self._clock() + ttl * 1000,
            permissions=int(permissions),
        )
        if self.cache is not None:
            try:
                await self.cache.set_session(key, record)
            except CacheError as err:
                logger.warning("Session store failed for %s: %s", key, err)
                await self._audit("session_store", key, error=err, resource_type="session")
        await self._audit("unlock_vault", vault_id, resource_type="session", user_id=user_id)
        return snapshot, key, record

    async def lock(self, key: str) -> None:
        """End a session."""
        if self.cache is not None:
            try:
                await self.cache.delete_session(key)
            except CacheError as err:
                logger.warning("Session delete failed for %s: %s", key, err)
        await self._audit("lock_vault", key, resource_type="session")

    async def authorize(
        self, key: str, token: str, permission: Permission = Permission.READ
    ) -> SessionRecord:
        """Check a session token and permission for a privileged operation.

        Raises:
            SessionExpired: No live session under ``key``.
            PermissionDenied: Wrong token or missing permission bit.
        """
        record: Optional[SessionRecord] = None
        if self.cache is not None:
            try:
                record = await self.cache.get_session(key)
            except CacheError as err:
                logger.warning("Session read failed for %s: %s", key, err)
        if record is None:
            raise SessionExpired(f"No active session for {key}")
        if not hmac.compare_digest(record.token, token):
            raise PermissionDenied("Invalid session token")
        if not record.allows(permission):
            raise PermissionDenied(f"Session lacks {permission!r}")
        return record
