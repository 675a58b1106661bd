"""
Shared fixtures for the VaultStore test suite.

Key derivation runs with minimal Argon2 cost so the suite stays fast;
production defaults are covered in test_config.py.
"""
import pytest
import pytest_asyncio

from vaultstore.audit import MemoryAuditLog
from vaultstore.cache import HybridCache, MemoryCache, PersistentCache
from vaultstore.config import StorageConfig
from vaultstore.crypto import KeyDerivation, VaultCipher
from vaultstore.exceptions import TransientBlobError
from vaultstore.ledger import MemoryLedger
from vaultstore.models import Folder, SecretItem, VaultSnapshot
from vaultstore.storage import VaultStorageService
from vaultstore.transport import BlobTransport, MemoryBlobStore


# --- Helpers ---

class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FlakyBlobStore(MemoryBlobStore):
    """Memory blob store that fails the first ``failures`` calls."""

    def __init__(self, failures: int = 0, error: Exception = None):
        super().__init__()
        self.failures = failures
        self.error = error or TransientBlobError('blob store busy')
        self.calls = 0

    def _maybe_fail(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error

    async def put(self, data: bytes) -> str:
        self._maybe_fail()
        return await super().put(data)

    async def get(self, blob_ref: str) -> bytes:
        self._maybe_fail()
        return await super().get(blob_ref)


async def no_sleep(delay: float) -> None:
    return None


def make_vault(vault_id: str = 'v1', **kwargs) -> VaultSnapshot:
    """Snapshot with one password item and one folder."""
    items = kwargs.pop('items', None)
    if items is None:
        items = [SecretItem(id='p1', title='Mail', username='alice', password='s3cret')]
    folders = kwargs.pop('folders', None)
    if folders is None:
        folders = [Folder(id='f1', name='Work')]
    return VaultSnapshot.create(vault_id, 'Personal', items=items, folders=folders, **kwargs)


# --- Fixtures ---

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_kdf():
    """Argon2id with the lowest cost the library accepts."""
    return KeyDerivation(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def cipher(fast_kdf):
    return VaultCipher(fast_kdf)


@pytest.fixture
def config(tmp_path):
    return StorageConfig(
        cache_path=tmp_path / 'cache.db',
        kdf_time_cost=1,
        kdf_memory_cost=1024,
        backoff_base_delay=0,
    )


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def transport(blob_store):
    return BlobTransport(blob_store, sleep=no_sleep)


@pytest_asyncio.fixture
async def persistent_cache(tmp_path, clock):
    cache = PersistentCache(tmp_path / 'cache.db', clock=clock)
    await cache.open()
    yield cache
    await cache.close()


@pytest.fixture
def audit_log():
    return MemoryAuditLog()


@pytest_asyncio.fixture
async def service(config, transport, persistent_cache, cipher, audit_log, clock):
    """Storage service over an in-memory blob store and a SQLite cache."""
    return VaultStorageService(
        transport=transport,
        cache=HybridCache(persistent_cache, MemoryCache()),
        cipher=cipher,
        audit=audit_log,
        ledger=MemoryLedger(),
        config=config,
        clock=clock,
    )


@pytest.fixture
def vault():
    return make_vault()
