"""
Tests for the VaultStore data model.
"""
from vaultstore.models import (
    CacheStats,
    Permission,
    SecretItem,
    SessionRecord,
    VaultSnapshot,
    canonical_json,
)

from conftest import make_vault


class TestVaultSnapshot:
    """Tests for snapshot checksums and versioning."""

    def test_create_sets_checksum(self):
        """Test create() fills in the content checksum."""
        vault = make_vault()
        assert len(vault.checksum) == 64
        assert vault.checksum == vault.compute_checksum()
        assert vault.total_items == 1

    def test_checksum_ignores_metadata(self):
        """Test the checksum covers items and folders only."""
        vault = make_vault()
        renamed = vault.model_copy(update={'name': 'Other', 'version': 9})
        assert renamed.compute_checksum() == vault.checksum

    def test_checksum_tracks_items(self):
        """Test editing an item changes the checksum."""
        vault = make_vault()
        vault.items[0].title = 'Changed'
        assert vault.compute_checksum() != vault.checksum

    def test_bump(self):
        """Test bump() advances version and refreshes the checksum."""
        vault = make_vault()
        vault.items.append(SecretItem(id='p2', title='Bank'))
        vault.bump()
        assert vault.version == 2
        assert vault.checksum == vault.compute_checksum()

    def test_defaults(self):
        """Test an empty snapshot has sensible defaults."""
        vault = VaultSnapshot(id='v1')
        assert vault.version == 1
        assert vault.items == []
        assert vault.checksum == ''


class TestCanonicalJson:
    """Tests for canonical JSON encoding."""

    def test_key_order_is_irrelevant(self):
        """Test dicts with the same content encode identically."""
        assert canonical_json({'b': 1, 'a': 2}) == canonical_json({'a': 2, 'b': 1})

    def test_models_are_dumped(self):
        """Test models and lists of models are accepted."""
        item = SecretItem(id='p1', title='Mail', created_at=1, updated_at=1)
        assert canonical_json(item) == canonical_json(item.model_dump(mode='json'))
        assert canonical_json([item]).startswith(b'[{')


class TestPermissions:
    """Tests for session permission bits."""

    def test_allows(self):
        """Test permission checks against the stored bit set."""
        record = SessionRecord(
            user_id='u1', vault_id='v1', token='t', expires_at=0,
            permissions=int(Permission.READ | Permission.SHARE),
        )
        assert record.allows(Permission.READ)
        assert record.allows(Permission.SHARE)
        assert not record.allows(Permission.WRITE)
        assert not record.allows(Permission.READ | Permission.WRITE)

    def test_all(self):
        """Test the full permission set."""
        assert Permission.all() & Permission.ADMIN
        assert int(Permission.all()) == 31

    def test_expired(self):
        """Test expiry is strictly after expires_at."""
        record = SessionRecord(user_id='u1', vault_id='v1', token='t', expires_at=100)
        assert not record.expired(100)
        assert record.expired(101)


class TestCacheStats:
    """Tests for cache statistics."""

    def test_hit_rate(self):
        """Test the hit rate is a percentage of lookups."""
        assert CacheStats(hit_count=3, miss_count=1).hit_rate == 75.0
        assert CacheStats().hit_rate == 0.0
