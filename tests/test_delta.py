"""
Tests for delta computation and replay.
"""
import pytest

from vaultstore.delta import DeltaEngine
from vaultstore.exceptions import ChecksumMismatch, ValidationError
from vaultstore.models import Change, DeltaUpdate, Folder, SecretItem

from conftest import FakeClock, make_vault


@pytest.fixture
def engine():
    return DeltaEngine(clock=FakeClock())


@pytest.fixture
def previous():
    return make_vault(items=[
        SecretItem(id='p1', title='Mail', created_at=1, updated_at=1),
        SecretItem(id='p2', title='Bank', created_at=1, updated_at=1),
    ], folders=[
        Folder(id='f1', name='Work', created_at=1, updated_at=1),
        Folder(id='f2', name='Old', created_at=1, updated_at=1),
    ])


@pytest.fixture
def current(previous):
    vault = previous.model_copy(deep=True)
    vault.items[0].title = 'Mail (work)'
    vault.items = [i for i in vault.items if i.id != 'p2']
    vault.items.append(SecretItem(id='p3', title='Shop', created_at=2, updated_at=2))
    vault.folders = [f for f in vault.folders if f.id != 'f2']
    vault.folders.append(Folder(id='f3', name='Home', created_at=2, updated_at=2))
    return vault.bump()


class TestDiff:
    """Tests for DeltaEngine.diff()."""

    def test_change_kinds(self, engine, current, previous):
        """Test creates, updates and deletes are all detected."""
        delta = engine.diff(current, previous)
        summary = [(c.type, c.entity, c.id) for c in delta.changes]
        assert summary == [
            ('update', 'password', 'p1'),
            ('create', 'password', 'p3'),
            ('create', 'folder', 'f3'),
            ('delete', 'password', 'p2'),
            ('delete', 'folder', 'f2'),
        ]

    def test_versions_and_checksum(self, engine, current, previous):
        """Test the delta records both versions and a verifiable checksum."""
        delta = engine.diff(current, previous)
        assert delta.version == current.version == 2
        assert delta.base_version == previous.version == 1
        assert delta.checksum == DeltaEngine.checksum(delta.changes)
        assert engine.verify(delta)

    def test_single_timestamp(self, engine, current, previous):
        """Test every change shares the clock reading of the diff."""
        delta = engine.diff(current, previous)
        assert {c.timestamp for c in delta.changes} == {FakeClock().now}

    def test_identical_snapshots(self, engine, previous):
        """Test diffing a snapshot against itself yields no changes."""
        delta = engine.diff(previous, previous)
        assert delta.changes == []

    def test_deletes_carry_no_data(self, engine, current, previous):
        """Test delete changes have no payload."""
        delta = engine.diff(current, previous)
        assert all(c.data is None for c in delta.changes if c.type == 'delete')


def _full():
    return make_vault(items=[
        SecretItem(id='p1', title='Mail', created_at=1, updated_at=1),
        SecretItem(id='p2', title='Bank', created_at=1, updated_at=1),
    ], folders=[
        Folder(id='f1', name='Work', created_at=1, updated_at=1),
        Folder(id='f2', name='Old', created_at=1, updated_at=1),
    ])


def _empty():
    return make_vault(items=[], folders=[])


def _folders_only():
    previous = _full()
    current = previous.model_copy(deep=True)
    current.folders[0].name = 'Work (2024)'
    current.folders.append(Folder(id='f3', name='Home', created_at=2, updated_at=2))
    return previous, current.bump()


def _reordered():
    previous = _full()
    current = previous.model_copy(deep=True)
    current.items.reverse()
    current.folders.reverse()
    return previous, current.bump()


def _mixed():
    previous = _full()
    current = previous.model_copy(deep=True)
    current.items[0].title = 'Mail (work)'
    current.items = [i for i in current.items if i.id != 'p2']
    current.items.append(SecretItem(id='p3', title='Shop', created_at=2, updated_at=2))
    current.folders = [f for f in current.folders if f.id != 'f2']
    return previous, current.bump()


ROUND_TRIPS = {
    'empty-to-full': lambda: (_empty(), _full().bump()),
    'full-to-empty': lambda: (_full(), _empty().bump()),
    'folders-only': _folders_only,
    'reordered': _reordered,
    'mixed': _mixed,
}


class TestApply:
    """Tests for DeltaEngine.apply()."""

    @pytest.mark.parametrize('build', list(ROUND_TRIPS.values()), ids=list(ROUND_TRIPS))
    def test_round_trip(self, engine, build):
        """Test applying diff(current, previous) to previous rebuilds current."""
        previous, current = build()
        rebuilt = engine.apply(previous, engine.diff(current, previous))
        assert rebuilt.item_map() == current.item_map()
        assert {f.id: f for f in rebuilt.folders} == {f.id: f for f in current.folders}
        assert rebuilt.version == current.version
        assert rebuilt.checksum == rebuilt.compute_checksum()

    def test_changed_vault_without_new_version(self, engine, previous):
        """Test diff refuses a changed snapshot that kept its version."""
        edited = previous.model_copy(deep=True)
        edited.items[0].title = 'Changed'
        edited.refresh()
        with pytest.raises(ValidationError):
            engine.diff(edited, previous)

    def test_delta_must_advance_version(self, engine, previous):
        """Test a non-empty delta with version <= base_version is rejected."""
        item = SecretItem(id='p9', title='New')
        changes = [Change(type='create', entity='password', id='p9', data=item)]
        delta = DeltaUpdate(
            version=1, base_version=1, changes=changes,
            checksum=DeltaEngine.checksum(changes),
        )
        before = previous.model_dump()
        with pytest.raises(ValidationError):
            engine.apply(previous, delta)
        assert previous.model_dump() == before

    def test_empty_delta_may_keep_version(self, engine, previous):
        """Test a delta with no changes leaves the version alone."""
        rebuilt = engine.apply(previous, engine.diff(previous, previous))
        assert rebuilt.version == previous.version
        assert rebuilt.checksum == previous.checksum

    def test_base_is_not_modified(self, engine, current, previous):
        """Test apply returns a new snapshot."""
        before = previous.model_dump()
        engine.apply(previous, engine.diff(current, previous))
        assert previous.model_dump() == before

    def test_tampered_delta_rejected(self, engine, current, previous):
        """Test a modified change list fails the checksum check."""
        delta = engine.diff(current, previous)
        delta.changes[0].data.title = 'Hijacked'
        before = previous.model_dump()
        with pytest.raises(ChecksumMismatch):
            engine.apply(previous, delta)
        assert previous.model_dump() == before

    def test_base_version_mismatch(self, engine, current, previous):
        """Test a delta computed against another version is rejected."""
        delta = engine.diff(current, previous)
        stale = previous.model_copy(deep=True)
        stale.version = 7
        with pytest.raises(ValidationError):
            engine.apply(stale, delta)

    def test_update_of_missing_entity_is_inserted(self, engine, previous):
        """Test an update for an unknown id behaves like a create."""
        item = SecretItem(id='p9', title='New')
        changes = [Change(type='update', entity='password', id='p9', data=item)]
        delta = DeltaUpdate(
            version=2, base_version=1, changes=changes,
            checksum=DeltaEngine.checksum(changes),
        )
        assert 'p9' in engine.apply(previous, delta).item_map()


class TestChange:
    """Tests for Change model validation."""

    def test_parses_item_from_dict(self):
        """Test password data parses to SecretItem."""
        change = Change.model_validate({
            'type': 'create', 'entity': 'password', 'id': 'p1',
            'data': {'id': 'p1', 'title': 'Mail'},
        })
        assert isinstance(change.data, SecretItem)

    def test_parses_folder_from_dict(self):
        """Test folder data parses to Folder."""
        change = Change.model_validate({
            'type': 'create', 'entity': 'folder', 'id': 'f1',
            'data': {'id': 'f1', 'name': 'Work'},
        })
        assert isinstance(change.data, Folder)

    @pytest.mark.parametrize('values', [
        {'type': 'delete', 'entity': 'password', 'id': 'p1',
         'data': {'id': 'p1', 'title': 'Mail'}},
        {'type': 'create', 'entity': 'password', 'id': 'p1'},
        {'type': 'create', 'entity': 'password', 'id': 'p2',
         'data': {'id': 'p1', 'title': 'Mail'}},
        {'type': 'create', 'entity': 'folder', 'id': 'f1',
         'data': SecretItem(id='f1', title='Mail')},
        {'type': 'rename', 'entity': 'password', 'id': 'p1'},
    ])
    def test_invalid_changes(self, values):
        """Test inconsistent changes are rejected."""
        with pytest.raises(ValueError):
            Change.model_validate(values)
