"""
Delta Engine — entity-level diffs between vault snapshots.

Change order is deterministic: creates and updates follow the order of the
current snapshot (items, then folders), deletes follow the order of the
previous snapshot. All changes of one diff share a single timestamp.
"""
import hmac
from typing import Callable, Sequence, TypeVar, Union

from .exceptions import ChecksumMismatch, ValidationError
from .models import (
    Change,
    DeltaUpdate,
    Folder,
    SecretItem,
    VaultSnapshot,
    canonical_json,
    now_ms,
    sha256_hex,
)

Entity = TypeVar("Entity", SecretItem, Folder)


def _diff_entities(
    kind: str,
    current: Sequence[Entity],
    previous: Sequence[Entity],
    timestamp: int,
) -> tuple[list[Change], list[Change]]:
    before = {e.id: e for e in previous}
    upserts: list[Change] = []
    for entity in current:
        old = before.get(entity.id)
        if old is None:
            upserts.append(Change(
                type="create", entity=kind, id=entity.id,
                data=entity.model_copy(deep=True), timestamp=timestamp,
            ))
        elif canonical_json(entity) != canonical_json(old):
            upserts.append(Change(
                type="update", entity=kind, id=entity.id,
                data=entity.model_copy(deep=True), timestamp=timestamp,
            ))
    present = {e.id for e in current}
    deletes = [
        Change(type="delete", entity=kind, id=e.id, timestamp=timestamp)
        for e in previous
        if e.id not in present
    ]
    return upserts, deletes


def _upsert(entities: list, data: Union[SecretItem, Folder]) -> None:
    for index, existing in enumerate(entities):
        if existing.id == data.id:
            entities[index] = data
            return
    entities.append(data)


class DeltaEngine:
    """Computes and replays checksummed change lists."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock

    @staticmethod
    def checksum(changes: Sequence[Change]) -> str:
        """SHA-256 over the canonical JSON of a change list."""
        return sha256_hex(canonical_json(list(changes)))

    def verify(self, delta: DeltaUpdate) -> bool:
        return hmac.compare_digest(self.checksum(delta.changes), delta.checksum)

    def diff(self, current: VaultSnapshot, previous: VaultSnapshot) -> DeltaUpdate:
        """Describe how to turn ``previous`` into ``current``.

        Raises:
            ValidationError: If ``current`` differs from ``previous`` without
                a higher version.
        """
        timestamp = self._clock()
        item_upserts, item_deletes = _diff_entities(
            "password", current.items, previous.items, timestamp,
        )
        folder_upserts, folder_deletes = _diff_entities(
            "folder", current.folders, previous.folders, timestamp,
        )
        changes = item_upserts + folder_upserts + item_deletes + folder_deletes
        if changes and current.version <= previous.version:
            raise ValidationError(
                f"Changed vault must advance past version {previous.version}, "
                f"got {current.version}"
            )
        return DeltaUpdate(
            version=current.version,
            base_version=previous.version,
            changes=changes,
            checksum=self.checksum(changes),
        )

    def apply(self, base: VaultSnapshot, delta: DeltaUpdate) -> VaultSnapshot:
        """Replay a verified delta on top of ``base``.

        The base snapshot is never modified; a new snapshot is returned.

        Raises:
            ChecksumMismatch: If the change list does not match its checksum.
            ValidationError: If the delta was computed against another version.
                Also raised when a non-empty delta does not advance the version.
        """
        if not self.verify(delta):
            raise ChecksumMismatch("Invalid delta update checksum")
        if delta.base_version != base.version:
            raise ValidationError(
                f"Delta base version {delta.base_version} does not match "
                f"vault version {base.version}"
            )
        if delta.changes and delta.version <= delta.base_version:
            raise ValidationError(
                f"Delta version {delta.version} does not advance base "
                f"version {delta.base_version}"
            )
        updated = base.model_copy(deep=True)
        for change in delta.changes:
            if change.entity == "password":
                target: list = updated.items
            elif change.entity == "folder":
                target = updated.folders
            else:
                raise ValidationError(f"Unknown entity kind: {change.entity}")
            if change.type == "delete":
                target[:] = [e for e in target if e.id != change.id]
            else:
                _upsert(target, change.data.model_copy(deep=True))
        updated.version = delta.version
        updated.updated_at = self._clock()
        return updated.refresh()
