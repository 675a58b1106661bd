"""
VaultStore data model.

Snapshots, items and payloads are pydantic models; timestamps are epoch
milliseconds. Canonical JSON (orjson with sorted keys) is used for every
checksum so that equal content always hashes equally.
"""
import time
import uuid
import hashlib
from enum import IntFlag
from typing import Any, Literal, Optional, Union

import orjson
from pydantic import BaseModel, Field, computed_field, model_validator


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def canonical_json(value: Any) -> bytes:
    """Serialize ``value`` (models included) to canonical JSON bytes."""
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    elif isinstance(value, list):
        value = [
            v.model_dump(mode="json") if isinstance(v, BaseModel) else v
            for v in value
        ]
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


ItemType = Literal["login", "card", "identity", "note"]


class SecretItem(BaseModel):
    """One credential entry of a vault."""

    id: str
    type: ItemType = "login"
    title: str
    username: Optional[str] = None
    password: Optional[str] = None
    url: Optional[str] = None
    notes: Optional[str] = None
    favorite: bool = False
    folder_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, str] = Field(default_factory=dict)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class Folder(BaseModel):
    """Folder grouping secret items."""

    id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    parent_id: Optional[str] = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class CompressionInfo(BaseModel):
    algorithm: Literal["none", "gzip"] = "none"
    original_size: int = 0
    compressed_size: int = 0
    ratio: int = 100


class VaultSnapshot(BaseModel):
    """The full versioned state of one vault.

    ``checksum`` covers items and folders only; use :meth:`refresh` after
    mutating either collection.
    """

    id: str
    name: str = ""
    description: Optional[str] = None
    version: int = 1
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    items: list[SecretItem] = Field(default_factory=list)
    folders: list[Folder] = Field(default_factory=list)
    compression: Optional[CompressionInfo] = None
    checksum: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_items(self) -> int:
        return len(self.items)

    def compute_checksum(self) -> str:
        return sha256_hex(
            canonical_json({
                "items": [i.model_dump(mode="json") for i in self.items],
                "folders": [f.model_dump(mode="json") for f in self.folders],
            })
        )

    def refresh(self) -> "VaultSnapshot":
        """Recompute the checksum in place and return self."""
        self.checksum = self.compute_checksum()
        return self

    def bump(self) -> "VaultSnapshot":
        """Record a mutation: next version, new timestamp, new checksum."""
        self.version += 1
        self.updated_at = now_ms()
        return self.refresh()

    def item_map(self) -> dict[str, SecretItem]:
        return {item.id: item for item in self.items}

    @classmethod
    def create(cls, id: str, name: str = "", **kwargs: Any) -> "VaultSnapshot":
        """Build a snapshot with a checksum already in place."""
        return cls(id=id, name=name, **kwargs).refresh()


ALGORITHM = "AES-256-GCM"
FORMAT_VERSION = 1


class EncryptedPayload(BaseModel):
    """Output of the AEAD module; the exported interchange format."""

    algorithm: Literal["AES-256-GCM"] = ALGORITHM
    ciphertext: bytes
    iv: bytes
    tag: bytes
    salt: bytes
    key_id: str
    context: Optional[str] = None
    version: int = FORMAT_VERSION
    created_at: int = Field(default_factory=now_ms)


ChangeType = Literal["create", "update", "delete"]
EntityKind = Literal["password", "folder"]


class Change(BaseModel):
    """A single entity-level change.

    ``data`` is a ``SecretItem`` for passwords, a ``Folder`` for folders and
    ``None`` for deletes.
    """

    type: ChangeType
    entity: EntityKind
    id: str
    data: Union[SecretItem, Folder, None] = None
    timestamp: int = Field(default_factory=now_ms)

    @model_validator(mode="before")
    @classmethod
    def parse_data(cls, values: Any) -> Any:
        if isinstance(values, dict) and isinstance(values.get("data"), dict):
            kind = values.get("entity")
            model = Folder if kind == "folder" else SecretItem
            values = {**values, "data": model.model_validate(values["data"])}
        return values

    @model_validator(mode="after")
    def check_data(self) -> "Change":
        if self.type == "delete":
            if self.data is not None:
                raise ValueError("delete changes carry no data")
            return self
        expected = SecretItem if self.entity == "password" else Folder
        if not isinstance(self.data, expected):
            raise ValueError(
                f"{self.type} of {self.entity} requires {expected.__name__} data"
            )
        if self.data.id != self.id:
            raise ValueError("change id does not match data id")
        return self


class DeltaUpdate(BaseModel):
    version: int
    base_version: int
    changes: list[Change] = Field(default_factory=list)
    checksum: str


class Permission(IntFlag):
    NONE = 0
    READ = 1
    WRITE = 2
    DELETE = 4
    SHARE = 8
    ADMIN = 16

    @classmethod
    def all(cls) -> "Permission":
        return cls.READ | cls.WRITE | cls.DELETE | cls.SHARE | cls.ADMIN


class SessionRecord(BaseModel):
    """Short-lived unlock session."""

    user_id: str
    vault_id: str
    token: str
    expires_at: int
    permissions: int = int(Permission.READ)  # Permission bit set

    def expired(self, now: Optional[int] = None) -> bool:
        return (now if now is not None else now_ms()) > self.expires_at

    def allows(self, permission: Permission) -> bool:
        return (int(self.permissions) & int(permission)) == int(permission)


class CacheStats(BaseModel):
    total_size: int = 0
    vault_count: int = 0
    hit_count: int = 0
    miss_count: int = 0
    oldest_entry: int = 0
    newest_entry: int = 0
    average_access_count: float = 0.0
    last_sync: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def hit_rate(self) -> float:
        """Percentage of lookups served from the cache."""
        lookups = self.hit_count + self.miss_count
        if not lookups:
            return 0.0
        return self.hit_count / lookups * 100


class StorageStats(BaseModel):
    """Size and estimated storage cost of one stored blob."""

    blob_ref: str
    size: int
    storage_epochs: int
    cost: float
    checked_at: int = Field(default_factory=now_ms)


class AuditEvent(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    action: str
    resource_id: str = ""
    resource_type: str = "vault"
    success: bool = True
    error_message: str = ""
    timestamp: int = Field(default_factory=now_ms)
    metadata: dict[str, Any] = Field(default_factory=dict)
