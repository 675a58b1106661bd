"""
Ledger pointer store: maps vault ids to their current blob reference.

The real ledger is an on-chain registry; the engine only needs the four
calls below and treats it as opaque.
"""
import logging
from typing import Optional, Protocol

from .exceptions import VaultNotFound

logger = logging.getLogger("vaultstore")


class Ledger(Protocol):
    async def create_vault_record(self, owner: str, vault_id: str, blob_ref: str) -> None: ...

    async def update_blob_reference(self, vault_id: str, blob_ref: str) -> None: ...

    async def list_vaults_for_owner(self, owner: str) -> list[str]: ...

    async def get_blob_reference(self, vault_id: str) -> Optional[str]: ...


class MemoryLedger:
    """In-process ledger, one record per vault id."""

    def __init__(self):
        self._refs: dict[str, str] = {}
        self._owners: dict[str, str] = {}

    async def create_vault_record(self, owner: str, vault_id: str, blob_ref: str) -> None:
        if vault_id in self._refs:
            raise ValueError(f"Vault record already exists: {vault_id}")
        self._refs[vault_id] = blob_ref
        self._owners[vault_id] = owner
        logger.debug("Ledger record created: vault=%s owner=%s", vault_id, owner)

    async def update_blob_reference(self, vault_id: str, blob_ref: str) -> None:
        if vault_id not in self._refs:
            raise VaultNotFound(f"Vault not found: {vault_id}", vault_id=vault_id)
        self._refs[vault_id] = blob_ref

    async def list_vaults_for_owner(self, owner: str) -> list[str]:
        return [vid for vid, o in self._owners.items() if o == owner]

    async def get_blob_reference(self, vault_id: str) -> Optional[str]:
        return self._refs.get(vault_id)
