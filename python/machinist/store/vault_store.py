"""
machinist/store/vault_store.py

SecretStore backed by Vault KV v2. Secrets live at "<namespace>/<name>" below
the configured mount; the KV version number plays the role of the resource
version, and conditional writes use Vault's check-and-set.
"""

from __future__ import annotations

from typing import Dict, Optional

from machinist.secrets.vault_client import AsyncVaultClient
from machinist.store.interfaces import SecretRecord, SecretStore


class VaultSecretStore(SecretStore):
    def __init__(self, client: AsyncVaultClient) -> None:
        self._client = client

    @staticmethod
    def _path(namespace: str, name: str) -> str:
        return f"{namespace}/{name}"

    async def get_secret(self, namespace: str, name: str) -> SecretRecord:
        entry = await self._client.read_secret(self._path(namespace, name))
        return SecretRecord(
            namespace=namespace,
            name=name,
            data=entry.data,
            resource_version=str(entry.version),
        )

    async def create_secret(
        self, namespace: str, name: str, data: Dict[str, str]
    ) -> SecretRecord:
        version = await self._client.write_secret(
            self._path(namespace, name), data, cas=0
        )
        return SecretRecord(
            namespace=namespace,
            name=name,
            data=dict(data),
            resource_version=str(version),
        )

    async def patch_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, str],
        resource_version: Optional[str] = None,
    ) -> SecretRecord:
        current = await self.get_secret(namespace, name)
        merged = {**current.data, **data}
        expected = (
            resource_version
            if resource_version is not None
            else current.resource_version
        )
        cas = int(expected or 0)
        version = await self._client.write_secret(
            self._path(namespace, name), merged, cas=cas
        )
        return SecretRecord(
            namespace=namespace,
            name=name,
            data=merged,
            resource_version=str(version),
        )
