"""
machinist/secrets/vault_client.py

An asynchronous Vault client limited to what the secret backend needs:
  - Token acquisition & renewal (Kubernetes auth role or direct token)
  - KV v2 read with version metadata
  - KV v2 check-and-set writes

KV failures the engine branches on are translated to typed errors: a missing
path raises SecretNotFoundError, a failed check-and-set raises ConflictError.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional, Type

import aiofiles
import aiohttp
from pydantic import BaseModel, Field

from machinist.errors import ConflictError, SecretNotFoundError
from machinist.models.validator import validate_type
from machinist.models.vault import VaultSettings


class VaultKVEntry(BaseModel):
    data: Dict[str, str] = Field(default_factory=dict)
    version: int = 0


class AsyncVaultClient:
    """An asynchronous Vault client that manages:
      - Token acquisition & renewal (Kubernetes or direct token)
      - KV v2 versioned reads and check-and-set writes
    """

    def __init__(self, settings: VaultSettings) -> None:
        """
        Initialize the AsyncVaultClient.

        Args:
            settings (VaultSettings): Contains vault_addr, auth source, kv_mount, etc.
        """
        self._settings = settings
        self._session: Optional[aiohttp.ClientSession] = None
        self._client_token: Optional[str] = None
        self._last_token_check: float = 0.0

    async def __aenter__(self) -> AsyncVaultClient:
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    def _url(self, suffix: str) -> str:
        return f"{self._settings.vault_addr}/v1/{suffix}"

    async def ensure_valid_token(self) -> str:
        """Return a usable Vault token, logging in or renewing when needed.

        Raises:
            RuntimeError: If token acquisition or renewal fails.
        """
        if self._settings.direct_vault_token is not None:
            self._client_token = self._settings.direct_vault_token
            return self._client_token

        now = time.time()
        recently_checked = (
            self._last_token_check > 0
            and (now - self._last_token_check) < self._settings.check_interval_seconds
        )
        if self._client_token is not None and recently_checked:
            return self._client_token
        self._last_token_check = now

        if self._client_token is None:
            return await self._login()

        ttl = (await self._get_token_info()).get("ttl")
        if not isinstance(ttl, int):
            return await self._login()
        if ttl < self._settings.renew_threshold_seconds:
            return await self._renew_token()
        return self._client_token

    async def _login(self) -> str:
        """Kubernetes-auth login using the service account token on disk."""
        if not self._settings.vault_role_name:
            raise RuntimeError("Cannot login via K8s: vault_role_name not set.")

        session = await self.ensure_session()
        async with aiofiles.open(self._settings.token_path, "r") as f:
            jwt = await f.read()

        payload = {"jwt": jwt, "role": self._settings.vault_role_name}
        async with session.post(
            self._url("auth/kubernetes/login"),
            json=payload,
            ssl=self._settings.verify_ssl,
        ) as resp:
            js = validate_type(await resp.json(), Dict[str, Any])
            if resp.status != 200:
                raise RuntimeError(f"Vault login failed: {resp.status}, {js}")

        auth_data = js.get("auth")
        if not isinstance(auth_data, dict) or "client_token" not in auth_data:
            raise RuntimeError("Vault did not return a valid client_token.")
        token = str(auth_data["client_token"])
        self._client_token = token
        return token

    async def _renew_token(self) -> str:
        """Attempt token renewal, or re-login if renewal fails."""
        session = await self.ensure_session()
        headers = {"X-Vault-Token": self._client_token or ""}
        async with session.post(
            self._url("auth/token/renew-self"),
            headers=headers,
            ssl=self._settings.verify_ssl,
        ) as resp:
            js = validate_type(await resp.json(), Dict[str, Any])
            auth_data = js.get("auth")
            if (
                resp.status == 200
                and isinstance(auth_data, dict)
                and "client_token" in auth_data
            ):
                token = str(auth_data["client_token"])
                self._client_token = token
                return token
        return await self._login()

    async def _get_token_info(self) -> Dict[str, Any]:
        session = await self.ensure_session()
        headers = {"X-Vault-Token": self._client_token or ""}
        async with session.get(
            self._url("auth/token/lookup-self"),
            headers=headers,
            ssl=self._settings.verify_ssl,
        ) as resp:
            js = validate_type(await resp.json(), Dict[str, Any])
            if resp.status == 403:
                return {}
            if resp.status != 200:
                raise RuntimeError(f"Token lookup failed: {resp.status}, {js}")
        data_obj = js.get("data")
        if not isinstance(data_obj, dict):
            raise RuntimeError("lookup-self did not return 'data'")
        return data_obj

    # ------------------------------
    # KV V2 Methods
    # ------------------------------
    async def read_secret(self, path: str) -> VaultKVEntry:
        """Read a KV v2 secret and the version it is at.

        Raises:
            SecretNotFoundError: If nothing is stored at `path`.
            RuntimeError: On any other non-200 response.
        """
        token = await self.ensure_valid_token()
        session = await self.ensure_session()
        url = self._url(f"{self._settings.kv_mount}/data/{path}")
        async with session.get(
            url, headers={"X-Vault-Token": token}, ssl=self._settings.verify_ssl
        ) as resp:
            if resp.status == 404:
                raise SecretNotFoundError(f"vault secret '{path}' not found")
            js = validate_type(await resp.json(), Dict[str, Any])
            if resp.status != 200:
                raise RuntimeError(f"Error reading secret: {resp.status}, {js}")

        body = js.get("data") or {}
        return VaultKVEntry(
            data={str(k): str(v) for k, v in (body.get("data") or {}).items()},
            version=int((body.get("metadata") or {}).get("version", 0)),
        )

    async def write_secret(
        self, path: str, data: Dict[str, str], cas: Optional[int] = None
    ) -> int:
        """Write a KV v2 secret, optionally check-and-set, returning the new version.

        Args:
            path: Secret path below the KV mount.
            data: Full data to store.
            cas: 0 to require the path be empty, N to require it be at version N.

        Raises:
            ConflictError: If the check-and-set precondition fails.
            RuntimeError: On any other failure.
        """
        token = await self.ensure_valid_token()
        session = await self.ensure_session()
        url = self._url(f"{self._settings.kv_mount}/data/{path}")
        payload: Dict[str, Any] = {"data": data}
        if cas is not None:
            payload["options"] = {"cas": cas}
        async with session.post(
            url,
            json=payload,
            headers={"X-Vault-Token": token},
            ssl=self._settings.verify_ssl,
        ) as resp:
            try:
                raw_js = await resp.json()
            except aiohttp.ContentTypeError:
                raw_js = {}
            js = validate_type(raw_js or {}, Dict[str, Any])
            if resp.status == 400 and "check-and-set" in str(js.get("errors")):
                raise ConflictError(f"vault secret '{path}' changed: {js}")
            if resp.status not in (200, 204):
                raise RuntimeError(f"Error writing secret: {resp.status}, {js}")
        return int((js.get("data") or {}).get("version", 0))
