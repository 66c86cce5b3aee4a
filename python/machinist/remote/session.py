"""
machinist/remote/session.py

SSH-backed remote sessions. The provider learns each host's keys on first
contact (trust on first use) and remembers them for the lifetime of the
provider, so every later command runs with strict host-key checking.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from machinist.models.machine import Endpoint
from machinist.models.ssh import SSHConfig
from machinist.store.interfaces import RemoteSession, RemoteSessionProvider
from machinist.utils.ssh import run_ssh_command, ssh_get_server_key

logger = logging.getLogger(__name__)


class SSHSession(RemoteSession):
    def __init__(
        self, config: SSHConfig, retries: int = 3, retry_delay: float = 1.0
    ) -> None:
        self._config = config
        self._retries = retries
        self._retry_delay = retry_delay

    @property
    def address(self) -> str:
        return self._config.hostname

    async def run(self, command: str, *, sensitive: bool = True) -> str:
        return await run_ssh_command(
            self._config,
            ["sh", "-c", command],
            sensitive=sensitive,
            retries=self._retries,
            retry_delay=self._retry_delay,
        )


class SSHSessionProvider(RemoteSessionProvider):
    def __init__(
        self,
        retries: int = 3,
        retry_delay: float = 1.0,
        known_hosts: Optional[Dict[str, List[str]]] = None,
    ) -> None:
        self._retries = retries
        self._retry_delay = retry_delay
        self._known_hosts: Dict[str, List[str]] = dict(known_hosts or {})

    async def connect(
        self, endpoint: Endpoint, user: str, private_key: str
    ) -> RemoteSession:
        """
        Open a session to `endpoint`, fetching its host keys first if we have
        never seen it.

        Raises:
            CommandError: If the host cannot be reached.
        """
        host = f"{endpoint.address}:{endpoint.port}"
        config = SSHConfig(
            user=user,
            hostname=endpoint.address,
            port=endpoint.port,
            private_key=private_key,
            host_keys=self._known_hosts.get(host),
        )
        if not config.host_keys:
            logger.info("Fetching host keys for %s", host)
            keys = await ssh_get_server_key(
                config, retries=self._retries, retry_delay=self._retry_delay
            )
            self._known_hosts[host] = keys
            config = config.model_copy(update={"host_keys": keys})
        return SSHSession(config, retries=self._retries, retry_delay=self._retry_delay)
