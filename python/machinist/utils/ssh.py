"""
machinist/utils/ssh.py

Low-level SSH helpers built on the `ssh` binary, with ephemeral known_hosts and
private keys kept in /dev/shm:
  - ssh_get_server_key: minimal handshake to retrieve the server host key (TOFU).
  - run_ssh_command: strict host-key-checking command execution.

We allow specifying 'successful_return_codes' for run_ssh_command in case a
non-zero code is expected (e.g. disconnection on reboot).
"""

from __future__ import annotations

import shlex
from typing import Dict, List, Optional

import aiofiles
import aiofiles.ospath

from machinist.models.ssh import SSHConfig
from machinist.utils.async_command_runner import run_command, CommandError
from machinist.utils.ephemeral_file import ephemeral_files

_KNOWN_HOSTS = "ssh_known_hosts"
_IDENTITY = "ssh_idkey"


def _ssh_base_command(
    cfg: SSHConfig, pk_path: str, kh_path: str, host_key_checking: str
) -> List[str]:
    return [
        "ssh",
        "-p",
        str(cfg.port),
        "-i",
        pk_path,
        "-o",
        "BatchMode=yes",
        "-o",
        f"StrictHostKeyChecking={host_key_checking}",
        "-o",
        f"UserKnownHostsFile={kh_path}",
        "-o",
        "GlobalKnownHostsFile=/dev/null",
        "-o",
        "ConnectTimeout=15",
        f"{cfg.user}@{cfg.hostname}",
    ]


async def ssh_get_server_key(
    cfg: SSHConfig,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
) -> List[str]:
    """
    Perform a minimal SSH handshake with StrictHostKeyChecking=accept-new
    to retrieve the server's host key lines (TOFU).

    Args:
      cfg: SSHConfig with user, hostname, port, private_key.
      retries: attempts before giving up
      retry_delay: seconds between attempts

    Returns:
      A list of lines from the ephemeral known_hosts (the server's keys).

    Raises:
      CommandError: if the handshake fails or no host keys were recorded
    """
    async with ephemeral_files(
        {_KNOWN_HOSTS: "", _IDENTITY: cfg.private_key}, prefix="sshkh-"
    ) as paths:
        kh_path = paths[_KNOWN_HOSTS]
        ssh_cmd = _ssh_base_command(
            cfg, paths[_IDENTITY], kh_path, "accept-new"
        ) + ["exit", "0"]
        await run_command(ssh_cmd, retries=retries, retry_delay=retry_delay)

        lines: List[str] = []
        if await aiofiles.ospath.exists(kh_path):
            async with aiofiles.open(kh_path, "r", encoding="utf-8") as fkh:
                content = await fkh.readlines()
                lines = [ln.strip() for ln in content if ln.strip()]

        if not lines:
            raise CommandError(
                "ssh_get_server_key found no lines; server key not retrieved."
            )
        return lines


async def run_ssh_command(
    ssh_config: SSHConfig,
    remote_command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    input_data: Optional[str] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    successful_return_codes: Optional[List[int]] = None,
) -> str:
    """
    Run an SSH command in strict host-key-checking mode, requiring host_keys in ssh_config.

    Args:
      ssh_config: Must have user, hostname, port, private_key, host_keys
      remote_command: The actual remote command tokens
      sensitive: If True, hides details in the error message
      env: optional environment variables for the remote command
      input_data: optional text piped to the remote command's stdin
      retries: total attempts
      retry_delay: seconds between attempts
      successful_return_codes: exit codes considered "non-error", default [0]

    Returns:
      captured stdout from the remote command

    Raises:
      CommandError: if host_keys is empty or the command fails.
    """
    if not ssh_config.host_keys:
        raise CommandError("run_ssh_command requires non-empty host_keys.")

    known_hosts = "".join(line + "\n" for line in ssh_config.host_keys)
    async with ephemeral_files(
        {_KNOWN_HOSTS: known_hosts, _IDENTITY: ssh_config.private_key},
        prefix="sshpk-",
    ) as paths:
        ssh_cmd = _ssh_base_command(
            ssh_config, paths[_IDENTITY], paths[_KNOWN_HOSTS], "yes"
        )
        if env:
            remote_command = (
                ["env"] + [f"{k}={v}" for k, v in env.items()] + remote_command
            )
        ssh_cmd.append(" ".join(shlex.quote(x) for x in remote_command))

        return await run_command(
            ssh_cmd,
            sensitive=sensitive,
            input_data=input_data,
            retries=retries,
            retry_delay=retry_delay,
            successful_return_codes=successful_return_codes,
        )
