"""
machinist/utils/async_command_runner.py

Reusable asynchronous command runner with retry logic, used for every `ssh` and
`kubectl` invocation the engine makes.

CommandError keeps the captured stderr on the exception even when the command
is marked sensitive, so callers can classify failures (NotFound, Conflict, ...)
without the details leaking into the printed message.

Usage example:
    from machinist.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["kubectl", "get", "nodes", "-o", "json"])
    except CommandError as err:
        if "NotFound" in err.stderr:
            ...
"""

from __future__ import annotations

import os
import asyncio
from typing import Callable, Dict, List, Optional

from machinist.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured standard error, empty if unavailable.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries
    and an optional error parser callback.

    If the command fails (return code not in successful_return_codes), we raise
    CommandError. If `error_parser` is given, we pass stderr to it, and if it returns
    a non-None string, we raise that as a short message. Otherwise, we raise the
    usual "Command failed" message.

    When `sensitive=True`, we omit the command, stdout, and stderr from the error
    message (stderr is still attached to the exception as an attribute).

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error message.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, passed to stdin.
        successful_return_codes (Optional[List[int]]):
            Which return codes won't be treated as errors. Defaults to [0].
        retries (int):
            Total attempts before giving up. Defaults to 3.
        retry_delay (float):
            Delay in seconds between attempts. Defaults to 1.0.
        error_parser (Optional[Callable[[str], Optional[str]]]):
            Receives stderr; a non-None return becomes the error message.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails after all attempts.
    """
    ok_codes = successful_return_codes or [0]

    @async_retry(retries=max(retries, 1), delay=retry_delay)
    async def _inner_run_command() -> str:
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
            cwd=cwd,
        )

        stdout_bytes, stderr_bytes = await proc.communicate(
            input=input_data.encode() if input_data else None
        )
        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode not in ok_codes:
            short_message = error_parser(stderr_str) if error_parser else None
            if short_message is not None:
                raise CommandError(short_message, proc.returncode, stderr_str)

            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )

            raise CommandError(
                f"Command failed with return code {proc.returncode}.{detail}",
                proc.returncode,
                stderr_str,
            )

        return stdout_str

    return await _inner_run_command()
