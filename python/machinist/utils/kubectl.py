"""
machinist/utils/kubectl.py

Thin helpers around the local 'kubectl' binary. Every call captures stdout,
parses JSON where asked, and translates the two API failures the engine
branches on into typed errors:

  - "NotFound"                      => machinist.errors.NotFoundError
  - "Conflict" / "has been modified" => machinist.errors.ConflictError
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, NoReturn, Optional, Type

from machinist.errors import ConflictError, NotFoundError
from machinist.models.validator import validate_type
from machinist.utils.async_command_runner import run_command, CommandError

_CONFLICT_MARKERS = ("Conflict", "the object has been modified", "AlreadyExists")


def raise_for_kubectl_error(
    ex: CommandError,
    what: str,
    not_found: Type[NotFoundError] = NotFoundError,
) -> NoReturn:
    """
    Re-raise a kubectl CommandError as a typed error where we recognise it.

    Args:
        ex: The failure from run_command.
        what: Human-readable description of the object, e.g. "node/worker-1".
        not_found: NotFoundError subclass to raise for missing objects.

    Raises:
        NotFoundError, ConflictError, or the original CommandError.
    """
    detail = ex.stderr or str(ex)
    if "NotFound" in detail or "not found" in detail:
        raise not_found(f"{what} not found: {detail}") from ex
    if any(marker in detail for marker in _CONFLICT_MARKERS):
        raise ConflictError(f"conflicting write to {what}: {detail}") from ex
    raise ex


async def run_kubectl(
    args: List[str],
    *,
    kubeconfig: Optional[str] = None,
    input_data: Optional[str] = None,
    retries: int = 1,
    retry_delay: float = 1.0,
) -> str:
    """
    Run `kubectl <args>` and return stdout.

    Retries default to a single attempt: callers need NotFound and Conflict to
    surface immediately so they can branch on them.
    """
    cmd = ["kubectl"]
    if kubeconfig:
        cmd += ["--kubeconfig", kubeconfig]
    cmd += args
    return await run_command(
        cmd,
        sensitive=False,
        input_data=input_data,
        retries=retries,
        retry_delay=retry_delay,
    )


async def kubectl_json(
    args: List[str],
    *,
    kubeconfig: Optional[str] = None,
    input_data: Optional[str] = None,
    retries: int = 1,
) -> Dict[str, Any]:
    """
    Run `kubectl <args>` (which must produce JSON) and return the parsed object.
    Empty output yields an empty dict.
    """
    raw = await run_kubectl(
        args, kubeconfig=kubeconfig, input_data=input_data, retries=retries
    )
    if not raw:
        return {}
    return validate_type(json.loads(raw), Dict[str, Any])
