"""
machinist/errors.py

Error taxonomy for the convergence engine:

  - Transient store errors (ConflictError) are retried locally with a bound.
  - Policy violations (PolicyViolationError and subclasses) are never retried.
  - Not-found conditions (NotFoundError and subclasses) are expected branches
    that trigger corrective action in the caller.
  - DrainTimeoutError carries the elapsed time; fatal for the attempt, safe to
    retry later.
"""

from __future__ import annotations

from typing import Optional


class MachinistError(Exception):
    """Base class for every error raised by the engine."""


class ConflictError(MachinistError):
    """A write was rejected because the stored object changed since it was read."""


class NotFoundError(MachinistError):
    """An object the caller asked for does not exist in the store."""


class NodeNotFoundError(NotFoundError):
    """No node matches the requested name or hardware identifiers."""


class SecretNotFoundError(NotFoundError):
    """A secret is absent from the secret store."""


class PolicyViolationError(MachinistError):
    """The requested operation would break a cluster invariant."""


class QuorumError(PolicyViolationError):
    """Not enough ready control-plane members would remain available."""


class LastControlPlaneError(PolicyViolationError):
    """Refusing to remove the last control-plane node."""


class VersionPolicyError(PolicyViolationError):
    """The requested version change is not reachable under the skew rule."""


class UpgradeOrderingError(PolicyViolationError):
    """Control-plane members must reach a version before workers advance."""


class InvalidVersionError(MachinistError, ValueError):
    """A version string is not of the form [v]MAJOR.MINOR.PATCH."""


class JoinCommandNotFoundError(NotFoundError):
    """The join command, or one of its flags, is missing from tool output."""


class UnsupportedOSError(MachinistError):
    """The remote host runs an operating system we have no plan recipe for."""


class EvictionUnsupportedError(MachinistError):
    """The cluster does not offer the safe-eviction API and deletion is not allowed."""


class DrainBlockedError(MachinistError):
    """Pods on the node cannot be removed under the requested drain options."""


class DrainTimeoutError(MachinistError):
    """Pods were still bound to the node when the drain deadline passed.

    Attributes:
        node_name (str): The node being drained.
        elapsed (float): Seconds spent draining before giving up.
        timeout (float): The configured deadline in seconds.
        pending (Optional[int]): Pods still pending at the deadline, if known.
    """

    def __init__(
        self,
        node_name: str,
        elapsed: float,
        timeout: float,
        pending: Optional[int] = None,
    ) -> None:
        super().__init__(
            f"timed out after {elapsed:.1f}s (deadline {timeout:.1f}s) waiting "
            f"for node '{node_name}' to be drained"
            + (f"; {pending} pod(s) still pending" if pending is not None else "")
        )
        self.node_name = node_name
        self.elapsed = elapsed
        self.timeout = timeout
        self.pending = pending
