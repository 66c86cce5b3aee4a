"""
machinist/drain.py

Drain engine: cordon -> evict-loop -> done | timeout.

The evict loop lists the pods bound to a node, drops those we leave alone
(ignore list, mirror pods, DaemonSet pods when configured, finished pods),
and requests eviction of the rest. It polls with a sleep of
min(remaining, max(5s, timeout/10)) and fails with DrainTimeoutError once the
deadline passes with pods still bound.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Tuple

from pydantic import BaseModel, Field

from machinist.errors import (
    DrainBlockedError,
    DrainTimeoutError,
    EvictionUnsupportedError,
)
from machinist.models.k8s import Pod
from machinist.reconcile.nodes import NodeOperations
from machinist.store.interfaces import PodEvictor

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT = 60.0
MIN_POLL_INTERVAL = 5.0


class DrainParams(BaseModel):
    force: bool = False
    delete_local_data: bool = False
    ignore_all_daemonsets: bool = False
    timeout: float = Field(default=DEFAULT_DRAIN_TIMEOUT, gt=0)
    ignore: List[Tuple[str, str]] = Field(default_factory=list)
    delete_without_eviction: bool = False

    @property
    def poll_interval(self) -> float:
        return max(MIN_POLL_INTERVAL, self.timeout / 10)


def pods_to_evict(pods: List[Pod], params: DrainParams) -> List[Pod]:
    """
    Select the pods a drain must remove.

    Raises:
        DrainBlockedError: If a pod can only be removed with an option that
            was not granted (DaemonSet pods, unmanaged pods, local storage).
    """
    ignored = set(params.ignore)
    selected: List[Pod] = []
    blocked: List[str] = []
    for pod in pods:
        if (pod.namespace, pod.name) in ignored or pod.is_mirror or pod.is_terminated:
            continue
        if pod.is_daemonset_managed:
            if params.ignore_all_daemonsets:
                continue
            blocked.append(f"{pod.namespace}/{pod.name} (DaemonSet-managed)")
        elif pod.is_unmanaged and not params.force:
            blocked.append(f"{pod.namespace}/{pod.name} (not managed by a controller)")
        elif pod.has_local_storage and not params.delete_local_data:
            blocked.append(f"{pod.namespace}/{pod.name} (uses local storage)")
        else:
            selected.append(pod)
    if blocked:
        raise DrainBlockedError("cannot drain: " + ", ".join(blocked))
    return selected


class Drainer:
    """
    Evacuates workloads from a node.

    Args:
        evictor: Pod listing and eviction backend.
        nodes: Node updater used for cordon/uncordon.
        clock: Monotonic clock in seconds; injectable for tests.
        sleep: Awaitable sleep; injectable for tests.
    """

    def __init__(
        self,
        evictor: PodEvictor,
        nodes: NodeOperations,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._evictor = evictor
        self._nodes = nodes
        self._clock = clock
        self._sleep = sleep

    async def cordon(self, node_name: str) -> None:
        await self._nodes.set_unschedulable(node_name, True)

    async def uncordon(self, node_name: str) -> None:
        await self._nodes.set_unschedulable(node_name, False)

    async def drain(self, node_name: str, params: DrainParams) -> None:
        """
        Cordon `node_name` and evict its pods.

        Raises:
            EvictionUnsupportedError: If the cluster has no eviction API and
                params.delete_without_eviction is False.
            DrainBlockedError: If a pod may not be removed under `params`.
            DrainTimeoutError: If pods remain bound at the deadline.
        """
        use_eviction = await self._evictor.supports_eviction()
        if not use_eviction and not params.delete_without_eviction:
            raise EvictionUnsupportedError(
                f"cannot drain {node_name}: the eviction API is unavailable "
                "and deleting pods directly was not allowed"
            )
        logger.info("Draining node %s (timeout %.0fs)", node_name, params.timeout)
        await self.cordon(node_name)
        await self.evict_loop(node_name, params, use_eviction=use_eviction)
        logger.info("Drained node %s", node_name)

    async def _evict_pass(
        self, node_name: str, params: DrainParams, use_eviction: bool
    ) -> int:
        pods = pods_to_evict(
            await self._evictor.list_pods_on_node(node_name), params
        )
        for pod in pods:
            if use_eviction:
                await self._evictor.evict(pod)
            else:
                await self._evictor.delete_pod(pod)
        return len(pods)

    async def evict_loop(
        self, node_name: str, params: DrainParams, use_eviction: bool = True
    ) -> None:
        start = self._clock()
        deadline = start + params.timeout
        while True:
            pending = await self._evict_pass(node_name, params, use_eviction)
            if pending == 0:
                return
            now = self._clock()
            remaining = deadline - now
            if remaining <= 0:
                raise DrainTimeoutError(
                    node_name, now - start, params.timeout, pending=pending
                )
            logger.debug(
                "%d pod(s) still on %s, %.1fs left", pending, node_name, remaining
            )
            await self._sleep(min(remaining, params.poll_interval))
