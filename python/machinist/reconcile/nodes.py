"""
machinist/reconcile/nodes.py

Node bookkeeping for the reconciler: conflict-retrying read-modify-write of
node objects, lookups by hardware identity and role, and the control-plane
quorum rule.

Quorum rule: the ready, untainted control-plane members other than the
target must form a strict majority of the control-plane membership that
exists while the operation runs. That membership is N for an update (the
target comes back) and N-1 for a removal. Removing the last control-plane
member is always rejected.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional

from machinist.errors import (
    LastControlPlaneError,
    NodeNotFoundError,
    QuorumError,
)
from machinist.models.credentials import MachineIdentifiers
from machinist.models.k8s import ORIGINAL_MASTER_LABEL, Node
from machinist.store.interfaces import ObjectStore
from machinist.utils.async_retry import retry_on_conflict
from machinist.utils.versions import is_up_or_downgrade, less_than

logger = logging.getLogger(__name__)

NO_SCHEDULE = "NoSchedule"

NodeMutator = Callable[[Node], bool]


def available_for_quorum(node: Node) -> bool:
    return node.is_ready and not node.has_taint_value(NO_SCHEDULE)


def check_control_plane_quorum(
    nodes: List[Node], target: str, removing: bool = False
) -> None:
    """
    Raise unless taking `target` out of service keeps control-plane quorum.

    Args:
        nodes: Every node in the cluster; non control-plane nodes are ignored.
        target: Name of the node about to be updated or removed.
        removing: True when the target leaves the membership for good.

    Raises:
        LastControlPlaneError: When removing the only control-plane node.
        QuorumError: When too few peers would remain available.
    """
    members = [n for n in nodes if n.is_control_plane]
    if removing and len(members) <= 1:
        raise LastControlPlaneError(
            f"refusing to remove '{target}': it is the last control-plane node"
        )
    membership = len(members) - 1 if removing else len(members)
    required = membership // 2 + 1
    available = sum(
        1 for n in members if n.name != target and available_for_quorum(n)
    )
    if available < required:
        raise QuorumError(
            f"not enough available control-plane nodes to take '{target}' out of "
            f"service: {available} available, {required} required"
        )


class NodeOperations:
    """
    Node reads and conflict-safe writes.

    Args:
        store: The object store holding the nodes.
        controller_namespace: Namespace the reconciler's own pod runs in.
        controller_name: Value of the reconciler pod's "name" label.
        retry_steps: Attempts for each read-modify-write.
        retry_delay: Initial backoff after a conflict.
        rng: Random source for picking a representative control-plane node.
        sleep: Awaitable sleep used between conflicting attempts.
    """

    def __init__(
        self,
        store: ObjectStore,
        controller_namespace: str,
        controller_name: str,
        retry_steps: int = 5,
        retry_delay: float = 0.01,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._controller_namespace = controller_namespace
        self._controller_name = controller_name
        self._retry_steps = retry_steps
        self._retry_delay = retry_delay
        self._rng = rng or random.Random()
        self._sleep = sleep

    async def modify_node(self, name: str, mutate: NodeMutator) -> Node:
        """
        Re-read node `name`, apply `mutate` and write it back, retrying on
        conflict. `mutate` returns False when the node already has the
        desired state, in which case nothing is written.

        Raises:
            NodeNotFoundError: If the node disappears.
            ConflictError: If every attempt conflicted.
        """

        async def attempt() -> Node:
            node = await self._store.get_node(name)
            if not mutate(node):
                return node
            return await self._store.replace_node(node)

        try:
            return await retry_on_conflict(
                attempt,
                steps=self._retry_steps,
                initial_delay=self._retry_delay,
                sleep=self._sleep,
            )
        except Exception as ex:
            logger.error("Failed to update node %s: %s", name, ex)
            raise

    async def set_annotation(self, name: str, key: str, value: str) -> Node:
        def mutate(node: Node) -> bool:
            if node.annotations.get(key) == value:
                return False
            node.set_annotation(key, value)
            return True

        return await self.modify_node(name, mutate)

    async def set_label(self, name: str, key: str, value: str = "") -> Node:
        def mutate(node: Node) -> bool:
            if node.labels.get(key) == value:
                return False
            node.set_label(key, value)
            return True

        return await self.modify_node(name, mutate)

    async def set_unschedulable(self, name: str, unschedulable: bool) -> Node:
        def mutate(node: Node) -> bool:
            if node.unschedulable == unschedulable:
                return False
            node.set_unschedulable(unschedulable)
            return True

        return await self.modify_node(name, mutate)

    async def set_provider_id(self, name: str, provider_id: str) -> Node:
        def mutate(node: Node) -> bool:
            if node.provider_id == provider_id:
                return False
            node.set_provider_id(provider_id)
            return True

        return await self.modify_node(name, mutate)

    # -- lookups ------------------------------------------------------------

    async def find_node_by_ids(self, ids: MachineIdentifiers) -> Node:
        """
        The node whose machine-id and system-UUID both match `ids`.

        Raises:
            NodeNotFoundError: If no node matches.
        """
        for node in await self._store.list_nodes():
            if (
                node.machine_id == ids.machine_id
                and node.system_uuid == ids.system_uuid
            ):
                return node
        raise NodeNotFoundError(
            f"no node with machine-id {ids.machine_id} "
            f"and system-uuid {ids.system_uuid}"
        )

    async def control_plane_nodes(self) -> List[Node]:
        return [n for n in await self._store.list_nodes() if n.is_control_plane]

    async def ensure_original_marker(self) -> Node:
        """
        Return the original control-plane node, labelling the first
        control-plane node as such if none carries the marker yet.

        Raises:
            NodeNotFoundError: If the cluster has no control-plane node.
        """
        members = await self.control_plane_nodes()
        marked = next((n for n in members if n.is_original_control_plane), None)
        if marked is not None:
            return marked
        if not members:
            raise NodeNotFoundError("no control-plane node found")
        chosen = members[0]
        logger.info("Marking %s as the original control-plane node", chosen.name)
        return await self.set_label(chosen.name, ORIGINAL_MASTER_LABEL, "")

    async def pick_control_plane(self) -> Node:
        """
        A uniformly random ready control-plane node, or any control-plane
        node when none is ready.

        Raises:
            NodeNotFoundError: If the cluster has no control-plane node.
        """
        members = await self.control_plane_nodes()
        if not members:
            raise NodeNotFoundError("no control-plane node found")
        ready = [n for n in members if n.is_ready]
        return self._rng.choice(ready or members)

    async def controller_node_name(self) -> Optional[str]:
        """Name of the node running the reconciler's pod, if it is scheduled."""
        pods = await self._store.list_pods(
            self._controller_namespace, f"name={self._controller_name}"
        )
        for pod in pods:
            node_name = (pod.get("spec") or {}).get("nodeName")
            if node_name:
                return str(node_name)
        return None

    async def control_plane_not_at_version(self, version: str) -> bool:
        """True if any control-plane node runs a version below `version`."""
        return any(
            self.needs_update(n, version) for n in await self.control_plane_nodes()
        )

    async def original_not_at_version(self, version: str) -> bool:
        original = await self.ensure_original_marker()
        return self.needs_update(original, version)

    @staticmethod
    def needs_update(node: Node, version: str) -> bool:
        running = node.kubelet_version
        if not running:
            return True
        return is_up_or_downgrade(running, version) and less_than(running, version)

    async def check_control_plane_quorum(
        self, target: str, removing: bool = False
    ) -> None:
        check_control_plane_quorum(
            await self._store.list_nodes(), target, removing=removing
        )
