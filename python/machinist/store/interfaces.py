"""
machinist/store/interfaces.py

Abstract capabilities the convergence engine depends on:
  - ObjectStore:            nodes, config maps and pods of the cluster
  - SecretStore:            conditional reads/writes of named secrets
  - RemoteSession(+Provider): command execution on a host with no agent
  - PlanExecutor:           builds, applies and diffs host plans
  - PodEvictor:             pod listing and eviction for the drain engine
  - Provisioner:            optional, creates hosts that have no address yet

Concrete implementations live in store.kubectl_store, store.vault_store,
remote.session and plans.executor. Tests substitute in-memory fakes.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from machinist.errors import UnsupportedOSError
from machinist.models.credentials import MachineIdentifiers, OSInfo, PackageFamily
from machinist.models.k8s import Node, Pod
from machinist.models.machine import ClusterSpec, Endpoint, Machine
from machinist.models.plan import NodeParams, Plan

_OS_ID_RE = re.compile(r"^ID=(.+)$", re.MULTILINE)

OS_PACKAGE_FAMILIES: Dict[str, PackageFamily] = {
    "ubuntu": PackageFamily.DEB,
    "centos": PackageFamily.RPM,
    "rhel": PackageFamily.RPM,
}


class SecretRecord(BaseModel):
    """A secret's decoded data plus the version used for conditional writes."""

    namespace: str
    name: str
    data: Dict[str, str] = Field(default_factory=dict)
    resource_version: Optional[str] = None


class ObjectStore(ABC):
    @abstractmethod
    async def get_node(self, name: str) -> Node:
        """
        Raises:
            NodeNotFoundError: If no node has that name.
        """
        pass

    @abstractmethod
    async def list_nodes(self) -> List[Node]:
        pass

    @abstractmethod
    async def replace_node(self, node: Node) -> Node:
        """
        Write `node` back, conditional on the resourceVersion it carries.

        Raises:
            ConflictError: If the stored node changed since it was read.
        """
        pass

    @abstractmethod
    async def delete_node(self, name: str) -> None:
        """
        Raises:
            NodeNotFoundError: If the node is already gone.
        """
        pass

    @abstractmethod
    async def get_config_map(self, namespace: str, name: str) -> Dict[str, str]:
        """
        Raises:
            NotFoundError: If the config map does not exist.
        """
        pass

    @abstractmethod
    async def list_pods(
        self, namespace: str, label_selector: str
    ) -> List[Dict[str, Any]]:
        """Pod manifests in `namespace` matching `label_selector`."""
        pass


class SecretStore(ABC):
    @abstractmethod
    async def get_secret(self, namespace: str, name: str) -> SecretRecord:
        """
        Raises:
            SecretNotFoundError: If the secret does not exist.
        """
        pass

    @abstractmethod
    async def create_secret(
        self, namespace: str, name: str, data: Dict[str, str]
    ) -> SecretRecord:
        """
        Create a secret with its full data in one write.

        Raises:
            ConflictError: If a secret with that name already exists.
        """
        pass

    @abstractmethod
    async def patch_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, str],
        resource_version: Optional[str] = None,
    ) -> SecretRecord:
        """
        Merge `data` into an existing secret. When `resource_version` is given
        the write only succeeds if the secret is still at that version.

        Raises:
            SecretNotFoundError: If the secret does not exist.
            ConflictError: If the secret moved past `resource_version`.
        """
        pass


class RemoteSession(ABC):
    """A command channel to one host."""

    @property
    @abstractmethod
    def address(self) -> str:
        pass

    @abstractmethod
    async def run(self, command: str, *, sensitive: bool = True) -> str:
        """
        Run a shell command on the host and return its stdout.

        Raises:
            CommandError: If the command exits non-zero or the channel fails.
        """
        pass

    async def identify_os(self) -> OSInfo:
        """
        Identify the host OS from /etc/*release.

        Raises:
            UnsupportedOSError: If the ID is missing or unknown.
        """
        output = await self.run("cat /etc/*release", sensitive=False)
        match = _OS_ID_RE.search(output)
        if not match:
            raise UnsupportedOSError(
                f"could not determine operating system of {self.address}"
            )
        os_id = match.group(1).strip().strip('"')
        family = OS_PACKAGE_FAMILIES.get(os_id)
        if family is None:
            raise UnsupportedOSError(
                f"unsupported operating system '{os_id}' on {self.address}"
            )
        return OSInfo(id=os_id, package_family=family)

    async def machine_identifiers(self) -> MachineIdentifiers:
        machine_id = await self.run("cat /etc/machine-id", sensitive=False)
        system_uuid = await self.run(
            "cat /sys/class/dmi/id/product_uuid", sensitive=False
        )
        return MachineIdentifiers(
            machine_id=machine_id.strip(), system_uuid=system_uuid.strip()
        )


class RemoteSessionProvider(ABC):
    @abstractmethod
    async def connect(
        self, endpoint: Endpoint, user: str, private_key: str
    ) -> RemoteSession:
        pass


class UpgradeRole(str, Enum):
    ORIGINAL_CONTROL_PLANE = "original-control-plane"
    SECONDARY_CONTROL_PLANE = "secondary-control-plane"
    WORKER = "worker"


class PlanExecutor(ABC):
    @abstractmethod
    async def node_plan(
        self, session: RemoteSession, os_info: OSInfo, params: NodeParams
    ) -> Plan:
        pass

    @abstractmethod
    async def upgrade_plan(
        self,
        session: RemoteSession,
        os_info: OSInfo,
        version: str,
        role: UpgradeRole,
    ) -> Plan:
        pass

    @abstractmethod
    async def apply(self, session: RemoteSession, plan: Plan) -> None:
        """
        Raises:
            CommandError: If any resource of the plan fails to apply.
        """
        pass

    @abstractmethod
    def diff(self, current: str, desired: str) -> str:
        """Human-readable difference between two plan JSON documents."""
        pass


class PodEvictor(ABC):
    @abstractmethod
    async def supports_eviction(self) -> bool:
        pass

    @abstractmethod
    async def list_pods_on_node(self, node_name: str) -> List[Pod]:
        pass

    @abstractmethod
    async def evict(self, pod: Pod) -> bool:
        """
        Request eviction of `pod`. Returns False when a disruption budget
        refuses the eviction for now.
        """
        pass

    @abstractmethod
    async def delete_pod(self, pod: Pod) -> None:
        pass


class Provisioner(ABC):
    @abstractmethod
    async def provision(self, cluster: ClusterSpec, machine: Machine) -> Endpoint:
        """Create the host for `machine` and return the endpoint to dial."""
        pass
