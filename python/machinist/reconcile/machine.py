"""
machinist/reconcile/machine.py

The machine reconciliation state machine. For one declared Machine it works
out where the host stands (absent, converged, divergent, being deleted) and
sequences the remote session, plan executor, upgrade policy, credential
manager and drain engine to move it one step toward the declared state.

Every public operation logs its start and any failure, and never records a
new plan annotation unless the work that plan describes has succeeded, so a
failed attempt can always be retried from scratch.
"""

from __future__ import annotations

import logging
import random
from enum import Enum
from typing import Dict, Optional

from machinist.drain import DrainParams, Drainer
from machinist.errors import (
    MachinistError,
    NodeNotFoundError,
    NotFoundError,
    UpgradeOrderingError,
)
from machinist.models.credentials import OSInfo
from machinist.models.k8s import PLAN_ANNOTATION, Node
from machinist.models.machine import ClusterSpec, Endpoint, Machine
from machinist.models.plan import NodeParams, Plan, SeedPlanParams, plans_equal
from machinist.models.settings import ReconcilerSettings
from machinist.plans.executor import ScriptPlanExecutor
from machinist.reconcile.nodes import NodeOperations
from machinist.remote.session import SSHSessionProvider
from machinist.secrets.credentials import CredentialManager, JoinOutputSource
from machinist.secrets.vault_client import AsyncVaultClient
from machinist.store.interfaces import (
    ObjectStore,
    PlanExecutor,
    Provisioner,
    RemoteSession,
    RemoteSessionProvider,
    SecretStore,
    UpgradeRole,
)
from machinist.store.kubectl_store import (
    KubectlObjectStore,
    KubectlPodEvictor,
    KubectlSecretStore,
)
from machinist.store.vault_store import VaultSecretStore
from machinist.utils.async_command_runner import CommandError
from machinist.utils.joincmd import PRINT_JOIN_COMMAND
from machinist.utils.versions import (
    check_for_version_jump,
    is_up_or_downgrade,
    node_style_version,
)

logger = logging.getLogger(__name__)


class MachinePhase(str, Enum):
    ABSENT = "absent"
    PROVISIONING = "provisioning"
    PRESENT_CONVERGED = "present-converged"
    PRESENT_DIVERGENT = "present-divergent"
    UPDATING = "updating"
    DELETING = "deleting"
    GONE = "gone"


class MachineReconciler:
    """
    Converges machines one at a time. Callers must not run two
    reconciliations of the same machine concurrently; different machines may
    be reconciled in parallel on one instance.

    Args:
        objects: Object store holding nodes, pods and config maps.
        credentials: Source of SSH keys, join credentials and trust material.
        sessions: Opens remote sessions to hosts.
        executor: Builds and applies plans.
        nodes: Node bookkeeping on top of `objects`.
        drainer: Drain engine.
        settings: Controller identity and drain options.
        provisioner: Creates hosts for machines that have no address yet.
    """

    def __init__(
        self,
        objects: ObjectStore,
        credentials: CredentialManager,
        sessions: RemoteSessionProvider,
        executor: PlanExecutor,
        nodes: NodeOperations,
        drainer: Drainer,
        settings: Optional[ReconcilerSettings] = None,
        provisioner: Optional[Provisioner] = None,
    ) -> None:
        self._objects = objects
        self._credentials = credentials
        self._sessions = sessions
        self._executor = executor
        self._nodes = nodes
        self._drainer = drainer
        self._settings = settings or ReconcilerSettings()
        self._provisioner = provisioner
        self._addresses: Dict[str, Endpoint] = {}
        self._drain_params = DrainParams(
            force=self._settings.drain_force,
            delete_local_data=self._settings.drain_delete_local_data,
            ignore_all_daemonsets=self._settings.drain_ignore_daemonsets,
            timeout=self._settings.drain_timeout_seconds,
        )

    @classmethod
    def from_settings(
        cls,
        settings: ReconcilerSettings,
        *,
        sessions: Optional[RemoteSessionProvider] = None,
        executor: Optional[PlanExecutor] = None,
        provisioner: Optional[Provisioner] = None,
        vault_client: Optional[AsyncVaultClient] = None,
        rng: Optional[random.Random] = None,
    ) -> MachineReconciler:
        """
        Wire a reconciler to the kubectl and (optionally) Vault backends.

        Sessions default to SSH using the configured command retry budget, and
        plans default to the shell-script executor.
        """
        objects = KubectlObjectStore(settings.kubeconfig)
        if settings.secret_backend == "vault":
            if vault_client is None:
                if settings.vault is None:
                    raise MachinistError("vault backend selected without settings")
                vault_client = AsyncVaultClient(settings.vault)
            secret_store: SecretStore = VaultSecretStore(vault_client)
        else:
            secret_store = KubectlSecretStore(settings.kubeconfig)
        nodes = NodeOperations(
            objects,
            settings.controller_namespace,
            settings.controller_name,
            retry_steps=settings.conflict_retry_steps,
            retry_delay=settings.conflict_retry_delay,
            rng=rng,
        )
        return cls(
            objects=objects,
            credentials=CredentialManager(
                secret_store,
                settings.controller_namespace,
                settings.controller_secret,
            ),
            sessions=sessions
            or SSHSessionProvider(
                retries=settings.command_retries,
                retry_delay=settings.command_retry_delay,
            ),
            executor=executor or ScriptPlanExecutor(),
            nodes=nodes,
            drainer=Drainer(KubectlPodEvictor(settings.kubeconfig), nodes),
            settings=settings,
            provisioner=provisioner,
        )

    # -- helpers ------------------------------------------------------------

    def _record_event(self, machine: Machine, reason: str, message: str) -> None:
        logger.info("[%s] %s: %s", machine.key, reason, message)

    def _endpoint(self, machine: Machine) -> Optional[Endpoint]:
        return machine.public or self._addresses.get(machine.key)

    def _node_address(self, machine: Machine) -> str:
        if machine.private is not None:
            return machine.private.address
        endpoint = self._endpoint(machine)
        if endpoint is None:
            raise MachinistError(f"machine {machine.name} has no address")
        return endpoint.address

    async def _connect(self, cluster: ClusterSpec, machine: Machine) -> RemoteSession:
        endpoint = self._endpoint(machine)
        if endpoint is None:
            raise MachinistError(f"machine {machine.name} has no address to connect to")
        key = await self._credentials.ssh_private_key()
        try:
            return await self._sessions.connect(endpoint, cluster.ssh_user, key)
        except CommandError as ex:
            raise CommandError(
                f"failed to establish connection to machine {machine.name}: {ex}",
                return_code=ex.return_code,
                stderr=ex.stderr,
            ) from ex

    def _join_output_source(self, cluster: ClusterSpec) -> JoinOutputSource:
        """Prints a join command on a representative control-plane host."""

        async def print_join_command() -> str:
            representative = await self._nodes.pick_control_plane()
            address = representative.internal_address
            if not address:
                raise MachinistError(
                    f"control-plane node {representative.name} has no internal address"
                )
            key = await self._credentials.ssh_private_key()
            session = await self._sessions.connect(
                Endpoint(address=address), cluster.ssh_user, key
            )
            logger.info("Printing join command on %s", representative.name)
            return await session.run(PRINT_JOIN_COMMAND, sensitive=True)

        return print_join_command

    async def _resolve_files(
        self, cluster: ClusterSpec, namespace: str
    ) -> Dict[str, str]:
        config_maps: Dict[str, Dict[str, str]] = {}
        files: Dict[str, str] = {}
        for spec in cluster.files:
            if spec.content is not None:
                files[spec.path] = spec.content
                continue
            if spec.config_map is None or spec.key is None:
                raise NotFoundError(f"file {spec.path} has no content source")
            if spec.config_map not in config_maps:
                config_maps[spec.config_map] = await self._objects.get_config_map(
                    namespace, spec.config_map
                )
            data = config_maps[spec.config_map]
            if spec.key not in data:
                raise NotFoundError(
                    f"key '{spec.key}' missing from config map "
                    f"{namespace}/{spec.config_map}"
                )
            files[spec.path] = data[spec.key]
        return files

    async def _desired_plan(
        self,
        session: RemoteSession,
        os_info: OSInfo,
        cluster: ClusterSpec,
        machine: Machine,
    ) -> Plan:
        credential = await self._credentials.obtain_join_credential(
            self._join_output_source(cluster)
        )
        representative = await self._nodes.pick_control_plane()
        address = representative.internal_address
        if not address:
            raise MachinistError(
                f"control-plane node {representative.name} has no internal address"
            )
        params = NodeParams(
            is_control_plane=machine.is_control_plane,
            control_plane_address=address,
            control_plane_port=cluster.api_server_port,
            token=credential.token,
            ca_cert_hash=credential.ca_cert_hash,
            certificate_key=credential.certificate_key,
            node_ip=self._node_address(machine),
            version=node_style_version(machine.version),
            files=await self._resolve_files(cluster, machine.namespace),
            cloud_provider=cluster.cloud_provider,
            kubelet_extra_args=cluster.kubelet_extra_args,
            namespace=machine.namespace,
            control_plane_endpoint=cluster.control_plane_endpoint,
        )
        return await self._executor.node_plan(session, os_info, params)

    async def _initialize_seed_plan(
        self, session: RemoteSession, os_info: OSInfo, cluster: ClusterSpec
    ) -> None:
        """
        Mark the original control-plane node and, if it has never been
        annotated, record the plan it was bootstrapped with.
        """
        original = await self._nodes.ensure_original_marker()
        if original.applied_plan:
            return
        config_map = await self._objects.get_config_map(
            self._settings.controller_namespace, self._settings.seed_plan_config_map
        )
        seed = SeedPlanParams.from_config_map(config_map)
        trust = await self._credentials.trust_material(
            self._join_output_source(cluster)
        )
        params = NodeParams(
            is_control_plane=True,
            control_plane_address=seed.node_ip,
            control_plane_port=cluster.api_server_port,
            token="",
            ca_cert_hash=trust.ca_cert_hash,
            certificate_key=trust.certificate_key,
            node_ip=seed.node_ip,
            version=node_style_version(seed.version),
            files=seed.files,
            cloud_provider=seed.cloud_provider,
            kubelet_extra_args=seed.kubelet_extra_args,
            namespace=self._settings.controller_namespace,
            control_plane_endpoint=cluster.control_plane_endpoint,
        )
        plan = await self._executor.node_plan(session, os_info, params)
        logger.info("Recording seed plan on original node %s", original.name)
        await self._nodes.set_annotation(original.name, PLAN_ANNOTATION, plan.to_json())

    async def _set_provider_id(self, node: Node, machine: Machine) -> None:
        if not machine.provider_id:
            return
        try:
            await self._nodes.set_provider_id(node.name, machine.provider_id)
        except (MachinistError, CommandError) as ex:
            logger.warning(
                "Could not set provider id on node %s for machine %s: %s",
                node.name,
                machine.name,
                ex,
            )

    # -- phases ---------------------------------------------------------------

    def phase_for(
        self, machine: Machine, node: Optional[Node], plan_json: Optional[str] = None
    ) -> MachinePhase:
        """
        Classify where `machine` stands given its node and desired plan.

        Without a desired plan a present node is only known to be mid-upgrade
        or to need a plan check, so it classifies as updating or divergent.
        """
        if machine.deletion_requested:
            return MachinePhase.GONE if node is None else MachinePhase.DELETING
        if node is None:
            if self._endpoint(machine) is None:
                return MachinePhase.PROVISIONING
            return MachinePhase.ABSENT
        if plan_json is not None and plans_equal(node.applied_plan, plan_json):
            return MachinePhase.PRESENT_CONVERGED
        if node.unschedulable and is_up_or_downgrade(
            node.kubelet_version, machine.version
        ):
            return MachinePhase.UPDATING
        return MachinePhase.PRESENT_DIVERGENT

    # -- public operations --------------------------------------------------

    async def exists(self, cluster: ClusterSpec, machine: Machine) -> bool:
        logger.info("Checking existence of machine %s", machine.name)
        try:
            return await self._exists(cluster, machine)
        except Exception as ex:
            logger.error("Failed to check existence of machine %s: %s", machine.name, ex)
            raise

    async def _exists(self, cluster: ClusterSpec, machine: Machine) -> bool:
        return await self._observe(cluster, machine) is not None

    async def _observe(self, cluster: ClusterSpec, machine: Machine) -> Optional[Node]:
        """
        The node backing `machine`, or None. A host is provisioned first when
        the machine has no address, unless the machine is being deleted.
        """
        if self._endpoint(machine) is None:
            if machine.deletion_requested:
                return None
            if self._provisioner is None:
                raise MachinistError(
                    f"machine {machine.name} has no address and no provisioner"
                )
            logger.info("Creating underlying host for machine %s", machine.name)
            endpoint = await self._provisioner.provision(cluster, machine)
            self._addresses[machine.key] = endpoint
            logger.info(
                "Created underlying host for machine %s: %s",
                machine.name,
                endpoint.address,
            )
        session = await self._connect(cluster, machine)
        ids = await session.machine_identifiers()
        try:
            node = await self._nodes.find_node_by_ids(ids)
        except NodeNotFoundError:
            self._record_event(
                machine,
                "Exists",
                f"machine {machine.name} ({ids.system_uuid} ; {ids.machine_id}) "
                "is not a node",
            )
            return None
        self._record_event(
            machine, "Exists", f"machine {machine.name} is node {node.name}"
        )
        return node

    async def create(self, cluster: ClusterSpec, machine: Machine) -> None:
        logger.info("Creating machine %s", machine.name)
        try:
            await self._create(cluster, machine)
        except Exception as ex:
            logger.error("Failed to create machine %s: %s", machine.name, ex)
            raise

    async def _create(self, cluster: ClusterSpec, machine: Machine) -> None:
        session = await self._connect(cluster, machine)
        os_info = await session.identify_os()
        await self._initialize_seed_plan(session, os_info, cluster)
        plan = await self._desired_plan(session, os_info, cluster, machine)
        await self._executor.apply(session, plan)
        ids = await session.machine_identifiers()
        node = await self._nodes.find_node_by_ids(ids)
        await self._nodes.set_annotation(node.name, PLAN_ANNOTATION, plan.to_json())
        await self._set_provider_id(node, machine)
        self._record_event(machine, "Create", f"created machine {machine.name}")

    async def update(self, cluster: ClusterSpec, machine: Machine) -> MachinePhase:
        logger.info("Updating machine %s", machine.name)
        try:
            return await self._update(cluster, machine)
        except Exception as ex:
            logger.error("Failed to update machine %s: %s", machine.name, ex)
            raise

    async def _update(self, cluster: ClusterSpec, machine: Machine) -> MachinePhase:
        session = await self._connect(cluster, machine)
        os_info = await session.identify_os()
        await self._initialize_seed_plan(session, os_info, cluster)
        ids = await session.machine_identifiers()
        node = await self._nodes.find_node_by_ids(ids)
        plan = await self._desired_plan(session, os_info, cluster, machine)
        plan_json = plan.to_json()

        phase = self.phase_for(machine, node, plan_json)
        if phase == MachinePhase.PRESENT_CONVERGED:
            logger.info("Machine %s and node %s have matching plans", machine.name, node.name)
            return phase

        logger.info(
            "Plan for machine %s changed:\n%s",
            machine.name,
            self._executor.diff(node.applied_plan, plan_json),
        )
        if node.is_control_plane:
            await self._nodes.check_control_plane_quorum(node.name)

        if is_up_or_downgrade(node.kubelet_version, machine.version):
            return await self._change_version(
                machine, session, os_info, node, plan_json
            )

        await self._drainer.drain(node.name, self._drain_params)
        await self._executor.apply(session, plan)
        await self._drainer.uncordon(node.name)
        await self._nodes.set_annotation(node.name, PLAN_ANNOTATION, plan_json)
        self._record_event(machine, "Update", f"updated machine {machine.name}")
        return MachinePhase.PRESENT_CONVERGED

    async def _change_version(
        self,
        machine: Machine,
        session: RemoteSession,
        os_info: OSInfo,
        node: Node,
        plan_json: str,
    ) -> MachinePhase:
        target = node_style_version(machine.version)
        check_for_version_jump(node.kubelet_version, target)

        original = await self._nodes.ensure_original_marker()
        is_original = original.name == node.name
        original_needs_update = await self._nodes.original_not_at_version(target)
        control_plane_needs_update = await self._nodes.control_plane_not_at_version(
            target
        )
        logger.info(
            "Node %s: control-plane=%s original=%s, original needs update=%s, "
            "control plane needs update=%s",
            node.name,
            node.is_control_plane,
            is_original,
            original_needs_update,
            control_plane_needs_update,
        )
        if not is_original and original_needs_update:
            raise UpgradeOrderingError(
                f"the original control-plane node {original.name} must reach "
                f"{target} before {node.name}"
            )
        if not node.is_control_plane and control_plane_needs_update:
            raise UpgradeOrderingError(
                f"all control-plane nodes must reach {target} before worker {node.name}"
            )

        if node.name == await self._nodes.controller_node_name():
            # Draining moves the reconciler off this node; the version change
            # happens on a later pass from elsewhere.
            logger.info(
                "Node %s runs the reconciler; draining it and deferring the upgrade",
                node.name,
            )
            await self._drainer.drain(node.name, self._drain_params)
            return MachinePhase.UPDATING

        if is_original:
            role = UpgradeRole.ORIGINAL_CONTROL_PLANE
        elif node.is_control_plane:
            role = UpgradeRole.SECONDARY_CONTROL_PLANE
        else:
            role = UpgradeRole.WORKER

        await self._drainer.drain(node.name, self._drain_params)
        upgrade = await self._executor.upgrade_plan(session, os_info, target, role)
        try:
            await self._executor.apply(session, upgrade)
        except Exception as ex:
            logger.error("Failed to upgrade node %s: %s", node.name, ex)
            raise
        await self._drainer.uncordon(node.name)
        await self._nodes.set_annotation(node.name, PLAN_ANNOTATION, plan_json)
        self._record_event(
            machine, "Update", f"upgraded machine {machine.name} to {target}"
        )
        return MachinePhase.PRESENT_CONVERGED

    async def delete(self, cluster: ClusterSpec, machine: Machine) -> MachinePhase:
        logger.info("Deleting machine %s", machine.name)
        try:
            return await self._delete(cluster, machine)
        except Exception as ex:
            logger.error("Failed to delete machine %s: %s", machine.name, ex)
            raise

    async def _delete(self, cluster: ClusterSpec, machine: Machine) -> MachinePhase:
        session = await self._connect(cluster, machine)
        ids = await session.machine_identifiers()
        try:
            node = await self._nodes.find_node_by_ids(ids)
        except NodeNotFoundError:
            logger.info("Machine %s has no node; nothing to delete", machine.name)
            return MachinePhase.GONE

        if node.is_control_plane:
            await self._nodes.check_control_plane_quorum(node.name, removing=True)
        await self._drainer.drain(node.name, self._drain_params)
        try:
            await self._objects.delete_node(node.name)
        except NodeNotFoundError:
            logger.info("Node %s was already removed", node.name)
        self._addresses.pop(machine.key, None)
        self._record_event(machine, "Delete", f"deleted machine {machine.name}")
        return MachinePhase.GONE

    async def reconcile(self, cluster: ClusterSpec, machine: Machine) -> MachinePhase:
        """Take one convergence step for `machine` and report where it ended up."""
        logger.info("Reconciling machine %s", machine.name)
        try:
            node = await self._observe(cluster, machine)
        except Exception as ex:
            logger.error("Failed to observe machine %s: %s", machine.name, ex)
            raise
        phase = self.phase_for(machine, node)
        logger.info("Machine %s is %s", machine.name, phase.value)
        if phase == MachinePhase.GONE:
            return phase
        if phase == MachinePhase.DELETING:
            return await self.delete(cluster, machine)
        if phase == MachinePhase.ABSENT:
            await self.create(cluster, machine)
            return MachinePhase.PRESENT_CONVERGED
        return await self.update(cluster, machine)
