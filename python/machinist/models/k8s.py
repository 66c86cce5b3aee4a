"""
machinist/models/k8s.py

Pydantic views over the Kubernetes objects the engine reads and mutates:
Node and Pod. Both keep the full manifest returned by the object store so that
a read-modify-write never drops fields we do not model; the typed accessors
below are projections of that manifest.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

PLAN_ANNOTATION = "machinist.io/node-plan"
MASTER_LABEL = "node-role.kubernetes.io/master"
CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"
ORIGINAL_MASTER_LABEL = "machinist.io/original-master"
MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"


class Taint(BaseModel):
    key: str = ""
    value: str = ""
    effect: str = ""


class Node(BaseModel):
    """
    A node as observed in the object store.

    Mutation helpers edit `manifest` in place; pass the node back to
    ObjectStore.replace_node to persist it (the manifest carries the
    resourceVersion used for the optimistic-concurrency check).
    """

    manifest: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> Node:
        return cls(manifest=manifest)

    # -- metadata ---------------------------------------------------------

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.manifest.setdefault("metadata", {})

    @property
    def name(self) -> str:
        return str(self.metadata.get("name", ""))

    @property
    def resource_version(self) -> Optional[str]:
        return self.metadata.get("resourceVersion")

    @property
    def labels(self) -> Dict[str, str]:
        return self.metadata.get("labels") or {}

    @property
    def annotations(self) -> Dict[str, str]:
        return self.metadata.get("annotations") or {}

    # -- spec -------------------------------------------------------------

    @property
    def spec(self) -> Dict[str, Any]:
        return self.manifest.setdefault("spec", {})

    @property
    def unschedulable(self) -> bool:
        return bool(self.spec.get("unschedulable", False))

    @property
    def provider_id(self) -> str:
        return str(self.spec.get("providerID", ""))

    @property
    def taints(self) -> List[Taint]:
        return [Taint(**t) for t in self.spec.get("taints") or []]

    # -- status -----------------------------------------------------------

    @property
    def status(self) -> Dict[str, Any]:
        return self.manifest.get("status") or {}

    @property
    def node_info(self) -> Dict[str, Any]:
        return self.status.get("nodeInfo") or {}

    @property
    def machine_id(self) -> str:
        return str(self.node_info.get("machineID", ""))

    @property
    def system_uuid(self) -> str:
        return str(self.node_info.get("systemUUID", ""))

    @property
    def kubelet_version(self) -> str:
        return str(self.node_info.get("kubeletVersion", ""))

    @property
    def is_ready(self) -> bool:
        return any(
            cond.get("type") == "Ready" and cond.get("status") == "True"
            for cond in self.status.get("conditions") or []
        )

    @property
    def internal_address(self) -> Optional[str]:
        return next(
            (
                addr.get("address")
                for addr in self.status.get("addresses") or []
                if addr.get("type") == "InternalIP"
            ),
            None,
        )

    # -- derived ----------------------------------------------------------

    @property
    def is_control_plane(self) -> bool:
        return MASTER_LABEL in self.labels or CONTROL_PLANE_LABEL in self.labels

    @property
    def is_original_control_plane(self) -> bool:
        return ORIGINAL_MASTER_LABEL in self.labels

    @property
    def applied_plan(self) -> str:
        return self.annotations.get(PLAN_ANNOTATION, "")

    def has_taint_value(self, value: str) -> bool:
        """True if any taint carries `value` as its value. Effects are ignored."""
        return any(t.value == value for t in self.taints)

    # -- mutation ---------------------------------------------------------

    def set_annotation(self, key: str, value: str) -> None:
        self.metadata.setdefault("annotations", {})
        if self.metadata["annotations"] is None:
            self.metadata["annotations"] = {}
        self.metadata["annotations"][key] = value

    def set_label(self, key: str, value: str) -> None:
        if not self.metadata.get("labels"):
            self.metadata["labels"] = {}
        self.metadata["labels"][key] = value

    def set_unschedulable(self, unschedulable: bool) -> None:
        if unschedulable:
            self.spec["unschedulable"] = True
        else:
            self.spec.pop("unschedulable", None)

    def set_provider_id(self, provider_id: str) -> None:
        self.spec["providerID"] = provider_id


class Pod(BaseModel):
    """The subset of a pod the drain engine needs to decide what to evict."""

    namespace: str
    name: str
    owner_kinds: List[str] = Field(default_factory=list)
    is_mirror: bool = False
    has_local_storage: bool = False
    phase: str = "Running"

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> Pod:
        meta = manifest.get("metadata") or {}
        spec = manifest.get("spec") or {}
        return cls(
            namespace=meta.get("namespace", ""),
            name=meta.get("name", ""),
            owner_kinds=[
                ref.get("kind", "")
                for ref in meta.get("ownerReferences") or []
                if ref.get("controller", True)
            ],
            is_mirror=MIRROR_POD_ANNOTATION in (meta.get("annotations") or {}),
            has_local_storage=any(
                "emptyDir" in vol for vol in spec.get("volumes") or []
            ),
            phase=(manifest.get("status") or {}).get("phase", "Running"),
        )

    @property
    def is_daemonset_managed(self) -> bool:
        return "DaemonSet" in self.owner_kinds

    @property
    def is_unmanaged(self) -> bool:
        return not self.owner_kinds

    @property
    def is_terminated(self) -> bool:
        return self.phase in ("Succeeded", "Failed")
