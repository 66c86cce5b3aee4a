"""
machinist/store/kubectl_store.py

kubectl-backed implementations of ObjectStore, SecretStore and PodEvictor.

All reads request JSON output. Writes that must be conditional (node
replacement, secret patches) carry metadata.resourceVersion so the API server
rejects them with a Conflict if the object moved on; that surfaces here as
ConflictError via raise_for_kubectl_error.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional

from machinist.errors import NodeNotFoundError, NotFoundError, SecretNotFoundError
from machinist.models.k8s import Node, Pod
from machinist.store.interfaces import (
    ObjectStore,
    PodEvictor,
    SecretRecord,
    SecretStore,
)
from machinist.utils.async_command_runner import CommandError
from machinist.utils.kubectl import kubectl_json, raise_for_kubectl_error, run_kubectl

logger = logging.getLogger(__name__)

_EVICTION_BLOCKED_MARKERS = ("TooManyRequests", "disruption budget", "429")


def _b64encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("utf-8")


def _secret_record(obj: Dict[str, Any]) -> SecretRecord:
    meta = obj.get("metadata", {})
    return SecretRecord(
        namespace=meta.get("namespace", ""),
        name=meta.get("name", ""),
        data={
            key: base64.b64decode(val).decode("utf-8")
            for key, val in (obj.get("data") or {}).items()
        },
        resource_version=meta.get("resourceVersion"),
    )


class KubectlObjectStore(ObjectStore):
    def __init__(self, kubeconfig: Optional[str] = None) -> None:
        self._kubeconfig = kubeconfig

    async def get_node(self, name: str) -> Node:
        try:
            obj = await kubectl_json(
                ["get", "node", name, "-o", "json"], kubeconfig=self._kubeconfig
            )
        except CommandError as ex:
            raise_for_kubectl_error(ex, f"node/{name}", NodeNotFoundError)
        return Node.from_manifest(obj)

    async def list_nodes(self) -> List[Node]:
        obj = await kubectl_json(
            ["get", "nodes", "-o", "json"], kubeconfig=self._kubeconfig
        )
        return [Node.from_manifest(item) for item in obj.get("items", [])]

    async def replace_node(self, node: Node) -> Node:
        try:
            obj = await kubectl_json(
                ["replace", "-f", "-", "-o", "json"],
                kubeconfig=self._kubeconfig,
                input_data=json.dumps(node.manifest),
            )
        except CommandError as ex:
            raise_for_kubectl_error(ex, f"node/{node.name}", NodeNotFoundError)
        return Node.from_manifest(obj)

    async def delete_node(self, name: str) -> None:
        try:
            await run_kubectl(["delete", "node", name], kubeconfig=self._kubeconfig)
        except CommandError as ex:
            raise_for_kubectl_error(ex, f"node/{name}", NodeNotFoundError)

    async def get_config_map(self, namespace: str, name: str) -> Dict[str, str]:
        try:
            obj = await kubectl_json(
                ["-n", namespace, "get", "configmap", name, "-o", "json"],
                kubeconfig=self._kubeconfig,
            )
        except CommandError as ex:
            raise_for_kubectl_error(ex, f"configmap/{namespace}/{name}")
        return {str(k): str(v) for k, v in (obj.get("data") or {}).items()}

    async def list_pods(
        self, namespace: str, label_selector: str
    ) -> List[Dict[str, Any]]:
        obj = await kubectl_json(
            ["-n", namespace, "get", "pods", "-l", label_selector, "-o", "json"],
            kubeconfig=self._kubeconfig,
        )
        items: List[Dict[str, Any]] = obj.get("items", [])
        return items


class KubectlSecretStore(SecretStore):
    def __init__(self, kubeconfig: Optional[str] = None) -> None:
        self._kubeconfig = kubeconfig

    async def get_secret(self, namespace: str, name: str) -> SecretRecord:
        try:
            obj = await kubectl_json(
                ["-n", namespace, "get", "secret", name, "-o", "json"],
                kubeconfig=self._kubeconfig,
            )
        except CommandError as ex:
            raise_for_kubectl_error(
                ex, f"secret/{namespace}/{name}", SecretNotFoundError
            )
        return _secret_record(obj)

    async def create_secret(
        self, namespace: str, name: str, data: Dict[str, str]
    ) -> SecretRecord:
        manifest = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": name, "namespace": namespace},
            "type": (
                "bootstrap.kubernetes.io/token"
                if name.startswith("bootstrap-token-")
                else "Opaque"
            ),
            "data": {k: _b64encode(v) for k, v in data.items()},
        }
        try:
            obj = await kubectl_json(
                ["create", "-f", "-", "-o", "json"],
                kubeconfig=self._kubeconfig,
                input_data=json.dumps(manifest),
            )
        except CommandError as ex:
            raise_for_kubectl_error(
                ex, f"secret/{namespace}/{name}", SecretNotFoundError
            )
        return _secret_record(obj)

    async def patch_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, str],
        resource_version: Optional[str] = None,
    ) -> SecretRecord:
        patch: Dict[str, Any] = {"data": {k: _b64encode(v) for k, v in data.items()}}
        if resource_version is not None:
            patch["metadata"] = {"resourceVersion": resource_version}
        try:
            obj = await kubectl_json(
                [
                    "-n",
                    namespace,
                    "patch",
                    "secret",
                    name,
                    "--type",
                    "merge",
                    "-p",
                    json.dumps(patch),
                    "-o",
                    "json",
                ],
                kubeconfig=self._kubeconfig,
            )
        except CommandError as ex:
            raise_for_kubectl_error(
                ex, f"secret/{namespace}/{name}", SecretNotFoundError
            )
        return _secret_record(obj)


class KubectlPodEvictor(PodEvictor):
    def __init__(self, kubeconfig: Optional[str] = None) -> None:
        self._kubeconfig = kubeconfig

    async def supports_eviction(self) -> bool:
        """True if the core API group advertises the pods/eviction subresource."""
        obj = await kubectl_json(
            ["get", "--raw", "/api/v1"], kubeconfig=self._kubeconfig
        )
        return any(
            res.get("name") == "pods/eviction" and res.get("kind") == "Eviction"
            for res in obj.get("resources", [])
        )

    async def list_pods_on_node(self, node_name: str) -> List[Pod]:
        obj = await kubectl_json(
            [
                "get",
                "pods",
                "--all-namespaces",
                "--field-selector",
                f"spec.nodeName={node_name}",
                "-o",
                "json",
            ],
            kubeconfig=self._kubeconfig,
        )
        return [Pod.from_manifest(item) for item in obj.get("items", [])]

    async def evict(self, pod: Pod) -> bool:
        body = {
            "apiVersion": "policy/v1",
            "kind": "Eviction",
            "metadata": {"name": pod.name, "namespace": pod.namespace},
        }
        path = f"/api/v1/namespaces/{pod.namespace}/pods/{pod.name}/eviction"
        try:
            await run_kubectl(
                ["create", "--raw", path, "-f", "-"],
                kubeconfig=self._kubeconfig,
                input_data=json.dumps(body),
            )
        except CommandError as ex:
            detail = ex.stderr or str(ex)
            if any(marker in detail for marker in _EVICTION_BLOCKED_MARKERS):
                logger.info(
                    "Eviction of %s/%s blocked by a disruption budget",
                    pod.namespace,
                    pod.name,
                )
                return False
            try:
                raise_for_kubectl_error(ex, f"pod/{pod.namespace}/{pod.name}")
            except NotFoundError:
                # Already gone.
                return True
        return True

    async def delete_pod(self, pod: Pod) -> None:
        await run_kubectl(
            [
                "-n",
                pod.namespace,
                "delete",
                "pod",
                pod.name,
                "--ignore-not-found",
                "--wait=false",
            ],
            kubeconfig=self._kubeconfig,
        )
