"""Tests for the kubectl- and Vault-backed store adapters."""

import base64
import json

import pytest

from machinist.errors import ConflictError, NodeNotFoundError, SecretNotFoundError
from machinist.models.k8s import Node, Pod
from machinist.secrets.vault_client import VaultKVEntry
from machinist.store.kubectl_store import (
    KubectlObjectStore,
    KubectlPodEvictor,
    KubectlSecretStore,
)
from machinist.store.vault_store import VaultSecretStore
from machinist.tests.fakes import make_node
from machinist.utils.async_command_runner import CommandError


class ScriptedKubectl:
    """Replaces run_command; answers each call from a queue of outputs."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def __call__(self, command, **kwargs):
        self.calls.append((command, kwargs.get("input_data")))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response if isinstance(response, str) else json.dumps(response)


@pytest.fixture
def kubectl(monkeypatch):
    def install(*responses):
        scripted = ScriptedKubectl(*responses)
        monkeypatch.setattr("machinist.utils.kubectl.run_command", scripted)
        return scripted

    return install


def failure(stderr):
    return CommandError("Command failed with return code 1.", 1, stderr)


class TestKubectlObjectStore:
    @pytest.mark.asyncio
    async def test_get_node_passes_kubeconfig(self, kubectl):
        scripted = kubectl(make_node("worker-1"))
        node = await KubectlObjectStore("/tmp/kubeconfig").get_node("worker-1")
        assert node.name == "worker-1"
        assert scripted.calls[0][0] == [
            "kubectl", "--kubeconfig", "/tmp/kubeconfig", "get", "node", "worker-1", "-o", "json",
        ]

    @pytest.mark.asyncio
    async def test_get_missing_node(self, kubectl):
        kubectl(failure('Error from server (NotFound): nodes "ghost" not found'))
        with pytest.raises(NodeNotFoundError):
            await KubectlObjectStore().get_node("ghost")

    @pytest.mark.asyncio
    async def test_replace_conflict(self, kubectl):
        scripted = kubectl(
            failure(
                "Error from server (Conflict): Operation cannot be fulfilled on nodes "
                '"worker-1": the object has been modified'
            )
        )
        node = Node.from_manifest(make_node("worker-1"))
        with pytest.raises(ConflictError):
            await KubectlObjectStore().replace_node(node)
        assert json.loads(scripted.calls[0][1])["metadata"]["name"] == "worker-1"

    @pytest.mark.asyncio
    async def test_other_failures_propagate(self, kubectl):
        kubectl(failure("Unable to connect to the server"))
        with pytest.raises(CommandError):
            await KubectlObjectStore().list_nodes()

    @pytest.mark.asyncio
    async def test_config_map_data(self, kubectl):
        kubectl({"data": {"params": "{}"}})
        assert await KubectlObjectStore().get_config_map("ns", "seed") == {"params": "{}"}


class TestKubectlSecretStore:
    @pytest.mark.asyncio
    async def test_get_decodes_data(self, kubectl):
        kubectl(
            {
                "metadata": {"namespace": "ns", "name": "s", "resourceVersion": "42"},
                "data": {"key": base64.b64encode(b"value").decode()},
            }
        )
        record = await KubectlSecretStore().get_secret("ns", "s")
        assert record.data == {"key": "value"}
        assert record.resource_version == "42"

    @pytest.mark.asyncio
    async def test_create_bootstrap_token_type(self, kubectl):
        scripted = kubectl({"metadata": {"namespace": "kube-system", "name": "bootstrap-token-abcdef"}})
        await KubectlSecretStore().create_secret(
            "kube-system", "bootstrap-token-abcdef", {"token-id": "abcdef"}
        )
        manifest = json.loads(scripted.calls[0][1])
        assert manifest["type"] == "bootstrap.kubernetes.io/token"
        assert manifest["data"]["token-id"] == base64.b64encode(b"abcdef").decode()

    @pytest.mark.asyncio
    async def test_create_existing_is_conflict(self, kubectl):
        kubectl(failure('Error from server (AlreadyExists): secrets "s" already exists'))
        with pytest.raises(ConflictError):
            await KubectlSecretStore().create_secret("ns", "s", {})

    @pytest.mark.asyncio
    async def test_conditional_patch(self, kubectl):
        scripted = kubectl({"metadata": {"namespace": "ns", "name": "s", "resourceVersion": "8"}})
        await KubectlSecretStore().patch_secret("ns", "s", {"k": "v"}, resource_version="7")
        command = scripted.calls[0][0]
        patch = json.loads(command[command.index("-p") + 1])
        assert patch["metadata"] == {"resourceVersion": "7"}

    @pytest.mark.asyncio
    async def test_missing_secret(self, kubectl):
        kubectl(failure('Error from server (NotFound): secrets "s" not found'))
        with pytest.raises(SecretNotFoundError):
            await KubectlSecretStore().get_secret("ns", "s")


class TestKubectlPodEvictor:
    pod = Pod(namespace="default", name="web-1", owner_kinds=["ReplicaSet"])

    @pytest.mark.asyncio
    async def test_supports_eviction(self, kubectl):
        kubectl({"resources": [{"name": "pods/eviction", "kind": "Eviction"}]}, {"resources": []})
        evictor = KubectlPodEvictor()
        assert await evictor.supports_eviction()
        assert not await evictor.supports_eviction()

    @pytest.mark.asyncio
    async def test_list_pods_on_node(self, kubectl):
        scripted = kubectl({"items": [{"metadata": {"namespace": "default", "name": "web-1"}}]})
        pods = await KubectlPodEvictor().list_pods_on_node("worker-1")
        assert [p.name for p in pods] == ["web-1"]
        assert "spec.nodeName=worker-1" in scripted.calls[0][0]

    @pytest.mark.asyncio
    async def test_evict_outcomes(self, kubectl):
        kubectl(
            "",
            failure("Error from server (TooManyRequests): Cannot evict pod as it would violate the pod's disruption budget."),
            failure('Error from server (NotFound): pods "web-1" not found'),
        )
        evictor = KubectlPodEvictor()
        assert await evictor.evict(self.pod)
        assert not await evictor.evict(self.pod)
        assert await evictor.evict(self.pod)


class FakeVaultClient:
    def __init__(self):
        self.entries = {}

    async def read_secret(self, path):
        if path not in self.entries:
            raise SecretNotFoundError(path)
        return self.entries[path]

    async def write_secret(self, path, data, cas=None):
        current = self.entries.get(path)
        version = current.version if current else 0
        if cas is not None and cas != version:
            raise ConflictError(path)
        self.entries[path] = VaultKVEntry(data=dict(data), version=version + 1)
        return version + 1


class TestVaultSecretStore:
    @pytest.mark.asyncio
    async def test_create_then_conditional_patch(self):
        client = FakeVaultClient()
        store = VaultSecretStore(client)

        created = await store.create_secret("ns", "s", {"a": "1"})
        assert created.resource_version == "1"
        with pytest.raises(ConflictError):
            await store.create_secret("ns", "s", {"a": "2"})

        patched = await store.patch_secret("ns", "s", {"b": "2"}, resource_version="1")
        assert patched.data == {"a": "1", "b": "2"}
        with pytest.raises(ConflictError):
            await store.patch_secret("ns", "s", {"c": "3"}, resource_version="1")

        assert (await store.get_secret("ns", "s")).resource_version == "2"
        assert "ns/s" in client.entries
