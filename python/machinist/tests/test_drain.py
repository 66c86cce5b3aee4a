"""Tests for cordon, the evict loop and drain timeouts."""

import pytest

from machinist.drain import DrainParams, pods_to_evict
from machinist.errors import (
    ConflictError,
    DrainBlockedError,
    DrainTimeoutError,
    EvictionUnsupportedError,
)
from machinist.models.k8s import Pod
from machinist.tests.fakes import make_node

PERMISSIVE = DrainParams(force=True, delete_local_data=True, ignore_all_daemonsets=True)


def pod(name, *owners, namespace="default", **kwargs):
    return Pod(namespace=namespace, name=name, owner_kinds=list(owners), **kwargs)


@pytest.fixture
def worker(cluster):
    cluster.objects.add_node(make_node("worker-1"))
    return "worker-1"


class TestCordon:
    @pytest.mark.asyncio
    async def test_cordon_sets_unschedulable(self, cluster, worker):
        await cluster.drainer.cordon(worker)
        assert cluster.objects.nodes[worker]["spec"]["unschedulable"] is True

    @pytest.mark.asyncio
    async def test_cordon_is_idempotent(self, cluster, worker):
        await cluster.drainer.cordon(worker)
        writes = cluster.objects.replace_calls
        await cluster.drainer.cordon(worker)
        assert cluster.objects.replace_calls == writes

    @pytest.mark.asyncio
    async def test_cordon_retries_conflicts(self, cluster, worker):
        cluster.objects.conflicts_to_inject = 2
        await cluster.drainer.cordon(worker)
        assert cluster.objects.replace_calls == 3
        assert cluster.objects.nodes[worker]["spec"]["unschedulable"] is True

    @pytest.mark.asyncio
    async def test_cordon_gives_up_after_retry_budget(self, cluster, worker):
        cluster.objects.conflicts_to_inject = 100
        with pytest.raises(ConflictError):
            await cluster.drainer.cordon(worker)
        assert cluster.objects.replace_calls == 5

    @pytest.mark.asyncio
    async def test_uncordon(self, cluster, worker):
        await cluster.drainer.cordon(worker)
        await cluster.drainer.uncordon(worker)
        assert "unschedulable" not in cluster.objects.nodes[worker]["spec"]


class TestDrain:
    @pytest.mark.asyncio
    async def test_no_pods_succeeds_immediately(self, cluster, worker):
        await cluster.drainer.drain(worker, PERMISSIVE)
        assert cluster.clock.sleeps == []
        assert cluster.objects.nodes[worker]["spec"]["unschedulable"] is True

    @pytest.mark.asyncio
    async def test_evicts_managed_pods(self, cluster, worker):
        cluster.evictor.pods[worker] = [pod("web-1", "ReplicaSet"), pod("db-0", "StatefulSet")]
        await cluster.drainer.drain(worker, PERMISSIVE)
        assert sorted(cluster.evictor.evicted) == ["db-0", "web-1"]
        assert cluster.evictor.pods[worker] == []

    @pytest.mark.asyncio
    async def test_stuck_pods_time_out_at_deadline(self, cluster, worker):
        cluster.evictor.pods[worker] = [pod("web-1", "ReplicaSet")]
        cluster.evictor.stuck = ["web-1"]
        params = PERMISSIVE.model_copy(update={"timeout": 60.0})

        with pytest.raises(DrainTimeoutError) as info:
            await cluster.drainer.drain(worker, params)

        assert info.value.elapsed >= 60.0
        assert info.value.elapsed <= 60.0 + params.poll_interval
        assert info.value.pending == 1
        assert all(s <= 6.0 for s in cluster.clock.sleeps)

    @pytest.mark.asyncio
    async def test_short_timeout_uses_minimum_interval(self, cluster, worker):
        cluster.evictor.pods[worker] = [pod("web-1", "ReplicaSet")]
        cluster.evictor.stuck = ["web-1"]
        params = PERMISSIVE.model_copy(update={"timeout": 7.0})

        with pytest.raises(DrainTimeoutError) as info:
            await cluster.drainer.drain(worker, params)

        assert cluster.clock.sleeps == [5.0, 2.0]
        assert info.value.elapsed == pytest.approx(7.0)

    @pytest.mark.asyncio
    async def test_disruption_budget_keeps_pod_pending(self, cluster, worker):
        cluster.evictor.pods[worker] = [pod("web-1", "ReplicaSet")]
        cluster.evictor.blocked = ["web-1"]
        with pytest.raises(DrainTimeoutError):
            await cluster.drainer.drain(worker, PERMISSIVE)

    @pytest.mark.asyncio
    async def test_eviction_unsupported_fails_fast(self, cluster, worker):
        cluster.evictor.supported = False
        cluster.evictor.pods[worker] = [pod("web-1", "ReplicaSet")]
        with pytest.raises(EvictionUnsupportedError):
            await cluster.drainer.drain(worker, PERMISSIVE)
        assert "unschedulable" not in cluster.objects.nodes[worker]["spec"]

    @pytest.mark.asyncio
    async def test_deletes_when_eviction_unsupported_and_allowed(self, cluster, worker):
        cluster.evictor.supported = False
        cluster.evictor.pods[worker] = [pod("web-1", "ReplicaSet")]
        params = PERMISSIVE.model_copy(update={"delete_without_eviction": True})
        await cluster.drainer.drain(worker, params)
        assert cluster.evictor.deleted == ["web-1"]
        assert cluster.evictor.evicted == []


class TestPodSelection:
    def test_skips_ignored_mirror_and_finished_pods(self):
        pods = [
            pod("kube-proxy-x", "DaemonSet", namespace="kube-system"),
            pod("etcd-master", is_mirror=True),
            pod("job-1", "Job", phase="Succeeded"),
            pod("coredns-1", "ReplicaSet", namespace="kube-system"),
            pod("web-1", "ReplicaSet"),
        ]
        params = PERMISSIVE.model_copy(update={"ignore": [("kube-system", "coredns-1")]})
        assert [p.name for p in pods_to_evict(pods, params)] == ["web-1"]

    def test_daemonset_pods_block_unless_ignored(self):
        with pytest.raises(DrainBlockedError, match="DaemonSet"):
            pods_to_evict([pod("fluentd-1", "DaemonSet")], DrainParams(force=True))

    def test_unmanaged_pods_need_force(self):
        with pytest.raises(DrainBlockedError, match="not managed"):
            pods_to_evict([pod("bare")], DrainParams())
        assert [p.name for p in pods_to_evict([pod("bare")], DrainParams(force=True))] == ["bare"]

    def test_local_storage_needs_permission(self):
        scratch = pod("cache-1", "ReplicaSet", has_local_storage=True)
        with pytest.raises(DrainBlockedError, match="local storage"):
            pods_to_evict([scratch], DrainParams())
        assert pods_to_evict([scratch], DrainParams(delete_local_data=True)) == [scratch]

    def test_pod_from_manifest(self):
        parsed = Pod.from_manifest(
            {
                "metadata": {
                    "namespace": "kube-system",
                    "name": "etcd-cp-1",
                    "annotations": {"kubernetes.io/config.mirror": "abc"},
                    "ownerReferences": [{"kind": "Node", "controller": True}],
                },
                "spec": {"volumes": [{"name": "data", "emptyDir": {}}]},
                "status": {"phase": "Running"},
            }
        )
        assert parsed.is_mirror
        assert parsed.has_local_storage
        assert parsed.owner_kinds == ["Node"]
