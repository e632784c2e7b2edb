"""
Unit tests for the Pod resource syncer.

Scenarios run against in-memory tenant and super control planes. Workers
are not started; the tests call reconcile, back_populate and patrol
directly and wait for the informer caches where an event has to arrive.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from tests.unit_test.helpers import TENANT, make_namespace, make_node, make_pod, node_name_of, wait_for
from vcsyncer import constants
from vcsyncer.conversion import mapping
from vcsyncer.errors import ConflictError, IntegrityError, NodeQuiescingError, NotFoundError, TransientError
from vcsyncer.reconciler import ReconcileRequest
from vcsyncer.resources.pod import PodSyncer
from vcsyncer.store import kinds

SUPER_NS = "tenant-a-default"
SUPER_KEY = f"{SUPER_NS}/web"
EXTRA_ANNOTATION = constants.TENANCY_PREFIX + "extra"


@pytest.fixture
def syncer(make_syncer, super_store):
    super_store.create(kinds.NAMESPACE, make_namespace(SUPER_NS))
    return make_syncer(PodSyncer)


def request(name="web", uid=None):
    return ReconcileRequest(cluster_name=TENANT, namespace="default", name=name, uid=uid)


def create_tenant_pod(tenant_store, syncer, pod):
    created = tenant_store.create(kinds.POD, pod)
    name = created["metadata"]["name"]
    assert wait_for(lambda: syncer.mc.get(TENANT, "default", name) is not None)
    return created


def wait_for_super_pod(syncer, predicate=lambda pod: pod is not None, key=SUPER_KEY):
    assert wait_for(lambda: predicate(syncer.super_pod_informer.get(key)))


def schedule(tenant_store, super_store, syncer):
    """Create a tenant pod, sync it down and let the super scheduler place it on n1"""
    tenant_pod = create_tenant_pod(tenant_store, syncer, make_pod("web"))
    syncer.reconcile(request())
    super_store.create(kinds.NODE, make_node("n1"))
    super_store.bind_pod(SUPER_NS, "web", "n1")
    wait_for_super_pod(syncer, lambda pod: node_name_of(pod) == "n1")
    syncer.back_populate(SUPER_KEY)
    assert wait_for(lambda: node_name_of(syncer.mc.get(TENANT, "default", "web")) == "n1")
    return tenant_pod


class TestPodDownward:
    """Test suite for tenant -> super Pod reconciliation."""

    def test_create_is_idempotent(self, syncer, tenant_store, super_store):
        """Reconcile creates exactly one mapped super pod; a second reconcile changes nothing."""
        tenant_pod = create_tenant_pod(tenant_store, syncer, make_pod("web"))
        syncer.reconcile(request())

        super_pods = super_store.list(kinds.POD, namespace=SUPER_NS)["items"]
        assert len(super_pods) == 1
        super_pod = super_pods[0]
        assert mapping.get_owner_uid(super_pod) == tenant_pod["metadata"]["uid"]
        assert mapping.get_virtual_owner(super_pod) == (TENANT, "default")
        assert super_pod["metadata"]["labels"][constants.LABEL_VCNAME] == TENANT

        syncer.reconcile(request())
        again = super_store.get(kinds.POD, SUPER_NS, "web")
        assert again["metadata"]["resourceVersion"] == super_pod["metadata"]["resourceVersion"]

    def test_missing_super_namespace_is_retryable(self, syncer, tenant_store):
        """Pods of a namespace not synced yet fail with a transient error."""
        tenant_store.create(kinds.POD, make_pod("web", namespace="shop"))
        assert wait_for(lambda: syncer.mc.get(TENANT, "shop", "web") is not None)
        with pytest.raises(TransientError):
            syncer.reconcile(ReconcileRequest(cluster_name=TENANT, namespace="shop", name="web"))

    def test_tenant_delete_removes_super_pod(self, syncer, tenant_store, super_store):
        """Deleting the tenant pod deletes its super pod; repeating the delete is harmless."""
        tenant_pod = create_tenant_pod(tenant_store, syncer, make_pod("web"))
        syncer.reconcile(request())
        tenant_store.delete(kinds.POD, "default", "web")
        assert wait_for(lambda: syncer.mc.get(TENANT, "default", "web") is None)

        syncer.reconcile(request(uid=tenant_pod["metadata"]["uid"]))
        with pytest.raises(NotFoundError):
            super_store.get(kinds.POD, SUPER_NS, "web")
        syncer.reconcile(request(uid=tenant_pod["metadata"]["uid"]))

    def test_spec_drift_is_patched(self, syncer, tenant_store, super_store):
        """An image update of the tenant pod is applied to the super pod."""
        tenant_pod = create_tenant_pod(tenant_store, syncer, make_pod("web"))
        syncer.reconcile(request())
        tenant_pod["spec"]["containers"][0]["image"] = "nginx:1.26"
        tenant_store.update(kinds.POD, tenant_pod)
        assert wait_for(
            lambda: syncer.mc.get(TENANT, "default", "web")["spec"]["containers"][0]["image"] == "nginx:1.26"
        )
        syncer.reconcile(request())
        assert super_store.get(kinds.POD, SUPER_NS, "web")["spec"]["containers"][0]["image"] == "nginx:1.26"

    def test_foreign_super_pod_is_not_touched(self, syncer, tenant_store, super_store):
        """A super pod without the mapping is never modified or deleted."""
        super_store.create(kinds.POD, make_pod("web", namespace=SUPER_NS, image="other"))
        create_tenant_pod(tenant_store, syncer, make_pod("web"))
        syncer.reconcile(request())
        assert super_store.get(kinds.POD, SUPER_NS, "web")["spec"]["containers"][0]["image"] == "other"

    def test_tenant_deletion_is_graceful_on_super(self, syncer, tenant_store, super_store):
        """A bound tenant pod under deletion deletes the super pod with the same grace period."""
        schedule(tenant_store, super_store, syncer)
        tenant_store.delete(kinds.POD, "default", "web", grace_period_seconds=20)
        assert wait_for(lambda: syncer.mc.get(TENANT, "default", "web")["metadata"].get("deletionTimestamp"))

        syncer.reconcile(request())
        super_pod = super_store.get(kinds.POD, SUPER_NS, "web")
        assert super_pod["metadata"]["deletionGracePeriodSeconds"] == 20


class TestPodUpward:
    """Test suite for super -> tenant back-population."""

    def test_scheduled_pod_is_bound_to_virtual_node(self, syncer, tenant_store, super_store):
        """Placement by the super scheduler creates VirtualNode n1 and binds the tenant pod to it."""
        tenant_pod = schedule(tenant_store, super_store, syncer)

        vnode = tenant_store.get(kinds.NODE, None, "n1")
        assert vnode["metadata"]["labels"][constants.LABEL_VIRTUAL_NODE] == "true"
        assert vnode["metadata"]["labels"]["topology.kubernetes.io/zone"] == "zone-a"
        assert tenant_store.get(kinds.POD, "default", "web")["spec"]["nodeName"] == "n1"
        assert syncer.tracker.pods_on(TENANT, "n1") == {tenant_pod["metadata"]["uid"]}

    def test_super_deletion_is_back_populated(self, syncer, tenant_store, super_store):
        """A super pod deleting with grace 30 deletes the tenant pod with grace 30, exactly once."""
        schedule(tenant_store, super_store, syncer)
        super_store.delete(kinds.POD, SUPER_NS, "web", grace_period_seconds=30)
        wait_for_super_pod(syncer, lambda pod: pod and pod["metadata"].get("deletionTimestamp"))

        syncer.back_populate(SUPER_KEY)
        tenant_pod = tenant_store.get(kinds.POD, "default", "web")
        assert tenant_pod["metadata"]["deletionTimestamp"]
        assert tenant_pod["metadata"]["deletionGracePeriodSeconds"] == 30

        syncer.back_populate(SUPER_KEY)
        again = tenant_store.get(kinds.POD, "default", "web")
        assert again["metadata"]["resourceVersion"] == tenant_pod["metadata"]["resourceVersion"]

    def test_status_is_back_populated(self, syncer, tenant_store, super_store):
        """The super pod status is copied into the tenant pod."""
        schedule(tenant_store, super_store, syncer)
        super_pod = super_store.get(kinds.POD, SUPER_NS, "web")
        super_pod["status"] = {"phase": "Running", "podIP": "10.1.0.4"}
        super_store.update_status(kinds.POD, super_pod)
        wait_for_super_pod(syncer, lambda pod: (pod.get("status") or {}).get("phase") == "Running")

        syncer.back_populate(SUPER_KEY)
        assert tenant_store.get(kinds.POD, "default", "web")["status"] == {"phase": "Running", "podIP": "10.1.0.4"}

    def test_uid_mismatch_is_an_integrity_error(self, syncer, tenant_store, super_store):
        """A super pod delegated from another incarnation of the tenant pod is never back-populated."""
        tenant_pod = create_tenant_pod(tenant_store, syncer, make_pod("web"))
        stale = dict(tenant_pod, metadata=dict(tenant_pod["metadata"], uid="previous-incarnation"))
        super_store.create(kinds.POD, mapping.build_super_object(TENANT, stale, SUPER_NS))
        wait_for_super_pod(syncer)

        with pytest.raises(IntegrityError):
            syncer.back_populate(SUPER_KEY)

    def test_bind_to_destroying_node_is_retryable(self, syncer, tenant_store, super_store):
        """A bind racing the GC sweep that is deleting its vNode fails retryably and succeeds once the sweep is done."""
        create_tenant_pod(tenant_store, syncer, make_pod("web"))
        syncer.reconcile(request())
        super_store.create(kinds.NODE, make_node("n1"))
        super_store.bind_pod(SUPER_NS, "web", "n1")
        wait_for_super_pod(syncer, lambda pod: node_name_of(pod) == "n1")

        tenant_store.create(kinds.NODE, make_node("n1"))
        syncer.tracker.seed_node(TENANT, "n1")
        assert syncer.tracker.sweep(MagicMock(), now=0) == []
        assert syncer.tracker.is_quiescing(TENANT, "n1")

        in_delete, finish = threading.Event(), threading.Event()

        def slow_delete(cluster_name, node_name):
            in_delete.set()
            finish.wait(5)
            syncer._delete_virtual_node(cluster_name, node_name)

        swept = []
        sweeper = threading.Thread(target=lambda: swept.extend(syncer.tracker.sweep(slow_delete, now=1)))
        sweeper.start()
        try:
            assert in_delete.wait(5)
            assert syncer.tracker.is_destroying(TENANT, "n1")
            with pytest.raises(NodeQuiescingError):
                syncer.back_populate(SUPER_KEY)
            assert node_name_of(tenant_store.get(kinds.POD, "default", "web")) is None
            assert syncer.tracker.pods_on(TENANT, "n1") == set()
        finally:
            finish.set()
            sweeper.join(5)
        assert swept == [(TENANT, "n1")]
        with pytest.raises(NotFoundError):
            tenant_store.get(kinds.NODE, None, "n1")

        syncer.back_populate(SUPER_KEY)
        assert node_name_of(tenant_store.get(kinds.POD, "default", "web")) == "n1"
        assert tenant_store.get(kinds.NODE, None, "n1")["metadata"]["name"] == "n1"

    def test_state_write_retries_after_a_concurrent_update(self, syncer, tenant_store, super_store):
        """A write landing between the metadata and the status update restarts both from a fresh read."""
        schedule(tenant_store, super_store, syncer)
        super_pod = super_store.get(kinds.POD, SUPER_NS, "web")
        super_pod["metadata"].setdefault("annotations", {})[EXTRA_ANNOTATION] = "from-super"
        super_pod = super_store.update(kinds.POD, super_pod)
        super_pod["status"] = {"phase": "Running"}
        super_store.update_status(kinds.POD, super_pod)
        wait_for_super_pod(
            syncer,
            lambda pod: (pod.get("status") or {}).get("phase") == "Running"
            and EXTRA_ANNOTATION in pod["metadata"].get("annotations", {}),
        )

        update, update_status = tenant_store.update, tenant_store.update_status
        concurrent = []

        def update_status_after_concurrent_write(kind, obj):
            if not concurrent:
                current = tenant_store.get(kind, obj["metadata"]["namespace"], obj["metadata"]["name"])
                current["metadata"].setdefault("labels", {})["team"] = "checkout"
                concurrent.append(update(kind, current))
            return update_status(kind, obj)

        tenant_store.update_status = update_status_after_concurrent_write
        syncer.back_populate(SUPER_KEY)

        tenant_pod = tenant_store.get(kinds.POD, "default", "web")
        assert len(concurrent) == 1
        assert tenant_pod["metadata"]["annotations"][EXTRA_ANNOTATION] == "from-super"
        assert tenant_pod["metadata"]["labels"]["team"] == "checkout"
        assert tenant_pod["status"]["phase"] == "Running"

    def test_persistent_conflict_goes_back_to_the_queue(self, syncer, tenant_store, super_store):
        """Once the in-place retries run out the conflict is requeued with rate limit."""
        schedule(tenant_store, super_store, syncer)
        super_pod = super_store.get(kinds.POD, SUPER_NS, "web")
        super_pod["status"] = {"phase": "Running"}
        super_store.update_status(kinds.POD, super_pod)
        wait_for_super_pod(syncer, lambda pod: (pod.get("status") or {}).get("phase") == "Running")

        tenant_store.update_status = MagicMock(side_effect=ConflictError("resourceVersion is stale"))
        syncer.uw.queue.remove_if(lambda key: True)
        syncer.uw.add_to_queue(SUPER_KEY)
        assert syncer.uw.process_next_work_item(timeout=1)

        assert tenant_store.update_status.call_count == 3
        assert syncer.uw.stats()["conflicts"] == 1
        assert syncer.uw.queue.num_requeues(SUPER_KEY) == 1


class TestPodPatrol:
    """Test suite for the pod patrol pass."""

    def test_missing_super_pod_is_recreated(self, syncer, tenant_store, super_store):
        """A super pod deleted out of band is recreated identically to the reactive path."""
        create_tenant_pod(tenant_store, syncer, make_pod("web"))
        syncer.reconcile(request())
        original = super_store.get(kinds.POD, SUPER_NS, "web")

        super_store.delete(kinds.POD, SUPER_NS, "web")
        wait_for_super_pod(syncer, lambda pod: pod is None)
        syncer.mc.queue.remove_if(lambda key: True)

        syncer.patrol_cluster(TENANT)
        assert syncer.mc.queue.queued() == [f"{TENANT}/default/web"]
        assert syncer.mc.process_next_work_item(timeout=1)

        recreated = super_store.get(kinds.POD, SUPER_NS, "web")
        assert recreated["metadata"]["uid"] != original["metadata"]["uid"]
        for field in ("labels", "annotations", "namespace", "name"):
            assert recreated["metadata"][field] == original["metadata"][field]
        assert recreated["spec"] == original["spec"]

    def test_orphan_super_pod_is_deleted(self, syncer, super_store):
        """A mapped super pod whose tenant pod is gone is deleted by patrol."""
        ghost = make_pod("ghost")
        ghost["metadata"]["uid"] = "uid-ghost"
        super_store.create(kinds.POD, mapping.build_super_object(TENANT, ghost, SUPER_NS))
        wait_for_super_pod(syncer, key=f"{SUPER_NS}/ghost")

        syncer.patrol_cluster(TENANT)
        with pytest.raises(NotFoundError):
            super_store.get(kinds.POD, SUPER_NS, "ghost")

    def test_status_drift_enqueues_back_population(self, syncer, tenant_store, super_store):
        schedule(tenant_store, super_store, syncer)
        super_pod = super_store.get(kinds.POD, SUPER_NS, "web")
        super_pod["status"] = {"phase": "Running"}
        super_store.update_status(kinds.POD, super_pod)
        wait_for_super_pod(syncer, lambda pod: (pod.get("status") or {}).get("phase") == "Running")
        syncer.uw.queue.remove_if(lambda key: True)

        syncer.patrol_cluster(TENANT)
        assert SUPER_KEY in syncer.uw.queue.queued()

    def test_unknown_virtual_nodes_are_tracked(self, syncer, tenant_store):
        """VirtualNodes left behind by an earlier run become GC candidates."""
        tenant_store.create(
            kinds.NODE, {"metadata": {"name": "leftover", "labels": {constants.LABEL_VIRTUAL_NODE: "true"}}}
        )
        syncer.patrol_cluster(TENANT)
        assert "leftover" in syncer.tracker.nodes(TENANT)


class TestVirtualNodeGC:
    """Test suite for collecting unused VirtualNodes."""

    def test_unused_virtual_node_is_deleted(self, syncer, tenant_store, super_store):
        tenant_pod = schedule(tenant_store, super_store, syncer)
        syncer.tracker.remove_pod(TENANT, tenant_pod["metadata"]["uid"])

        assert syncer.vnode_gc_once() == []
        assert syncer.vnode_gc_once() == [(TENANT, "n1")]
        with pytest.raises(NotFoundError):
            tenant_store.get(kinds.NODE, None, "n1")


class TestPodUnregister:
    """Test suite for removing a tenant while its pods are back-populated."""

    def block_tenant_binds(self, tenant_store):
        bind_pod = tenant_store.bind_pod
        entered, release = threading.Event(), threading.Event()
        writes = []

        def slow_bind(namespace, name, node_name, uid=None):
            entered.set()
            release.wait(5)
            bind_pod(namespace, name, node_name, uid=uid)
            writes.append((namespace, name, node_name))

        tenant_store.bind_pod = slow_bind
        return entered, release, writes

    def start_back_population(self, syncer, tenant_store, super_store):
        create_tenant_pod(tenant_store, syncer, make_pod("web"))
        syncer.reconcile(request())
        super_store.create(kinds.NODE, make_node("n1"))
        super_store.bind_pod(SUPER_NS, "web", "n1")
        wait_for_super_pod(syncer, lambda pod: node_name_of(pod) == "n1")

        entered, release, writes = self.block_tenant_binds(tenant_store)
        syncer.uw.queue.remove_if(lambda key: True)
        syncer.uw.add_to_queue(SUPER_KEY)
        worker = threading.Thread(target=syncer.uw.process_next_work_item, kwargs={"timeout": 5})
        worker.start()
        assert entered.wait(5)
        return worker, release, writes

    def test_unregister_waits_for_write_in_flight(self, syncer, tenant_store, super_store):
        """Removal returns only after a bind already writing into the tenant has finished."""
        worker, release, writes = self.start_back_population(syncer, tenant_store, super_store)

        results = {}

        def unregister():
            results["drained"] = syncer.on_cluster_unregistered(TENANT, timeout=5)
            results["writes"] = list(writes)

        unregisterer = threading.Thread(target=unregister)
        unregisterer.start()
        try:
            time.sleep(0.05)
            assert unregisterer.is_alive()
            assert TENANT not in syncer.mc.get_cluster_names()
        finally:
            release.set()
            unregisterer.join(5)
            worker.join(5)

        assert results == {"drained": True, "writes": [("default", "web", "n1")]}
        assert syncer.tracker.nodes(TENANT) == []

    def test_unregister_reports_undrained_write(self, syncer, tenant_store, super_store):
        """A write outliving the timeout makes removal report it did not drain."""
        worker, release, _ = self.start_back_population(syncer, tenant_store, super_store)
        try:
            assert syncer.on_cluster_unregistered(TENANT, timeout=0.05) is False
        finally:
            release.set()
            worker.join(5)

    def test_unregister_drops_queued_back_population(self, syncer, tenant_store, super_store):
        """Keys of the removed tenant still queued are dropped and never reach its client."""
        create_tenant_pod(tenant_store, syncer, make_pod("web"))
        syncer.reconcile(request())
        wait_for_super_pod(syncer)
        assert wait_for(lambda: SUPER_KEY in syncer.uw.queue.queued())

        assert syncer.on_cluster_unregistered(TENANT, timeout=1)
        assert syncer.uw.queue.queued() == []
