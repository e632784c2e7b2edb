"""
Unit tests for the controller machinery: the shared error policy, the
multi-cluster controller and the patroller.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from tests.unit_test.helpers import TENANT, make_pod, wait_for
from vcsyncer.controllers.base import ControllerOptions, QueueWorkerController
from vcsyncer.controllers.mccontroller import ClusterState, MultiClusterController, TenantRegistration
from vcsyncer.controllers.patrol import Patroller
from vcsyncer.controllers.uwcontroller import UpwardController
from vcsyncer.errors import (
    ClusterNotFoundError,
    ConflictError,
    IntegrityError,
    NotFoundError,
    TransientError,
)
from vcsyncer.reconciler import EventType, ReconcileResult
from vcsyncer.store import kinds
from vcsyncer.store.memory import InMemoryObjectStore

FAST = ControllerOptions(max_concurrent_reconciles=1, max_retries=2, queue_base_delay=0.001, queue_max_delay=0.01)


class ScriptedController(QueueWorkerController):
    """Raises or returns whatever the test scripted for the next key"""

    def __init__(self, outcomes):
        super().__init__("scripted", FAST)
        self.outcomes = list(outcomes)

    def _process(self, key):
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def make_controller():
    controllers = []

    def _make(outcomes):
        controller = ScriptedController(outcomes)
        controllers.append(controller)
        return controller

    yield _make
    for controller in controllers:
        controller.stop()


class TestErrorPolicy:
    """Test suite for how controllers react to reconcile failures."""

    def test_success_forgets_backoff(self, make_controller):
        controller = make_controller([None])
        controller.queue.add("k")
        assert controller.process_next_work_item(timeout=1)
        assert controller.stats()["succeeded"] == 1
        assert controller.queue.num_requeues("k") == 0

    def test_not_found_is_dropped(self, make_controller):
        """NotFound is a tombstone, the key is forgotten without a requeue."""
        controller = make_controller([NotFoundError(kinds.POD, "default", "a")])
        controller.queue.add("k")
        controller.process_next_work_item(timeout=1)
        assert controller.stats()["not_found"] == 1
        assert controller.queue.get(timeout=0.05) is None

    def test_conflict_is_requeued(self, make_controller):
        """A lost optimistic concurrency race is retried with rate limit."""
        controller = make_controller([ConflictError("stale"), None])
        controller.queue.add("k")
        controller.process_next_work_item(timeout=1)
        assert controller.stats()["conflicts"] == 1
        assert controller.process_next_work_item(timeout=1)
        assert controller.stats()["succeeded"] == 1

    def test_integrity_violation_is_terminal(self, make_controller):
        """Owner mapping violations are logged and never retried."""
        controller = make_controller([IntegrityError("uid mismatch")])
        controller.queue.add("k")
        controller.process_next_work_item(timeout=1)
        assert controller.stats()["integrity_failures"] == 1
        assert controller.queue.get(timeout=0.05) is None

    def test_transient_errors_exhaust_retries(self, make_controller):
        """Transient failures back off up to max_retries and are then counted and forgotten."""
        controller = make_controller([TransientError("io")] * 3)
        controller.queue.add("k")
        for _ in range(3):
            assert controller.process_next_work_item(timeout=1)
        stats = controller.stats()
        assert stats["requeued"] == 2
        assert stats["exhausted_retries"] == 1
        assert controller.queue.num_requeues("k") == 0
        assert controller.queue.get(timeout=0.05) is None

    def test_requeue_after(self, make_controller):
        """A result asking for a later revisit puts the key back after the delay."""
        controller = make_controller([ReconcileResult(requeue_after=0.05), None])
        controller.queue.add("k")
        controller.process_next_work_item(timeout=1)
        assert len(controller.queue) == 0
        assert controller.process_next_work_item(timeout=1)

    def test_workers_drain_the_queue(self, make_controller):
        """Started workers process keys until stopped."""
        controller = make_controller([None, None])
        controller.start_workers()
        controller.queue.add("a")
        controller.queue.add("b")
        assert wait_for(lambda: controller.stats()["succeeded"] == 2)
        controller.stop(timeout=1)
        assert controller.stats()["workers"] == 0


class TestMultiClusterController:
    """Test suite for per-tenant caches and reconcile dispatch."""

    def setup_method(self):
        self.tenant = InMemoryObjectStore(name=TENANT)
        self.reconciler = MagicMock()
        self.reconciler.reconcile.return_value = ReconcileResult()
        self.mc = MultiClusterController(kinds.POD, self.reconciler, FAST)

    def teardown_method(self):
        self.mc.unregister_cluster(TENANT, timeout=1)
        self.mc.stop()
        self.tenant.close()

    def register(self):
        self.mc.register_cluster(TenantRegistration(cluster_name=TENANT, client=self.tenant))
        self.mc.wait_for_cluster_sync(TENANT, 5)

    def test_events_become_requests(self):
        """A tenant object event is dispatched as a request carrying its key and UID."""
        self.register()
        created = self.tenant.create(kinds.POD, make_pod("a"))
        assert wait_for(lambda: len(self.mc.queue) == 1)
        self.mc.process_next_work_item(timeout=1)

        request = self.reconciler.reconcile.call_args.args[0]
        assert request.key == f"{TENANT}/default/a"
        assert request.uid == created["metadata"]["uid"]
        assert request.event == EventType.ADD
        assert self.mc.get(TENANT, "default", "a")["metadata"]["uid"] == created["metadata"]["uid"]

    def test_duplicate_registration_fails(self):
        self.register()
        with pytest.raises(ValueError):
            self.mc.register_cluster(TenantRegistration(cluster_name=TENANT, client=self.tenant))

    def test_unknown_cluster(self):
        """Reads against an unregistered cluster raise ClusterNotFoundError."""
        with pytest.raises(ClusterNotFoundError):
            self.mc.get("nope", "default", "a")
        with pytest.raises(ClusterNotFoundError):
            self.mc.get_cluster_client("nope")

    def test_unregister_drops_queued_keys(self):
        """Queued keys of a removed cluster are dropped and never reconciled."""
        self.register()
        self.mc.enqueue(TENANT, "default/a")
        assert self.mc.unregister_cluster(TENANT, timeout=1)
        assert len(self.mc.queue) == 0
        assert TENANT not in self.mc.get_cluster_names()
        self.mc.enqueue(TENANT, "default/a")
        self.mc.process_next_work_item(timeout=1)
        self.reconciler.reconcile.assert_not_called()

    def test_unregister_waits_for_in_flight_keys(self):
        """Removal blocks until the cluster's in-flight reconcile finished."""
        self.register()
        entered, release = threading.Event(), threading.Event()

        def slow_reconcile(request):
            entered.set()
            release.wait(5)
            return ReconcileResult()

        self.reconciler.reconcile.side_effect = slow_reconcile
        self.mc.enqueue(TENANT, "default/a")
        worker = threading.Thread(target=self.mc.process_next_work_item, kwargs={"timeout": 1})
        worker.start()
        assert entered.wait(5)

        assert self.mc.unregister_cluster(TENANT, timeout=0.05) is False
        release.set()
        worker.join(5)

    def test_removing_cluster_is_hidden(self):
        """A cluster being removed is no longer listed nor served."""
        self.register()
        self.mc.mark_ready(TENANT)
        assert self.mc.get_registration(TENANT).state == ClusterState.READY
        self.mc.get_registration(TENANT).state = ClusterState.REMOVING
        assert self.mc.get_cluster_names() == []
        with pytest.raises(ClusterNotFoundError):
            self.mc.get(TENANT, "default", "a")


class TestUpwardController:
    """Test suite for the back-population driver."""

    def test_keys_are_back_populated(self):
        reconciler = MagicMock()
        controller = UpwardController(kinds.POD, reconciler, FAST)
        try:
            controller.add_to_queue("tenant-a-default/web")
            controller.process_next_work_item(timeout=1)
            reconciler.back_populate.assert_called_once_with("tenant-a-default/web")
        finally:
            controller.stop()

    def test_drain_drops_queued_keys_of_the_cluster(self):
        owners = {"tenant-a-default/web": TENANT, "tenant-b-default/web": "tenant-b"}
        controller = UpwardController(kinds.POD, MagicMock(), FAST)
        try:
            controller.add_to_queue("tenant-a-default/web")
            controller.add_to_queue("tenant-b-default/web")
            controller.queue.add_after("tenant-a-default/db", 60)
            owners["tenant-a-default/db"] = TENANT

            assert controller.drain_cluster(TENANT, owners.get, timeout=1)
            assert controller.queue.queued() == ["tenant-b-default/web"]
            assert controller.queue.waiting() == []
        finally:
            controller.stop()

    def test_drain_waits_for_writes_into_the_cluster(self):
        """A key inside cluster_scope holds the drain until the scope exits."""
        controller = UpwardController(kinds.POD, MagicMock(), FAST)
        entered, release = threading.Event(), threading.Event()

        def write():
            with controller.cluster_scope("tenant-a-default/web", TENANT):
                entered.set()
                release.wait(5)

        writer = threading.Thread(target=write)
        writer.start()
        try:
            assert entered.wait(5)
            assert controller.drain_cluster("tenant-b", lambda key: None, timeout=1)
            assert controller.drain_cluster(TENANT, lambda key: None, timeout=0.05) is False

            results = {}
            drainer = threading.Thread(
                target=lambda: results.setdefault("drained", controller.drain_cluster(TENANT, lambda key: None, 5))
            )
            drainer.start()
            time.sleep(0.05)
            assert drainer.is_alive()
            release.set()
            drainer.join(5)
            assert results["drained"] is True
        finally:
            release.set()
            writer.join(5)
            controller.stop()


class TestPatroller:
    """Test suite for periodic patrol passes."""

    def test_failed_pass_is_counted(self):
        """A failing pass is logged and counted; the next one still runs."""
        reconciler = MagicMock()
        reconciler.patroller_do.side_effect = [RuntimeError("boom"), None]
        patroller = Patroller(kinds.POD, reconciler, period=3600)
        assert patroller.patrol_once() is False
        assert patroller.patrol_once() is True
        stats = patroller.stats()
        assert stats["passes"] == 2
        assert stats["failures"] == 1

    def test_runs_periodically_until_stopped(self):
        reconciler = MagicMock()
        patroller = Patroller(kinds.POD, reconciler, period=0.01)
        patroller.start()
        assert wait_for(lambda: reconciler.patroller_do.call_count >= 2)
        patroller.stop(timeout=1)
        calls = reconciler.patroller_do.call_count
        time.sleep(0.05)
        assert reconciler.patroller_do.call_count == calls
