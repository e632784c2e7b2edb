import pytest

from tests.unit_test.helpers import TENANT, make_namespace, wait_for
from vcsyncer import constants
from vcsyncer.conversion import mapping
from vcsyncer.errors import NotFoundError
from vcsyncer.reconciler import ReconcileRequest
from vcsyncer.resources.namespace import NamespaceSyncer
from vcsyncer.store import kinds


@pytest.fixture
def syncer(make_syncer):
    return make_syncer(NamespaceSyncer)


def request(name, uid=None):
    return ReconcileRequest(cluster_name=TENANT, namespace="", name=name, uid=uid)


def create_tenant_namespace(tenant_store, syncer, name):
    created = tenant_store.create(kinds.NAMESPACE, make_namespace(name))
    assert wait_for(lambda: syncer.mc.get(TENANT, None, name) is not None)
    return created


class TestNamespaceSyncer:
    def test_super_namespace_is_prefixed(self, syncer, tenant_store, super_store):
        tenant_ns = create_tenant_namespace(tenant_store, syncer, "shop")
        syncer.reconcile(request("shop"))

        super_ns = super_store.get(kinds.NAMESPACE, None, "tenant-a-shop")
        assert mapping.get_owner_cluster(super_ns) == TENANT
        assert mapping.get_owner_uid(super_ns) == tenant_ns["metadata"]["uid"]
        assert mapping.get_owner_name(super_ns) == "shop"
        assert super_ns["metadata"]["labels"][constants.LABEL_VCNAME] == TENANT
        assert "spec" not in super_ns

    def test_reconcile_twice_is_a_noop(self, syncer, tenant_store, super_store):
        create_tenant_namespace(tenant_store, syncer, "shop")
        syncer.reconcile(request("shop"))
        before = super_store.get(kinds.NAMESPACE, None, "tenant-a-shop")["metadata"]["resourceVersion"]
        syncer.reconcile(request("shop"))
        assert super_store.get(kinds.NAMESPACE, None, "tenant-a-shop")["metadata"]["resourceVersion"] == before

    def test_label_update_is_synced(self, syncer, tenant_store, super_store):
        tenant_ns = create_tenant_namespace(tenant_store, syncer, "shop")
        syncer.reconcile(request("shop"))
        tenant_ns["metadata"]["labels"] = {"team": "checkout"}
        tenant_store.update(kinds.NAMESPACE, tenant_ns)
        assert wait_for(lambda: syncer.mc.get(TENANT, None, "shop")["metadata"].get("labels"))

        syncer.reconcile(request("shop"))
        labels = super_store.get(kinds.NAMESPACE, None, "tenant-a-shop")["metadata"]["labels"]
        assert labels["team"] == "checkout"
        assert labels[constants.LABEL_VCNAME] == TENANT

    def test_tenant_delete_removes_super_namespace(self, syncer, tenant_store, super_store):
        tenant_ns = create_tenant_namespace(tenant_store, syncer, "shop")
        syncer.reconcile(request("shop"))
        tenant_store.delete(kinds.NAMESPACE, None, "shop")
        assert wait_for(lambda: syncer.mc.get(TENANT, None, "shop") is None)

        syncer.reconcile(request("shop", uid=tenant_ns["metadata"]["uid"]))
        with pytest.raises(NotFoundError):
            super_store.get(kinds.NAMESPACE, None, "tenant-a-shop")

    def test_unmanaged_super_namespace_is_left_alone(self, syncer, tenant_store, super_store):
        super_store.create(kinds.NAMESPACE, make_namespace("tenant-a-shop"))
        create_tenant_namespace(tenant_store, syncer, "shop")
        syncer.reconcile(request("shop"))
        assert not mapping.is_mapped(super_store.get(kinds.NAMESPACE, None, "tenant-a-shop"))

    def test_patrol_deletes_orphans_and_enqueues_missing(self, syncer, tenant_store, super_store):
        create_tenant_namespace(tenant_store, syncer, "shop")
        orphan = create_tenant_namespace(tenant_store, syncer, "gone")
        super_store.create(kinds.NAMESPACE, syncer.build_super_object(TENANT, orphan))
        tenant_store.delete(kinds.NAMESPACE, None, "gone")
        assert wait_for(lambda: syncer.mc.get(TENANT, None, "gone") is None)
        syncer.mc.queue.remove_if(lambda key: True)

        syncer.patrol_cluster(TENANT)
        assert syncer.mc.queue.queued() == [f"{TENANT}/shop"]
        with pytest.raises(NotFoundError):
            super_store.get(kinds.NAMESPACE, None, "tenant-a-gone")
