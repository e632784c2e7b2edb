import pytest

from tests.unit_test.helpers import TENANT
from vcsyncer.config import SyncerConfiguration
from vcsyncer.controllers.mccontroller import TenantRegistration
from vcsyncer.store.memory import InMemoryObjectStore
from vcsyncer.util.informer import SharedInformerFactory


@pytest.fixture
def config():
    """Short delays, no background patrol or GC passes during a test"""
    return SyncerConfiguration(
        patrol_period=3600,
        vnode_gc_period=3600,
        vnode_gc_grace_period=0,
        queue_base_delay=0.001,
        queue_max_delay=0.05,
        max_retries=3,
        cluster_cache_sync_timeout=5,
        watch_timeout_seconds=1,
    )


@pytest.fixture
def super_store():
    store = InMemoryObjectStore(name="super")
    yield store
    store.close()


@pytest.fixture
def tenant_store():
    store = InMemoryObjectStore(name=TENANT)
    yield store
    store.close()


@pytest.fixture
def informer_factory(super_store, config):
    factory = SharedInformerFactory(super_store, config.watch_timeout_seconds)
    yield factory
    factory.stop()


@pytest.fixture
def make_syncer(config, super_store, tenant_store, informer_factory):
    """
    Build a resource syncer plugin with synced super caches and tenant-a
    registered. Workers are not started: tests drive reconcile,
    back_populate and patrol directly.
    """
    syncers = []

    def _make(syncer_cls, **kwargs):
        syncer = syncer_cls(config, super_store, informer_factory, **kwargs)
        informer_factory.start()
        assert all(informer_factory.wait_for_cache_sync(5).values())
        syncer.on_cluster_registered(TenantRegistration(cluster_name=TENANT, client=tenant_store))
        syncer.wait_for_cluster_sync(TENANT, 5)
        syncer.on_cluster_ready(TENANT)
        syncers.append(syncer)
        return syncer

    yield _make
    for syncer in syncers:
        syncer.on_cluster_unregistered(TENANT, timeout=1)
        syncer.stop(timeout=1)
