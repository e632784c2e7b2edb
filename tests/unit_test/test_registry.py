import pytest

from vcsyncer.config import SyncerConfiguration
from vcsyncer.resources import build_default_registry
from vcsyncer.syncer.plugin import Registration, ResourceSyncerRegistry


def make_registration(plugin_id, disable=False):
    return Registration(id=plugin_id, init_fn=lambda ctx: None, disable=disable)


class TestResourceSyncerRegistry:
    def test_duplicate_id_is_rejected(self):
        registry = ResourceSyncerRegistry([make_registration("pod")])
        with pytest.raises(ValueError):
            registry.register(make_registration("pod"))

    def test_unknown_id(self):
        with pytest.raises(ValueError):
            ResourceSyncerRegistry().get("secret")

    def test_defaults_follow_the_disable_flag(self):
        registry = ResourceSyncerRegistry([make_registration("pod"), make_registration("crd", disable=True)])
        enabled = registry.enabled(SyncerConfiguration())
        assert [r.id for r in enabled] == ["pod"]

    def test_configuration_overrides_defaults(self):
        registry = ResourceSyncerRegistry([make_registration("pod"), make_registration("crd", disable=True)])
        config = SyncerConfiguration(enabled_resources=["crd"], disabled_resources=["pod"])
        assert [r.id for r in registry.enabled(config)] == ["crd"]

    def test_disable_wins_over_enable(self):
        registry = ResourceSyncerRegistry([make_registration("crd", disable=True)])
        config = SyncerConfiguration(enabled_resources=["crd"], disabled_resources=["crd"])
        assert registry.enabled(config) == []

    def test_unknown_names_in_configuration_are_ignored(self):
        registry = ResourceSyncerRegistry([make_registration("pod")])
        config = SyncerConfiguration(enabled_resources=["secret"])
        assert [r.id for r in registry.enabled(config)] == ["pod"]


def test_default_registry():
    registry = build_default_registry()
    assert [r.id for r in registry.list()] == ["namespace", "pod", "storageclass", "ingress", "crd"]
    assert [r.id for r in registry.enabled(SyncerConfiguration())] == ["namespace", "pod", "storageclass"]
