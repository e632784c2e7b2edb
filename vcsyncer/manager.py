# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Composition root of the syncer.

The manager builds the enabled resource syncer plugins around one super
cluster client and one shared super informer factory, and owns the set of
tenant clusters every plugin serves.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from vcsyncer.config import SyncerConfiguration
from vcsyncer.controllers.mccontroller import TenantRegistration
from vcsyncer.errors import CacheSyncTimeoutError
from vcsyncer.store.base import ObjectStoreClient
from vcsyncer.syncer.base import ResourceSyncer
from vcsyncer.syncer.plugin import InitContext, ResourceSyncerRegistry
from vcsyncer.util.informer import SharedInformerFactory

logger = logging.getLogger(__name__)


class SyncerManager:
    def __init__(
        self,
        config: SyncerConfiguration,
        super_client: ObjectStoreClient,
        registry: ResourceSyncerRegistry,
    ):
        self.config = config
        self.super_client = super_client
        self.registry = registry
        self.informer_factory = SharedInformerFactory(super_client, config.watch_timeout_seconds)
        self.stop_event = threading.Event()
        self._lock = threading.Lock()
        self._clusters: Dict[str, TenantRegistration] = {}
        self._started = False

        context = InitContext(config=config, super_client=super_client, informer_factory=self.informer_factory)
        self.syncers: Dict[str, ResourceSyncer] = {}
        for registration in registry.enabled(config):
            self.syncers[registration.id] = registration.init_fn(context)
            logger.info(f"Resource syncer {registration.id} enabled")

    # ------------------------------------------------------------------ tenant clusters

    def register_cluster(
        self, cluster_name: str, client: ObjectStoreClient, config: Optional[Dict[str, Any]] = None
    ) -> TenantRegistration:
        """
        Attach a tenant control plane to every plugin.

        Blocks until the tenant caches of all plugins are synced, then marks
        the cluster READY. If a cache does not sync within
        cluster_cache_sync_timeout the partial registration is rolled back
        and CacheSyncTimeoutError is raised.
        """
        with self._lock:
            if cluster_name in self._clusters:
                raise ValueError(f"cluster {cluster_name} is already registered")
            registration = TenantRegistration(cluster_name=cluster_name, client=client, config=config or {})
            self._clusters[cluster_name] = registration

        try:
            for syncer in self.syncers.values():
                syncer.on_cluster_registered(registration)
            for syncer in self.syncers.values():
                syncer.wait_for_cluster_sync(cluster_name, self.config.cluster_cache_sync_timeout)
        except Exception as e:
            logger.error(f"Failed to register cluster {cluster_name}, rolling back: {e}")
            self.unregister_cluster(cluster_name)
            raise

        for syncer in self.syncers.values():
            syncer.on_cluster_ready(cluster_name)
        logger.info(f"Registered tenant cluster {cluster_name}")
        return registration

    def unregister_cluster(self, cluster_name: str, timeout: Optional[float] = None) -> bool:
        """Detach a tenant from every plugin; True when all in-flight work drained in time"""
        with self._lock:
            registration = self._clusters.pop(cluster_name, None)
        if registration is None:
            return False

        drained = True
        for syncer in self.syncers.values():
            if not syncer.on_cluster_unregistered(cluster_name, timeout):
                drained = False
        logger.info(f"Unregistered tenant cluster {cluster_name}")
        return drained

    def get_cluster_names(self) -> List[str]:
        with self._lock:
            return list(self._clusters)

    # ------------------------------------------------------------------ lifecycle

    def start(self, timeout: Optional[float] = None):
        self.informer_factory.start()
        synced = self.informer_factory.wait_for_cache_sync(timeout)
        unsynced = [kind for kind, ok in synced.items() if not ok]
        if unsynced:
            raise CacheSyncTimeoutError(f"super caches did not sync: {', '.join(unsynced)}")
        for syncer in self.syncers.values():
            syncer.start(self.stop_event)
        self._started = True
        logger.info(f"Syncer manager started with plugins {', '.join(self.syncers)}")

    def stop(self, timeout: Optional[float] = None):
        """Stop dequeuing and let in-flight reconciles finish"""
        self.stop_event.set()
        for syncer in self.syncers.values():
            syncer.stop(timeout)
        self.informer_factory.stop()
        self._started = False
        logger.info("Syncer manager stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called"""
        return self.stop_event.wait(timeout)

    def ready(self) -> bool:
        return self._started and not self.stop_event.is_set() and self.informer_factory.has_synced()

    def status(self) -> Dict[str, Any]:
        with self._lock:
            clusters = {name: registration.state.value for name, registration in self._clusters.items()}
        return {
            "ready": self.ready(),
            "clusters": clusters,
            "plugins": {plugin_id: syncer.stats() for plugin_id, syncer in self.syncers.items()},
        }
