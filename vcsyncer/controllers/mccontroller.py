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
Multi-cluster controller: one informer per registered tenant cluster for the
governed kind, a single work queue of cluster/namespace/name keys and a worker
pool driving the downward reconciler.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from vcsyncer.controllers.base import ControllerOptions, QueueWorkerController
from vcsyncer.errors import CacheSyncTimeoutError, ClusterNotFoundError
from vcsyncer.reconciler import DownwardReconciler, EventType, ReconcileRequest, ReconcileResult
from vcsyncer.store.base import ObjectStoreClient
from vcsyncer.util.informer import EventHandler, Informer, wait_for_cache_sync
from vcsyncer.util.objects import join_key, object_key, split_cluster_key, uid_of

logger = logging.getLogger(__name__)


class ClusterState(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    REMOVING = "Removing"


@dataclass
class TenantRegistration:
    cluster_name: str
    client: ObjectStoreClient
    config: Dict[str, Any] = field(default_factory=dict)
    state: ClusterState = ClusterState.PENDING


class _Cluster:
    def __init__(self, registration: TenantRegistration, informer: Informer):
        self.registration = registration
        self.informer = informer


def _cluster_prefix(cluster_name: str) -> Callable[[str], bool]:
    prefix = cluster_name + "/"
    return lambda key: key.startswith(prefix)


class MultiClusterController(QueueWorkerController):
    def __init__(
        self,
        kind: str,
        reconciler: DownwardReconciler,
        options: Optional[ControllerOptions] = None,
        filter_func: Optional[Callable[[Dict[str, Any]], bool]] = None,
        name: Optional[str] = None,
    ):
        super().__init__(name or f"{kind.lower()}-dws", options)
        self.kind = kind
        self.reconciler = reconciler
        self.filter_func = filter_func
        self._clusters: Dict[str, _Cluster] = {}
        self._events: Dict[str, Tuple[EventType, Optional[str]]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ registration

    def register_cluster(self, registration: TenantRegistration):
        """Open a tenant informer for the governed kind. Events flow once its cache has synced."""
        with self._lock:
            if registration.cluster_name in self._clusters:
                raise ValueError(f"cluster {registration.cluster_name} is already registered to {self.name}")
            informer = Informer(
                registration.client,
                self.kind,
                watch_timeout_seconds=self.options.watch_timeout_seconds,
                name=f"{registration.cluster_name}-{self.kind.lower()}",
            )
            informer.add_event_handler(self._event_handler(registration.cluster_name))
            self._clusters[registration.cluster_name] = _Cluster(registration, informer)
        informer.start()
        logger.info(f"Controller {self.name} registered cluster {registration.cluster_name}")

    def wait_for_cluster_sync(self, cluster_name: str, timeout: Optional[float] = None):
        cluster = self._get_cluster(cluster_name)
        if not cluster.informer.wait_for_sync(timeout):
            raise CacheSyncTimeoutError(f"{self.name}: cache of cluster {cluster_name} did not sync")

    def unregister_cluster(self, cluster_name: str, timeout: Optional[float] = None) -> bool:
        """
        Remove a tenant cluster. Queued keys of the cluster are dropped and
        in-flight ones are allowed to finish before the informer is stopped,
        so nothing writes with the tenant client after this returns.
        """
        with self._lock:
            cluster = self._clusters.get(cluster_name)
            if cluster is None:
                return False
            cluster.registration.state = ClusterState.REMOVING

        belongs = _cluster_prefix(cluster_name)
        removed = self.queue.remove_if(belongs)
        drained = self.queue.wait_until_idle(belongs, timeout)
        if not drained:
            logger.warning(f"Controller {self.name}: timed out draining in-flight keys of cluster {cluster_name}")
        cluster.informer.stop()

        with self._lock:
            self._clusters.pop(cluster_name, None)
            for key in [k for k in self._events if belongs(k)]:
                del self._events[key]
        logger.info(f"Controller {self.name} unregistered cluster {cluster_name}, dropped {removed} queued keys")
        return drained

    def _get_cluster(self, cluster_name: str) -> _Cluster:
        with self._lock:
            cluster = self._clusters.get(cluster_name)
        if cluster is None or cluster.registration.state == ClusterState.REMOVING:
            raise ClusterNotFoundError(cluster_name)
        return cluster

    def get_cluster_client(self, cluster_name: str) -> ObjectStoreClient:
        return self._get_cluster(cluster_name).registration.client

    def get_registration(self, cluster_name: str) -> TenantRegistration:
        return self._get_cluster(cluster_name).registration

    def get_cluster_names(self) -> List[str]:
        with self._lock:
            return [
                name for name, cluster in self._clusters.items() if cluster.registration.state != ClusterState.REMOVING
            ]

    def is_cluster_synced(self, cluster_name: str) -> bool:
        try:
            return self._get_cluster(cluster_name).informer.has_synced
        except ClusterNotFoundError:
            return False

    def mark_ready(self, cluster_name: str):
        cluster = self._get_cluster(cluster_name)
        cluster.registration.state = ClusterState.READY

    # ------------------------------------------------------------------ cache access

    def get(self, cluster_name: str, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        """Cached tenant object, or None when it does not exist"""
        return self._get_cluster(cluster_name).informer.get(join_key(namespace, name))

    def list(self, cluster_name: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._get_cluster(cluster_name).informer.list(namespace)

    # ------------------------------------------------------------------ events

    def _event_handler(self, cluster_name: str) -> EventHandler:
        return EventHandler(
            on_add=lambda obj: self._enqueue_object(cluster_name, obj, EventType.ADD),
            on_update=lambda old, new: self._enqueue_object(cluster_name, new, EventType.UPDATE),
            on_delete=lambda obj: self._enqueue_object(cluster_name, obj, EventType.DELETE),
            filter_func=self.filter_func,
        )

    def _enqueue_object(self, cluster_name: str, obj: Dict[str, Any], event: EventType):
        key = f"{cluster_name}/{object_key(obj)}"
        with self._lock:
            cluster = self._clusters.get(cluster_name)
            if cluster is None or cluster.registration.state == ClusterState.REMOVING:
                return
            self._events[key] = (event, uid_of(obj) or None)
        self.queue.add(key)

    def enqueue(self, cluster_name: str, key: str, event: EventType = EventType.UPDATE):
        """Queue namespace/name (or name) of a tenant object for reconciliation"""
        full_key = f"{cluster_name}/{key}"
        with self._lock:
            self._events.setdefault(full_key, (event, None))
        self.queue.add(full_key)

    # ------------------------------------------------------------------ dispatch

    def start(
        self,
        stop_event: threading.Event,
        synced_funcs: Sequence[Callable[[], bool]] = (),
        timeout: Optional[float] = None,
    ):
        """Wait for the co-dependent super caches, then start the worker pool"""
        wait_for_cache_sync(stop_event, list(synced_funcs), timeout)
        self.start_workers()

    def _process(self, key: str) -> Optional[ReconcileResult]:
        cluster_name, namespace, name = split_cluster_key(key)
        with self._lock:
            cluster = self._clusters.get(cluster_name)
            if cluster is None or cluster.registration.state == ClusterState.REMOVING:
                self._events.pop(key, None)
                logger.debug(f"{self.name}: dropping {key}, cluster {cluster_name} is not registered")
                return None
            if not cluster.informer.has_synced:
                self.queue.add_after(key, self.options.not_synced_delay)
                return None
            event, uid = self._events.pop(key, (EventType.UPDATE, None))

        request = ReconcileRequest(cluster_name=cluster_name, namespace=namespace, name=name, uid=uid, event=event)
        return self.reconciler.reconcile(request)

    def stats(self) -> Dict[str, Any]:
        stats = super().stats()
        with self._lock:
            stats["clusters"] = {
                name: cluster.registration.state.value for name, cluster in self._clusters.items()
            }
        return stats
