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

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from vcsyncer.constants import DWS_CONTROLLER_WORKER_HIGH, LABEL_VIRTUAL_NODE, UWS_CONTROLLER_WORKER_HIGH
from vcsyncer.controllers.mccontroller import TenantRegistration
from vcsyncer.conversion import equality, mapping
from vcsyncer.errors import ClusterNotFoundError, NotFoundError
from vcsyncer.resources.pod.checker import PodPatrolMixin
from vcsyncer.resources.pod.dws import PodDownwardMixin
from vcsyncer.resources.pod.uws import PodUpwardMixin
from vcsyncer.resources.pod.vnode_tracker import VNodeTracker
from vcsyncer.store import kinds
from vcsyncer.syncer.base import ResourceSyncer
from vcsyncer.syncer.plugin import Registration
from vcsyncer.util.informer import EventHandler
from vcsyncer.util.objects import name_of, object_key, resource_version_of, uid_of
from vcsyncer.vnode.provider import VirtualNodeProvider

logger = logging.getLogger(__name__)


class PodSyncer(PodDownwardMixin, PodUpwardMixin, PodPatrolMixin, ResourceSyncer):
    """
    Pods are the only kind that run anything, so this plugin also owns
    placement: once the super scheduler binds a super pod, the tenant pod is
    bound to a VirtualNode mirroring the super node. VirtualNodes without
    pods are garbage collected by a periodic sweep.
    """

    kind = kinds.POD
    has_upward = True
    dws_workers = DWS_CONTROLLER_WORKER_HIGH
    uws_workers = UWS_CONTROLLER_WORKER_HIGH

    def __init__(self, config, super_client, informer_factory, vnode_provider: Optional[VirtualNodeProvider] = None):
        super().__init__(config, super_client, informer_factory)
        self.tracker = VNodeTracker(grace_period=config.vnode_gc_grace_period)
        self.vnode_provider = vnode_provider or VirtualNodeProvider()
        self._gc_thread: Optional[threading.Thread] = None

        self.super_pod_informer = informer_factory.informer_for(kinds.POD)
        self.super_service_informer = informer_factory.informer_for(kinds.SERVICE)
        self.super_pod_informer.add_event_handler(
            EventHandler(
                on_add=self._enqueue_super_pod,
                on_update=self._on_super_pod_update,
                on_delete=self._on_super_pod_delete,
                filter_func=mapping.is_mapped,
            )
        )

    def super_synced_funcs(self) -> List[Callable[[], bool]]:
        return [lambda: self.super_pod_informer.has_synced, lambda: self.super_service_informer.has_synced]

    def check_downward_equality(self, super_obj: Dict[str, Any], tenant_obj: Dict[str, Any]):
        return equality.check_dw_pod_equality(super_obj, tenant_obj, self.dw_skip_prefixes)

    # ------------------------------------------------------------------ super pod events

    def _enqueue_super_pod(self, super_pod: Dict[str, Any]):
        self.uw.add_to_queue(object_key(super_pod))

    def _on_super_pod_update(self, old: Dict[str, Any], new: Dict[str, Any]):
        if resource_version_of(old) != resource_version_of(new):
            self._enqueue_super_pod(new)

    def upward_owner(self, key: str) -> Optional[str]:
        super_pod = self.super_pod_informer.get(key)
        if super_pod is None:
            return None
        return mapping.get_owner_cluster(super_pod) or None

    def _on_super_pod_delete(self, super_pod: Dict[str, Any]):
        # a finished super deletion lets the tenant pod go as well
        cluster_name, namespace = mapping.get_virtual_owner(super_pod)
        if cluster_name in self.mc.get_cluster_names():
            self.mc.enqueue(cluster_name, f"{namespace}/{mapping.get_owner_name(super_pod)}")

    # ------------------------------------------------------------------ cluster lifecycle

    def on_cluster_registered(self, registration: TenantRegistration):
        """Seed the tracker with the vNodes and bound pods the tenant already has"""
        client = registration.client
        cluster_name = registration.cluster_name
        selector = f"{LABEL_VIRTUAL_NODE}=true"
        for node in client.list(kinds.NODE, label_selector=selector).get("items", []):
            self.tracker.seed_node(cluster_name, name_of(node))
        for pod in client.list(kinds.POD).get("items", []):
            node_name = pod.get("spec", {}).get("nodeName")
            if node_name:
                self.tracker.add_pod(cluster_name, node_name, uid_of(pod))
        super().on_cluster_registered(registration)

    def on_cluster_unregistered(self, cluster_name: str, timeout: Optional[float] = None) -> bool:
        drained = super().on_cluster_unregistered(cluster_name, timeout)
        self.tracker.remove_cluster(cluster_name)
        return drained

    # ------------------------------------------------------------------ vNode GC

    def start(self, stop_event: threading.Event):
        super().start(stop_event)
        self._gc_thread = threading.Thread(target=self._gc_loop, name="vnode-gc", daemon=True)
        self._gc_thread.start()

    def stop(self, timeout: Optional[float] = None):
        super().stop(timeout)
        if self._gc_thread is not None:
            self._gc_thread.join(timeout)

    def _gc_loop(self):
        while not self._stop_event.wait(self.config.vnode_gc_period):
            try:
                self.vnode_gc_once()
            except Exception as e:
                logger.error(f"vNode GC pass failed: {e}", exc_info=True)

    def vnode_gc_once(self):
        return self.tracker.sweep(self._delete_virtual_node)

    def _delete_virtual_node(self, cluster_name: str, node_name: str):
        try:
            client = self.mc.get_cluster_client(cluster_name)
        except ClusterNotFoundError:
            return
        try:
            client.delete(kinds.NODE, None, node_name)
        except NotFoundError:
            pass


registration = Registration(
    id="pod",
    init_fn=lambda ctx: PodSyncer(ctx.config, ctx.super_client, ctx.informer_factory),
)
