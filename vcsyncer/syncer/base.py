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
Base class of the resource syncer plugins.

A plugin governs one kind. It owns a multi-cluster controller for the
downward direction, optionally an upward controller fed by super cluster
informers, and a patroller. Everything kind specific is expressed through
the hooks below; the reconcile flow itself is shared.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from vcsyncer import constants
from vcsyncer.config import SyncerConfiguration
from vcsyncer.controllers.base import ControllerOptions
from vcsyncer.controllers.mccontroller import MultiClusterController, TenantRegistration
from vcsyncer.controllers.patrol import Patroller
from vcsyncer.controllers.uwcontroller import UpwardController
from vcsyncer.conversion import equality, mapping
from vcsyncer.errors import AlreadyExistsError, ConflictError, NotFoundError, TransientError
from vcsyncer.reconciler import (
    DownwardReconciler,
    PatrolReconciler,
    ReconcileRequest,
    ReconcileResult,
    UpwardReconciler,
)
from vcsyncer.store import kinds
from vcsyncer.store.base import ObjectStoreClient
from vcsyncer.util.informer import SharedInformerFactory
from vcsyncer.util.objects import apply_merge_patch, name_of, namespace_of, object_key, uid_of

logger = logging.getLogger(__name__)


class ResourceSyncer(DownwardReconciler, UpwardReconciler, PatrolReconciler):
    """Downward sync, back-population and patrol for one kind"""

    kind: str = ""
    # the upward controller is only created for plugins that back-populate
    has_upward: bool = False
    dws_workers: Optional[int] = None
    uws_workers: Optional[int] = None

    def __init__(
        self,
        config: SyncerConfiguration,
        super_client: ObjectStoreClient,
        informer_factory: SharedInformerFactory,
    ):
        self.config = config
        self.super_client = super_client
        self.informer_factory = informer_factory
        self.kind_info = kinds.kind_info(self.kind)
        self.dw_skip_prefixes = list(config.super_owned_annotation_prefixes) + list(config.uw_meta_prefixes)

        self.mc = MultiClusterController(
            self.kind,
            self,
            ControllerOptions.from_config(config, self.dws_workers or config.dws_workers),
            filter_func=self.tenant_filter,
        )
        self.uw: Optional[UpwardController] = None
        if self.has_upward:
            self.uw = UpwardController(
                self.kind, self, ControllerOptions.from_config(config, self.uws_workers or config.uws_workers)
            )
        self.patroller = Patroller(self.kind, self, config.patrol_period)
        self._stop_event = threading.Event()
        self._started = False

    @property
    def name(self) -> str:
        return self.kind.lower()

    # ------------------------------------------------------------------ hooks

    def tenant_filter(self, obj: Dict[str, Any]) -> bool:
        return True

    def super_synced_funcs(self) -> List[Callable[[], bool]]:
        """Co-dependent super caches that must be synced before workers start"""
        return []

    def super_namespace(self, cluster_name: str, namespace: str) -> Optional[str]:
        if not self.kind_info.namespaced:
            return None
        return mapping.to_super_namespace(cluster_name, namespace)

    def super_name(self, cluster_name: str, namespace: str, name: str) -> str:
        return name

    def build_super_object(self, cluster_name: str, tenant_obj: Dict[str, Any]) -> Dict[str, Any]:
        super_namespace = self.super_namespace(cluster_name, namespace_of(tenant_obj))
        super_obj = mapping.build_super_object(cluster_name, tenant_obj, super_namespace)
        super_obj["metadata"]["name"] = self.super_name(cluster_name, namespace_of(tenant_obj), name_of(tenant_obj))
        return super_obj

    def check_downward_equality(
        self, super_obj: Dict[str, Any], tenant_obj: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        return equality.check_dw_object_meta_equality(super_obj, tenant_obj, self.dw_skip_prefixes)

    def check_upward_equality(
        self, super_obj: Dict[str, Any], tenant_obj: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        return equality.check_uw_object_meta_equality(super_obj, tenant_obj, self.config.uw_meta_prefixes)

    # ------------------------------------------------------------------ lifecycle

    def on_cluster_registered(self, registration: TenantRegistration):
        self.mc.register_cluster(registration)

    def wait_for_cluster_sync(self, cluster_name: str, timeout: Optional[float] = None):
        self.mc.wait_for_cluster_sync(cluster_name, timeout)

    def on_cluster_ready(self, cluster_name: str):
        self.mc.mark_ready(cluster_name)

    def on_cluster_unregistered(self, cluster_name: str, timeout: Optional[float] = None) -> bool:
        """
        Detach a tenant. The downward controller marks the cluster REMOVING
        first, so a back-population that has not taken the tenant client yet
        fails with ClusterNotFoundError; the ones already writing are waited for.
        """
        drained = self.mc.unregister_cluster(cluster_name, timeout)
        if self.uw is not None:
            drained = self.uw.drain_cluster(cluster_name, self.upward_owner, timeout) and drained
        return drained

    def start(self, stop_event: threading.Event):
        self._stop_event = stop_event
        synced = self.super_synced_funcs()
        self.mc.start(stop_event, synced)
        if self.uw is not None:
            self.uw.start(stop_event, synced)
        self.patroller.start(stop_event)
        self._started = True
        logger.info(f"Resource syncer {self.name} started")

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        self.mc.stop(timeout)
        if self.uw is not None:
            self.uw.stop(timeout)
        self.patroller.stop(timeout)
        self._started = False

    def stats(self) -> Dict[str, Any]:
        stats = {"kind": self.kind, "started": self._started, "dws": self.mc.stats(), "patrol": self.patroller.stats()}
        if self.uw is not None:
            stats["uws"] = self.uw.stats()
        return stats

    # ------------------------------------------------------------------ super side helpers

    def get_super_object(self, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.super_client.get(self.kind, namespace, name)
        except NotFoundError:
            return None

    def create_super_object(self, super_obj: Dict[str, Any]):
        try:
            self.super_client.create(self.kind, super_obj)
            logger.debug(f"Created super {self.kind} {object_key(super_obj)}")
        except AlreadyExistsError:
            logger.debug(f"Super {self.kind} {object_key(super_obj)} already exists")

    def ensure_super_namespace(self, super_namespace: str):
        """Namespaced objects wait for the namespace syncer to create their super namespace"""
        try:
            self.super_client.get(kinds.NAMESPACE, None, super_namespace)
        except NotFoundError:
            raise TransientError(f"super namespace {super_namespace} does not exist yet")

    def delete_super_object(self, super_obj: Dict[str, Any], grace_period_seconds: Optional[int] = None):
        """Delete with a UID precondition; an already deleted object is success"""
        try:
            self.super_client.delete(
                self.kind,
                namespace_of(super_obj) or None,
                name_of(super_obj),
                grace_period_seconds=grace_period_seconds,
                uid=uid_of(super_obj),
            )
            logger.info(f"Deleted super {self.kind} {object_key(super_obj)}")
        except NotFoundError:
            pass

    def patch_super_object(self, super_obj: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
        # resourceVersion in super_obj is the precondition
        updated = apply_merge_patch(super_obj, patch)
        return self.super_client.update(self.kind, updated)

    # ------------------------------------------------------------------ downward

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        tenant_obj = self.mc.get(request.cluster_name, request.namespace, request.name)
        super_namespace = self.super_namespace(request.cluster_name, request.namespace)
        super_name = self.super_name(request.cluster_name, request.namespace, request.name)
        super_obj = self.get_super_object(super_namespace, super_name)

        if tenant_obj is None:
            return self.reconcile_tenant_absent(request, super_obj)
        if super_obj is None:
            return self.reconcile_super_absent(request, tenant_obj)
        return self.reconcile_both_present(request, tenant_obj, super_obj)

    def reconcile_tenant_absent(
        self, request: ReconcileRequest, super_obj: Optional[Dict[str, Any]]
    ) -> ReconcileResult:
        if super_obj is None:
            return ReconcileResult()
        if not self.owned_by_request(super_obj, request):
            return ReconcileResult()
        if request.uid and mapping.get_owner_uid(super_obj) != request.uid:
            logger.info(
                f"Super {self.kind} {object_key(super_obj)} belongs to another incarnation of {request.key}, skip"
            )
            return ReconcileResult()
        self.delete_super_object(super_obj)
        return ReconcileResult()

    def reconcile_super_absent(self, request: ReconcileRequest, tenant_obj: Dict[str, Any]) -> ReconcileResult:
        if self.kind_info.namespaced:
            self.ensure_super_namespace(self.super_namespace(request.cluster_name, request.namespace))
        self.create_super_object(self.build_super_object(request.cluster_name, tenant_obj))
        return ReconcileResult()

    def reconcile_both_present(
        self, request: ReconcileRequest, tenant_obj: Dict[str, Any], super_obj: Dict[str, Any]
    ) -> ReconcileResult:
        if not self.owned_by_request(super_obj, request):
            return ReconcileResult()
        if mapping.get_owner_uid(super_obj) != uid_of(tenant_obj):
            logger.info(f"Super {self.kind} {object_key(super_obj)} is stale for {request.key}, recreating")
            self.delete_super_object(super_obj)
            return ReconcileResult(requeue=True)

        patch = self.check_downward_equality(super_obj, tenant_obj)
        if patch is not None:
            self.patch_super_object(super_obj, patch)
            logger.debug(f"Updated super {self.kind} {object_key(super_obj)} from {request.key}")
        return ReconcileResult()

    def owned_by_request(self, super_obj: Dict[str, Any], request: ReconcileRequest) -> bool:
        """Super objects without our mapping are never touched"""
        cluster_name = mapping.get_owner_cluster(super_obj)
        if not cluster_name:
            logger.warning(f"Super {self.kind} {object_key(super_obj)} is not managed by the syncer, skip")
            return False
        # cluster scoped objects record their own name as the owner namespace
        if not mapping.is_owned_by(super_obj, request.cluster_name, request.namespace or request.name):
            logger.warning(f"Super {self.kind} {object_key(super_obj)} is owned by {cluster_name}, not {request.key}")
            return False
        return True

    # ------------------------------------------------------------------ upward

    def back_populate(self, key: str) -> None:
        pass

    def upward_owner(self, key: str) -> Optional[str]:
        """Tenant cluster an upward key writes into, None when unknown"""
        return None

    # ------------------------------------------------------------------ patrol

    def patroller_do(self) -> None:
        for cluster_name in self.mc.get_cluster_names():
            if not self.mc.is_cluster_synced(cluster_name):
                continue
            try:
                self.patrol_cluster(cluster_name)
            except Exception as e:
                logger.warning(f"Patrol of {self.kind} in cluster {cluster_name} failed: {e}", exc_info=True)

    def list_super_objects(self, cluster_name: str) -> List[Dict[str, Any]]:
        selector = f"{constants.LABEL_VCNAME}={cluster_name}"
        return self.super_client.list(self.kind, label_selector=selector).get("items", [])

    def patrol_cluster(self, cluster_name: str):
        """
        Compare the tenant cache with the mapped super objects of one cluster.

        Drift and missing super objects are injected into the downward queue
        so the fix goes through the same reconcile as an event would. Orphans
        are deleted here with a UID precondition.
        """
        tenant_objs = {object_key(obj): obj for obj in self.mc.list(cluster_name)}
        super_objs = {}
        for super_obj in self.list_super_objects(cluster_name):
            if mapping.get_owner_cluster(super_obj) != cluster_name:
                continue
            super_objs[self.tenant_key_of(super_obj)] = super_obj

        for key, tenant_obj in tenant_objs.items():
            if not self.should_patrol_tenant(tenant_obj):
                continue
            super_obj = super_objs.get(key)
            if super_obj is None:
                logger.info(f"Patrol: super {self.kind} for {cluster_name}/{key} is missing")
                self.mc.enqueue(cluster_name, key)
            elif mapping.get_owner_uid(super_obj) != uid_of(tenant_obj):
                self.mc.enqueue(cluster_name, key)
            elif self.check_downward_equality(super_obj, tenant_obj) is not None:
                logger.info(f"Patrol: super {self.kind} for {cluster_name}/{key} drifted")
                self.mc.enqueue(cluster_name, key)

        for key, super_obj in super_objs.items():
            # stale incarnations of live tenant objects are replaced by the downward reconcile
            if key in tenant_objs:
                continue
            logger.info(f"Patrol: deleting orphan super {self.kind} {object_key(super_obj)}")
            try:
                self.delete_super_object(super_obj)
            except ConflictError:
                logger.debug(f"Patrol: orphan {object_key(super_obj)} changed, skip")

    def should_patrol_tenant(self, tenant_obj: Dict[str, Any]) -> bool:
        return True

    def tenant_key_of(self, super_obj: Dict[str, Any]) -> str:
        """Tenant namespace/name (or name) a super object maps to"""
        if self.kind_info.namespaced:
            _, namespace = mapping.get_virtual_owner(super_obj)
            return f"{namespace}/{mapping.get_owner_name(super_obj)}"
        return mapping.get_owner_name(super_obj)
