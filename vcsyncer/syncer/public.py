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
Shared flow of the kinds the super cluster publishes to its tenants.

Storage classes and CRDs carrying the public label in the super cluster are
copied into every tenant control plane and kept identical to the super
object. Tenant edits are reverted, and un-publishing or deleting the super
object removes the copies. The tenant side never writes downward.
"""

import logging
from abc import abstractmethod
from typing import Any, Callable, Dict, List, Optional

from vcsyncer.conversion import mapping
from vcsyncer.errors import AlreadyExistsError, NotFoundError
from vcsyncer.reconciler import ReconcileRequest, ReconcileResult
from vcsyncer.syncer.base import ResourceSyncer
from vcsyncer.util.informer import EventHandler
from vcsyncer.util.objects import apply_merge_patch, labels_of, name_of, resource_version_of, split_cluster_key, uid_of

logger = logging.getLogger(__name__)


class PublicObjectSyncer(ResourceSyncer):
    has_upward = True
    public_label: str = ""

    def __init__(self, config, super_client, informer_factory):
        super().__init__(config, super_client, informer_factory)
        self.super_informer = informer_factory.informer_for(self.kind)
        self.super_informer.add_event_handler(
            EventHandler(
                on_add=self._enqueue_all_clusters,
                on_update=self._on_super_update,
                on_delete=self._enqueue_all_clusters,
                filter_func=self.is_public,
            )
        )

    def is_public(self, obj: Dict[str, Any]) -> bool:
        return labels_of(obj).get(self.public_label) == "true"

    @abstractmethod
    def check_public_equality(
        self, super_obj: Dict[str, Any], tenant_obj: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Merge patch turning the tenant copy into the super object, None when equal"""

    def super_synced_funcs(self) -> List[Callable[[], bool]]:
        return [lambda: self.super_informer.has_synced]

    # ------------------------------------------------------------------ super events

    def _on_super_update(self, old: Dict[str, Any], new: Dict[str, Any]):
        if resource_version_of(old) != resource_version_of(new):
            self._enqueue_all_clusters(new)

    def _enqueue_all_clusters(self, super_obj: Dict[str, Any]):
        for cluster_name in self.mc.get_cluster_names():
            self.uw.add_to_queue(f"{cluster_name}/{name_of(super_obj)}")

    def on_cluster_ready(self, cluster_name: str):
        super().on_cluster_ready(cluster_name)
        for super_obj in self.super_informer.list():
            if self.is_public(super_obj):
                self.uw.add_to_queue(f"{cluster_name}/{name_of(super_obj)}")

    # ------------------------------------------------------------------ tenant events

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """A tenant side change of a public copy is reverted by the upward direction"""
        super_obj = self.super_informer.get(request.name)
        tenant_obj = self.mc.get(request.cluster_name, None, request.name)
        public = super_obj is not None and self.is_public(super_obj)
        if public or (tenant_obj is not None and mapping.is_public_copy(tenant_obj)):
            self.uw.add_to_queue(f"{request.cluster_name}/{request.name}")
        return ReconcileResult()

    # ------------------------------------------------------------------ upward

    def upward_owner(self, key: str) -> Optional[str]:
        cluster_name, _, _ = split_cluster_key(key)
        return cluster_name

    def back_populate(self, key: str) -> None:
        cluster_name, _, name = split_cluster_key(key)
        with self.uw.cluster_scope(key, cluster_name):
            self._sync_public_copy(cluster_name, name)

    def _sync_public_copy(self, cluster_name: str, name: str):
        client = self.mc.get_cluster_client(cluster_name)
        super_obj = self.super_informer.get(name)
        tenant_obj = self.mc.get(cluster_name, None, name)

        if super_obj is None or not self.is_public(super_obj):
            if tenant_obj is not None and mapping.is_public_copy(tenant_obj):
                try:
                    client.delete(self.kind, None, name, uid=uid_of(tenant_obj))
                    logger.info(f"Deleted {self.kind} {name} from cluster {cluster_name}, it is no longer public")
                except NotFoundError:
                    pass
            return

        if tenant_obj is None:
            try:
                client.create(self.kind, mapping.build_virtual_object(super_obj))
                logger.info(f"Created public {self.kind} {name} in cluster {cluster_name}")
                return
            except AlreadyExistsError:
                # the tenant cache lags behind, compare with the live object
                tenant_obj = client.get(self.kind, None, name)

        patch = self.check_public_equality(super_obj, tenant_obj)
        if patch is not None:
            client.update(self.kind, apply_merge_patch(tenant_obj, patch))
            logger.info(f"Updated public {self.kind} {name} in cluster {cluster_name}")

    # ------------------------------------------------------------------ patrol

    def patrol_cluster(self, cluster_name: str):
        tenant_objs = {name_of(obj): obj for obj in self.mc.list(cluster_name)}
        public_objs = {name_of(obj): obj for obj in self.super_informer.list() if self.is_public(obj)}

        for name, super_obj in public_objs.items():
            tenant_obj = tenant_objs.get(name)
            if tenant_obj is None or self.check_public_equality(super_obj, tenant_obj) is not None:
                logger.info(f"Patrol: public {self.kind} {name} of cluster {cluster_name} is missing or drifted")
                self.uw.add_to_queue(f"{cluster_name}/{name}")

        for name, tenant_obj in tenant_objs.items():
            if mapping.is_public_copy(tenant_obj) and name not in public_objs:
                logger.info(f"Patrol: public {self.kind} {name} of cluster {cluster_name} is no longer published")
                self.uw.add_to_queue(f"{cluster_name}/{name}")
