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
from typing import Any, Callable, Dict, List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from vcsyncer.conversion import equality, mapping
from vcsyncer.errors import ConflictError, IntegrityError, NotFoundError
from vcsyncer.store import kinds
from vcsyncer.store.base import ObjectStoreClient
from vcsyncer.syncer.base import ResourceSyncer
from vcsyncer.syncer.plugin import Registration
from vcsyncer.util.informer import EventHandler
from vcsyncer.util.objects import apply_merge_patch, name_of, object_key, resource_version_of, split_key, uid_of

logger = logging.getLogger(__name__)


class IngressSyncer(ResourceSyncer):
    """
    Tenant ingresses are served by the super cluster's ingress controller.
    Spec flows down; the load balancer address it reports flows back up.
    """

    kind = kinds.INGRESS
    has_upward = True

    def __init__(self, config, super_client, informer_factory):
        super().__init__(config, super_client, informer_factory)
        self.super_ingress_informer = informer_factory.informer_for(kinds.INGRESS)
        self.super_ingress_informer.add_event_handler(
            EventHandler(
                on_add=self._enqueue_super_ingress,
                on_update=self._on_super_ingress_update,
                on_delete=self._enqueue_super_ingress,
                filter_func=mapping.is_mapped,
            )
        )

    def super_synced_funcs(self) -> List[Callable[[], bool]]:
        return [lambda: self.super_ingress_informer.has_synced]

    def check_downward_equality(self, super_obj: Dict[str, Any], tenant_obj: Dict[str, Any]):
        return equality.check_dw_ingress_equality(super_obj, tenant_obj, self.dw_skip_prefixes)

    def _enqueue_super_ingress(self, super_ingress: Dict[str, Any]):
        self.uw.add_to_queue(object_key(super_ingress))

    def _on_super_ingress_update(self, old: Dict[str, Any], new: Dict[str, Any]):
        if resource_version_of(old) != resource_version_of(new):
            self._enqueue_super_ingress(new)

    def back_populate(self, key: str) -> None:
        _, name = split_key(key)
        super_ingress = self.super_ingress_informer.get(key)
        if super_ingress is None:
            return
        cluster_name, tenant_namespace = mapping.get_virtual_owner(super_ingress)
        if not cluster_name or not tenant_namespace:
            return

        tenant_ingress = self.mc.get(cluster_name, tenant_namespace, name)
        if tenant_ingress is None:
            return
        if mapping.get_owner_uid(super_ingress) != uid_of(tenant_ingress):
            raise IntegrityError(
                f"back populated ingress {key} delegated UID {mapping.get_owner_uid(super_ingress)} "
                f"differs from tenant ingress UID {uid_of(tenant_ingress)} in cluster {cluster_name}"
            )
        with self.uw.cluster_scope(key, cluster_name):
            client = self.mc.get_cluster_client(cluster_name)
            self._back_populate_state(client, super_ingress, tenant_namespace, name)

    def upward_owner(self, key: str) -> Optional[str]:
        super_ingress = self.super_ingress_informer.get(key)
        if super_ingress is None:
            return None
        return mapping.get_owner_cluster(super_ingress) or None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        retry=retry_if_exception_type(ConflictError),
        reraise=True,
    )
    def _back_populate_state(
        self, client: ObjectStoreClient, super_ingress: Dict[str, Any], namespace: str, name: str
    ) -> None:
        try:
            tenant_ingress = client.get(kinds.INGRESS, namespace, name)
        except NotFoundError:
            return

        meta_patch = self.check_upward_equality(super_ingress, tenant_ingress)
        if meta_patch is not None:
            client.update(kinds.INGRESS, apply_merge_patch(tenant_ingress, meta_patch))
            tenant_ingress = client.get(kinds.INGRESS, namespace, name)

        status_patch = equality.check_uw_ingress_status_equality(super_ingress, tenant_ingress)
        if status_patch is not None:
            client.update_status(kinds.INGRESS, apply_merge_patch(tenant_ingress, status_patch))
            logger.info(f"Back populated load balancer status of ingress {namespace}/{name}")

    def patrol_cluster(self, cluster_name: str):
        super().patrol_cluster(cluster_name)
        for super_ingress in self.super_ingress_informer.list():
            owner, namespace = mapping.get_virtual_owner(super_ingress)
            if owner != cluster_name:
                continue
            tenant_ingress = self.mc.get(cluster_name, namespace, name_of(super_ingress))
            if tenant_ingress is None or uid_of(tenant_ingress) != mapping.get_owner_uid(super_ingress):
                continue
            if (
                self.check_upward_equality(super_ingress, tenant_ingress) is not None
                or equality.check_uw_ingress_status_equality(super_ingress, tenant_ingress) is not None
            ):
                self.uw.add_to_queue(object_key(super_ingress))


registration = Registration(
    id="ingress",
    init_fn=lambda ctx: IngressSyncer(ctx.config, ctx.super_client, ctx.informer_factory),
    disable=True,
)
