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
from typing import Any, Dict

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from vcsyncer.constants import MINIMUM_GRACE_PERIOD_SECONDS
from vcsyncer.conversion import equality, mapping
from vcsyncer.errors import (
    AlreadyExistsError,
    ConflictError,
    IntegrityError,
    NodeQuiescingError,
    NotFoundError,
    TransientError,
)
from vcsyncer.store import kinds
from vcsyncer.store.base import ObjectStoreClient
from vcsyncer.util.objects import (
    apply_merge_patch,
    deletion_grace_period_of,
    deletion_timestamp_of,
    name_of,
    split_key,
    uid_of,
)

logger = logging.getLogger(__name__)


class PodUpwardMixin:
    """Super Pod -> tenant Pod: placement, status, selected metadata and deletion"""

    def back_populate(self, key: str) -> None:
        _, super_name = split_key(key)
        super_pod = self.super_pod_informer.get(key)
        if super_pod is None:
            return

        cluster_name, tenant_namespace = mapping.get_virtual_owner(super_pod)
        if not cluster_name or not tenant_namespace:
            logger.info(f"Drop pod {key} which does not belong to any tenant")
            return

        tenant_pod = self.mc.get(cluster_name, tenant_namespace, super_name)
        if tenant_pod is None:
            return

        if mapping.get_owner_uid(super_pod) != uid_of(tenant_pod):
            raise IntegrityError(
                f"back populated pod {key} delegated UID {mapping.get_owner_uid(super_pod)} "
                f"differs from tenant pod UID {uid_of(tenant_pod)} in cluster {cluster_name}"
            )

        with self.uw.cluster_scope(key, cluster_name):
            client = self.mc.get_cluster_client(cluster_name)
            super_node = super_pod.get("spec", {}).get("nodeName")
            tenant_node = tenant_pod.get("spec", {}).get("nodeName")
            if not tenant_node and super_node:
                self._bind_pod_to_node(cluster_name, client, tenant_pod, super_node)
            elif tenant_node:
                self._ensure_virtual_node(cluster_name, client, tenant_pod, tenant_node)

            self._back_populate_state(client, super_pod, tenant_namespace, super_name)

            if deletion_timestamp_of(super_pod):
                self._back_populate_deletion(cluster_name, client, super_pod, tenant_namespace, super_name)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        retry=retry_if_exception_type(ConflictError),
        reraise=True,
    )
    def _back_populate_state(
        self, client: ObjectStoreClient, super_pod: Dict[str, Any], namespace: str, name: str
    ) -> None:
        """
        Write metadata and status into the tenant Pod.

        The two writes are separate requests, so a third writer can bump the
        resourceVersion in between. Any conflict restarts both from a fresh
        read; once attempts run out the conflict goes back to the queue.
        """
        try:
            tenant_pod = client.get(kinds.POD, namespace, name)
        except NotFoundError:
            return

        meta_patch = self.check_upward_equality(super_pod, tenant_pod)
        if meta_patch is not None:
            client.update(kinds.POD, apply_merge_patch(tenant_pod, meta_patch))
            tenant_pod = client.get(kinds.POD, namespace, name)

        status_patch = equality.check_uw_pod_status_equality(super_pod, tenant_pod)
        if status_patch is not None:
            client.update_status(kinds.POD, apply_merge_patch(tenant_pod, status_patch))

    def _bind_pod_to_node(
        self, cluster_name: str, client: ObjectStoreClient, tenant_pod: Dict[str, Any], node_name: str
    ):
        try:
            super_node = self.super_client.get(kinds.NODE, None, node_name)
        except NotFoundError:
            raise TransientError(f"failed to get node {node_name} from super control plane")

        pod_uid = uid_of(tenant_pod)
        if not self.tracker.reserve(cluster_name, node_name, pod_uid):
            raise NodeQuiescingError(cluster_name, node_name)
        try:
            self._create_virtual_node(cluster_name, client, super_node)
            client.bind_pod(tenant_pod["metadata"]["namespace"], name_of(tenant_pod), node_name, uid=pod_uid)
        except Exception:
            self.tracker.release(cluster_name, node_name, pod_uid)
            raise
        namespace = tenant_pod["metadata"]["namespace"]
        logger.info(f"Bound pod {namespace}/{name_of(tenant_pod)} of cluster {cluster_name} to {node_name}")

    def _ensure_virtual_node(
        self, cluster_name: str, client: ObjectStoreClient, tenant_pod: Dict[str, Any], node_name: str
    ):
        """The vNode of an already bound pod went missing; recreate it"""
        try:
            client.get(kinds.NODE, None, node_name)
            return
        except NotFoundError:
            pass
        try:
            super_node = self.super_client.get(kinds.NODE, None, node_name)
        except NotFoundError:
            logger.warning(f"vNode {node_name} of cluster {cluster_name} has no super node, leaving it absent")
            return
        if not self.tracker.reserve(cluster_name, node_name, uid_of(tenant_pod)):
            raise NodeQuiescingError(cluster_name, node_name)
        self._create_virtual_node(cluster_name, client, super_node)

    def _create_virtual_node(self, cluster_name: str, client: ObjectStoreClient, super_node: Dict[str, Any]):
        node_name = name_of(super_node)
        try:
            client.get(kinds.NODE, None, node_name)
            return
        except NotFoundError:
            pass
        try:
            client.create(kinds.NODE, self.vnode_provider.build(super_node))
            logger.info(f"Created vNode {node_name} in cluster {cluster_name}")
        except AlreadyExistsError:
            pass

    def _back_populate_deletion(
        self, cluster_name: str, client: ObjectStoreClient, super_pod: Dict[str, Any], namespace: str, name: str
    ):
        """The super side decides when a pod is gone, so its deletion is propagated to the tenant"""
        try:
            tenant_pod = client.get(kinds.POD, namespace, name)
        except NotFoundError:
            return
        super_grace = deletion_grace_period_of(super_pod)

        if not deletion_timestamp_of(tenant_pod):
            grace = super_grace
            if grace is None:
                grace = tenant_pod.get("spec", {}).get("terminationGracePeriodSeconds")
            if grace is None:
                grace = MINIMUM_GRACE_PERIOD_SECONDS
            logger.info(f"Super pod of {cluster_name}/{namespace}/{name} is under deletion, deleting tenant pod")
            self._delete_tenant_pod_with_grace(client, tenant_pod, grace)
            return

        tenant_grace = deletion_grace_period_of(tenant_pod)
        # the apiserver ignores a longer grace on re-delete, so only a shorter one is propagated
        if super_grace is not None and (tenant_grace is None or super_grace < tenant_grace):
            logger.info(f"Delete tenant pod {namespace}/{name} with grace period seconds {super_grace}")
            self._delete_tenant_pod_with_grace(client, tenant_pod, super_grace)
            self.tracker.remove_pod(cluster_name, uid_of(tenant_pod))

    @staticmethod
    def _delete_tenant_pod_with_grace(client: ObjectStoreClient, tenant_pod: Dict[str, Any], grace: int):
        try:
            client.delete(
                kinds.POD,
                tenant_pod["metadata"]["namespace"],
                name_of(tenant_pod),
                grace_period_seconds=grace,
                uid=uid_of(tenant_pod),
            )
        except NotFoundError:
            pass
