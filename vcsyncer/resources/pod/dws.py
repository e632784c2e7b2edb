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
from typing import Any, Dict, Optional

from vcsyncer.constants import MINIMUM_GRACE_PERIOD_SECONDS
from vcsyncer.conversion import mapping
from vcsyncer.conversion.mutate import mutate_super_pod
from vcsyncer.errors import NotFoundError
from vcsyncer.reconciler import ReconcileRequest, ReconcileResult
from vcsyncer.store import kinds
from vcsyncer.util.objects import deletion_grace_period_of, deletion_timestamp_of, object_key, uid_of

logger = logging.getLogger(__name__)


class PodDownwardMixin:
    """Tenant Pod -> super Pod"""

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        cluster_name = request.cluster_name
        tenant_pod = self.mc.get(cluster_name, request.namespace, request.name)
        super_namespace = mapping.to_super_namespace(cluster_name, request.namespace)
        super_pod = self.get_super_object(super_namespace, request.name)

        if tenant_pod is None:
            if request.uid:
                self.tracker.remove_pod(cluster_name, request.uid)
            return self.reconcile_tenant_absent(request, super_pod)

        node_name = tenant_pod.get("spec", {}).get("nodeName")
        if node_name:
            self.tracker.add_pod(cluster_name, node_name, uid_of(tenant_pod))

        if deletion_timestamp_of(tenant_pod):
            return self._reconcile_tenant_deleting(request, tenant_pod, super_pod)

        if super_pod is None:
            if node_name:
                # the super Pod is gone for good; deleting the tenant Pod lets its owner recreate it
                logger.info(f"Tenant pod {request.key} is bound but has no super pod, deleting it")
                self._delete_tenant_pod(cluster_name, tenant_pod, grace_period_seconds=0)
                return ReconcileResult()
            self.ensure_super_namespace(super_namespace)
            self.create_super_object(self.build_super_object(cluster_name, tenant_pod))
            return ReconcileResult()

        return self.reconcile_both_present(request, tenant_pod, super_pod)

    def build_super_object(self, cluster_name: str, tenant_obj: Dict[str, Any]) -> Dict[str, Any]:
        super_namespace = mapping.to_super_namespace(cluster_name, tenant_obj["metadata"]["namespace"])
        return mutate_super_pod(
            cluster_name,
            tenant_obj,
            super_namespace,
            services=self.super_service_informer.list(super_namespace),
            enable_service_links=self.config.enable_service_links,
        )

    def _reconcile_tenant_deleting(
        self, request: ReconcileRequest, tenant_pod: Dict[str, Any], super_pod: Optional[Dict[str, Any]]
    ) -> ReconcileResult:
        if super_pod is None:
            # the super side finished deleting, nothing runs the tenant pod any more
            self._delete_tenant_pod(request.cluster_name, tenant_pod, grace_period_seconds=0)
            return ReconcileResult()

        if not self.owned_by_request(super_pod, request):
            return ReconcileResult()
        if mapping.get_owner_uid(super_pod) != uid_of(tenant_pod):
            # the super pod belongs to another incarnation; the tenant pod is not running anywhere
            self._delete_tenant_pod(request.cluster_name, tenant_pod, grace_period_seconds=0)
            return ReconcileResult()

        grace = deletion_grace_period_of(tenant_pod)
        if grace is None:
            grace = MINIMUM_GRACE_PERIOD_SECONDS
        super_grace = deletion_grace_period_of(super_pod)
        if deletion_timestamp_of(super_pod) and super_grace is not None and super_grace <= grace:
            return ReconcileResult()
        self.delete_super_object(super_pod, grace_period_seconds=grace)
        return ReconcileResult()

    def _delete_tenant_pod(self, cluster_name: str, tenant_pod: Dict[str, Any], grace_period_seconds: int):
        client = self.mc.get_cluster_client(cluster_name)
        metadata = tenant_pod["metadata"]
        try:
            client.delete(
                kinds.POD,
                metadata["namespace"],
                metadata["name"],
                grace_period_seconds=grace_period_seconds,
                uid=uid_of(tenant_pod),
            )
            logger.info(f"Deleted tenant pod {cluster_name}/{object_key(tenant_pod)} with grace {grace_period_seconds}")
        except NotFoundError:
            pass
        self.tracker.remove_pod(cluster_name, uid_of(tenant_pod))
