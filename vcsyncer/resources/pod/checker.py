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

from vcsyncer.constants import LABEL_VIRTUAL_NODE
from vcsyncer.conversion import equality, mapping
from vcsyncer.errors import ConflictError
from vcsyncer.store import kinds
from vcsyncer.util.objects import deletion_timestamp_of, name_of, object_key, uid_of

logger = logging.getLogger(__name__)


class PodPatrolMixin:
    def patrol_cluster(self, cluster_name: str):
        tenant_pods = {object_key(pod): pod for pod in self.mc.list(cluster_name)}
        super_pods: Dict[str, Dict[str, Any]] = {}
        for super_pod in self.super_pod_informer.list():
            owner, namespace = mapping.get_virtual_owner(super_pod)
            if owner == cluster_name:
                super_pods[f"{namespace}/{name_of(super_pod)}"] = super_pod

        for key, tenant_pod in tenant_pods.items():
            super_pod = super_pods.get(key)
            if super_pod is None:
                if not deletion_timestamp_of(tenant_pod) or tenant_pod.get("spec", {}).get("nodeName"):
                    logger.info(f"Patrol: super pod of {cluster_name}/{key} is missing")
                    self.mc.enqueue(cluster_name, key)
                continue
            if mapping.get_owner_uid(super_pod) != uid_of(tenant_pod):
                self.mc.enqueue(cluster_name, key)
                continue
            if deletion_timestamp_of(tenant_pod) and not deletion_timestamp_of(super_pod):
                self.mc.enqueue(cluster_name, key)
            elif equality.check_dw_pod_equality(super_pod, tenant_pod, self.dw_skip_prefixes) is not None:
                logger.info(f"Patrol: super pod of {cluster_name}/{key} drifted from the tenant spec")
                self.mc.enqueue(cluster_name, key)
            if self._needs_back_population(super_pod, tenant_pod):
                self.uw.add_to_queue(object_key(super_pod))

        for key, super_pod in super_pods.items():
            if key in tenant_pods or deletion_timestamp_of(super_pod):
                continue
            logger.info(f"Patrol: deleting orphan super pod {object_key(super_pod)} of cluster {cluster_name}")
            try:
                self.delete_super_object(super_pod)
            except ConflictError:
                logger.debug(f"Patrol: orphan super pod {object_key(super_pod)} changed, skip")

        self._patrol_virtual_nodes(cluster_name)

    def _needs_back_population(self, super_pod: Dict[str, Any], tenant_pod: Dict[str, Any]) -> bool:
        if super_pod.get("spec", {}).get("nodeName") and not tenant_pod.get("spec", {}).get("nodeName"):
            return True
        if deletion_timestamp_of(super_pod) and not deletion_timestamp_of(tenant_pod):
            return True
        if self.check_upward_equality(super_pod, tenant_pod) is not None:
            return True
        return equality.check_uw_pod_status_equality(super_pod, tenant_pod) is not None

    def _patrol_virtual_nodes(self, cluster_name: str):
        """vNodes the tracker does not know about (e.g. left over by a restart) become GC candidates"""
        client = self.mc.get_cluster_client(cluster_name)
        known = set(self.tracker.nodes(cluster_name))
        selector = f"{LABEL_VIRTUAL_NODE}=true"
        for node in client.list(kinds.NODE, label_selector=selector).get("items", []):
            if name_of(node) not in known:
                self.tracker.seed_node(cluster_name, name_of(node))
