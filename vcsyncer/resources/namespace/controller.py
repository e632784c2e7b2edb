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

from vcsyncer.conversion import mapping
from vcsyncer.store import kinds
from vcsyncer.syncer.base import ResourceSyncer
from vcsyncer.syncer.plugin import Registration

logger = logging.getLogger(__name__)


class NamespaceSyncer(ResourceSyncer):
    """
    Every tenant namespace gets a super namespace named <cluster>-<namespace>.
    The super namespace hosts all namespaced objects synced from it, so the
    other plugins wait for it before creating anything.
    """

    kind = kinds.NAMESPACE

    def super_namespace(self, cluster_name: str, namespace: str) -> Optional[str]:
        return None

    def super_name(self, cluster_name: str, namespace: str, name: str) -> str:
        return mapping.to_super_namespace(cluster_name, name)

    def build_super_object(self, cluster_name: str, tenant_obj: Dict[str, Any]) -> Dict[str, Any]:
        super_obj = super().build_super_object(cluster_name, tenant_obj)
        # the finalizers of the tenant namespace belong to the tenant control plane
        super_obj.pop("spec", None)
        return super_obj


registration = Registration(
    id="namespace",
    init_fn=lambda ctx: NamespaceSyncer(ctx.config, ctx.super_client, ctx.informer_factory),
)
