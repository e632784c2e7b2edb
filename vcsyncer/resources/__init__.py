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

from vcsyncer.resources import crd, ingress, namespace, pod, storageclass
from vcsyncer.syncer.plugin import ResourceSyncerRegistry


def build_default_registry() -> ResourceSyncerRegistry:
    """Registry with every built-in plugin; namespaces come first so super namespaces exist early"""
    return ResourceSyncerRegistry(
        [
            namespace.registration,
            pod.registration,
            storageclass.registration,
            ingress.registration,
            crd.registration,
        ]
    )
