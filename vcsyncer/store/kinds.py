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

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class KindInfo:
    kind: str
    api_version: str
    namespaced: bool
    has_status: bool = True


POD = "Pod"
SERVICE = "Service"
NODE = "Node"
NAMESPACE = "Namespace"
STORAGE_CLASS = "StorageClass"
INGRESS = "Ingress"
CRD = "CustomResourceDefinition"

KINDS: Dict[str, KindInfo] = {
    POD: KindInfo(POD, "v1", namespaced=True),
    SERVICE: KindInfo(SERVICE, "v1", namespaced=True),
    NODE: KindInfo(NODE, "v1", namespaced=False),
    NAMESPACE: KindInfo(NAMESPACE, "v1", namespaced=False),
    STORAGE_CLASS: KindInfo(STORAGE_CLASS, "storage.k8s.io/v1", namespaced=False, has_status=False),
    INGRESS: KindInfo(INGRESS, "networking.k8s.io/v1", namespaced=True),
    CRD: KindInfo(CRD, "apiextensions.k8s.io/v1", namespaced=False),
}


def kind_info(kind: str) -> KindInfo:
    try:
        return KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown kind: {kind}")
