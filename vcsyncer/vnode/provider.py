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

"""Tenant-visible stand-ins for super cluster nodes"""

import copy
from typing import Any, Dict, Iterable, Optional

from vcsyncer.constants import LABEL_VIRTUAL_NODE
from vcsyncer.store import kinds
from vcsyncer.util.objects import labels_of, name_of

# Node labels that are meaningful to tenant workloads (topology, arch, os)
DEFAULT_NODE_LABELS = (
    "kubernetes.io/arch",
    "kubernetes.io/os",
    "kubernetes.io/hostname",
    "topology.kubernetes.io/region",
    "topology.kubernetes.io/zone",
    "node.kubernetes.io/instance-type",
)

STATUS_FIELDS = ("capacity", "allocatable", "nodeInfo", "addresses", "conditions", "daemonEndpoints")


class VirtualNodeProvider:
    def __init__(self, label_keys: Optional[Iterable[str]] = None):
        self.label_keys = tuple(label_keys) if label_keys is not None else DEFAULT_NODE_LABELS

    def build(self, super_node: Dict[str, Any]) -> Dict[str, Any]:
        """Build the tenant VirtualNode mirroring a super Node"""
        super_labels = labels_of(super_node)
        labels = {key: super_labels[key] for key in self.label_keys if key in super_labels}
        labels[LABEL_VIRTUAL_NODE] = "true"

        spec = {}
        taints = (super_node.get("spec") or {}).get("taints")
        if taints:
            spec["taints"] = copy.deepcopy(taints)

        super_status = super_node.get("status") or {}
        status = {field: copy.deepcopy(super_status[field]) for field in STATUS_FIELDS if field in super_status}

        return {
            "apiVersion": kinds.kind_info(kinds.NODE).api_version,
            "kind": kinds.NODE,
            "metadata": {"name": name_of(super_node), "labels": labels},
            "spec": spec,
            "status": status,
        }


def is_virtual_node(node: Dict[str, Any]) -> bool:
    return labels_of(node).get(LABEL_VIRTUAL_NODE) == "true"
