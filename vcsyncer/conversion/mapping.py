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
Ownership mapping between tenant objects and the super objects created for them.

Every super object created by the syncer carries the owning cluster, tenant
namespace, tenant name and tenant UID as annotations. A super object without
them is not managed by the syncer and is never touched.
"""

from typing import Any, Dict, Optional, Tuple

from vcsyncer import constants
from vcsyncer.util.objects import annotations_of, deep_copy, name_of, namespace_of, uid_of

SERVER_POPULATED_FIELDS = (
    "uid",
    "resourceVersion",
    "creationTimestamp",
    "generation",
    "managedFields",
    "selfLink",
    "ownerReferences",
    "finalizers",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "generateName",
)


def to_super_namespace(cluster_name: str, namespace: str) -> str:
    return f"{cluster_name}-{namespace}"


def get_virtual_owner(obj: Dict[str, Any]) -> Tuple[str, str]:
    """Return (cluster name, tenant namespace); empty strings when unmapped"""
    annotations = annotations_of(obj)
    cluster_name = annotations.get(constants.LABEL_CLUSTER, "")
    namespace = annotations.get(constants.LABEL_NAMESPACE, "")
    if not cluster_name or not namespace:
        return "", ""
    return cluster_name, namespace


def get_owner_cluster(obj: Dict[str, Any]) -> str:
    """Cluster of a mapped object, for cluster-scoped kinds without a tenant namespace"""
    return annotations_of(obj).get(constants.LABEL_CLUSTER, "")


def get_owner_uid(obj: Dict[str, Any]) -> str:
    return annotations_of(obj).get(constants.LABEL_UID, "")


def get_owner_name(obj: Dict[str, Any]) -> str:
    return annotations_of(obj).get(constants.LABEL_NAME) or name_of(obj)


def is_mapped(obj: Dict[str, Any]) -> bool:
    return bool(get_owner_cluster(obj))


def is_owned_by(super_obj: Dict[str, Any], cluster_name: str, namespace: Optional[str]) -> bool:
    annotations = annotations_of(super_obj)
    if annotations.get(constants.LABEL_CLUSTER) != cluster_name:
        return False
    return not namespace or annotations.get(constants.LABEL_NAMESPACE) == namespace


def strip_server_fields(metadata: Dict[str, Any]) -> Dict[str, Any]:
    result = deep_copy(metadata) or {}
    for field in SERVER_POPULATED_FIELDS:
        result.pop(field, None)
    return result


def build_super_metadata(
    cluster_name: str, tenant_obj: Dict[str, Any], super_namespace: Optional[str] = None
) -> Dict[str, Any]:
    """Metadata of the super object mirroring tenant_obj, with the ownership mapping attached"""
    metadata = strip_server_fields(tenant_obj.get("metadata", {}))
    if super_namespace:
        metadata["namespace"] = super_namespace
    else:
        metadata.pop("namespace", None)

    annotations = metadata.setdefault("annotations", {})
    annotations[constants.LABEL_CLUSTER] = cluster_name
    annotations[constants.LABEL_NAMESPACE] = namespace_of(tenant_obj) or name_of(tenant_obj)
    annotations[constants.LABEL_NAME] = name_of(tenant_obj)
    annotations[constants.LABEL_UID] = uid_of(tenant_obj)

    labels = metadata.setdefault("labels", {})
    labels[constants.LABEL_VCNAME] = cluster_name
    return metadata


def build_super_object(
    cluster_name: str, tenant_obj: Dict[str, Any], super_namespace: Optional[str] = None
) -> Dict[str, Any]:
    """Generic downward conversion: copy spec-level fields, drop status, attach mapping"""
    super_obj = deep_copy(tenant_obj)
    super_obj["metadata"] = build_super_metadata(cluster_name, tenant_obj, super_namespace)
    super_obj.pop("status", None)
    return super_obj


def build_virtual_object(super_obj: Dict[str, Any]) -> Dict[str, Any]:
    """Tenant copy of a public super object (storage classes, CRDs)"""
    tenant_obj = deep_copy(super_obj)
    metadata = strip_server_fields(super_obj.get("metadata", {}))
    metadata.pop("namespace", None)
    metadata.setdefault("labels", {})[constants.PUBLIC_OBJECT_OWNER_LABEL] = "true"
    tenant_obj["metadata"] = metadata
    tenant_obj.pop("status", None)
    return tenant_obj


def is_public_copy(tenant_obj: Dict[str, Any]) -> bool:
    """True for tenant objects created by upward sync of a public super object"""
    labels = tenant_obj.get("metadata", {}).get("labels") or {}
    return labels.get(constants.PUBLIC_OBJECT_OWNER_LABEL) == "true"
