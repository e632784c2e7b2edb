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
Equality checks between tenant objects and their super counterparts.

Every check returns a JSON merge patch (RFC 7386, a None value deletes the
key) that brings the target side in line with the source side, or None when
both sides already agree. Downward checks patch the super object, upward
checks patch the tenant object. Nothing here is cached: drift can only be
detected by comparing the current state of both sides.
"""

import copy
from typing import Any, Dict, Iterable, List, Optional, Sequence

from vcsyncer import constants
from vcsyncer.conversion.mapping import build_virtual_object
from vcsyncer.util.objects import annotations_of, apply_merge_patch, labels_of, map_patch

__all__ = [
    "apply_merge_patch",
    "diff_merge_patch",
    "merge_patches",
    "check_dw_object_meta_equality",
    "check_uw_object_meta_equality",
    "check_dw_pod_spec_equality",
    "check_dw_pod_equality",
    "check_uw_pod_status_equality",
    "check_dw_ingress_equality",
    "check_uw_ingress_status_equality",
    "check_storage_class_equality",
    "check_crd_equality",
]

STORAGE_CLASS_FIELDS = (
    "provisioner",
    "parameters",
    "reclaimPolicy",
    "mountOptions",
    "allowVolumeExpansion",
    "volumeBindingMode",
    "allowedTopologies",
)


def diff_merge_patch(current: Any, desired: Any) -> Optional[Any]:
    """Merge patch turning current into desired; None when they are equal"""
    if current == desired:
        return None
    if not isinstance(current, dict) or not isinstance(desired, dict):
        return desired
    patch = {}
    for key in set(current) | set(desired):
        if key not in desired:
            patch[key] = None
        elif key not in current:
            patch[key] = desired[key]
        else:
            sub = diff_merge_patch(current[key], desired[key])
            if sub is not None:
                patch[key] = sub
    return patch or None


def _merge_into(target: Dict[str, Any], patch: Dict[str, Any]):
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_into(target[key], value)
        else:
            target[key] = value


def merge_patches(*patches: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Combine independent patches into one, keeping deletion markers; None when all are None"""
    result = None
    for patch in patches:
        if patch is None:
            continue
        if result is None:
            result = copy.deepcopy(patch)
        else:
            _merge_into(result, copy.deepcopy(patch))
    return result


def _has_prefix(key: str, prefixes: Iterable[str]) -> bool:
    return any(key.startswith(prefix) for prefix in prefixes)


def _meta_patch(labels: Optional[dict], annotations: Optional[dict]) -> Optional[Dict[str, Any]]:
    metadata = {}
    if labels:
        metadata["labels"] = labels
    if annotations:
        metadata["annotations"] = annotations
    if not metadata:
        return None
    return {"metadata": metadata}


def check_dw_object_meta_equality(
    super_obj: Dict[str, Any], tenant_obj: Dict[str, Any], super_owned_prefixes: Sequence[str] = ()
) -> Optional[Dict[str, Any]]:
    """
    Labels and annotations are owned by the tenant, except keys under the
    tenancy prefix and keys the super cluster manages itself (admission
    webhooks, defaulting). Those are never reverted.
    """
    skipped = (constants.TENANCY_PREFIX,) + tuple(super_owned_prefixes)

    def owned(keys):
        return {key for key in keys if not _has_prefix(key, skipped)}

    super_labels, tenant_labels = labels_of(super_obj), labels_of(tenant_obj)
    super_annotations, tenant_annotations = annotations_of(super_obj), annotations_of(tenant_obj)

    labels = map_patch(
        super_labels,
        {k: v for k, v in tenant_labels.items() if not _has_prefix(k, skipped)},
        owned(set(super_labels) | set(tenant_labels)),
    )
    annotations = map_patch(
        super_annotations,
        {k: v for k, v in tenant_annotations.items() if not _has_prefix(k, skipped)},
        owned(set(super_annotations) | set(tenant_annotations)),
    )
    return _meta_patch(labels, annotations)


def check_uw_object_meta_equality(
    super_obj: Dict[str, Any], tenant_obj: Dict[str, Any], prefixes: Sequence[str] = (constants.TENANCY_PREFIX,)
) -> Optional[Dict[str, Any]]:
    """Back-populate labels and annotations under the given prefixes from super to tenant"""

    def selected(keys, excluded):
        return {key for key in keys if _has_prefix(key, prefixes) and key not in excluded}

    super_labels, tenant_labels = labels_of(super_obj), labels_of(tenant_obj)
    super_annotations, tenant_annotations = annotations_of(super_obj), annotations_of(tenant_obj)

    label_keys = selected(set(super_labels) | set(tenant_labels), constants.SYNCER_OWNED_LABELS)
    annotation_keys = selected(set(super_annotations) | set(tenant_annotations), constants.SYNCER_OWNED_ANNOTATIONS)

    labels = map_patch(tenant_labels, {k: super_labels[k] for k in label_keys if k in super_labels}, label_keys)
    desired_annotations = {k: super_annotations[k] for k in annotation_keys if k in super_annotations}
    annotations = map_patch(tenant_annotations, desired_annotations, annotation_keys)
    return _meta_patch(labels, annotations)


def _container_images_patch(super_containers: List[dict], tenant_containers: List[dict]) -> Optional[List[dict]]:
    # merge patch replaces lists wholesale, so the patch carries the full list
    tenant_images = {c.get("name"): c.get("image") for c in tenant_containers or []}
    changed = False
    merged = []
    for container in super_containers or []:
        container = dict(container)
        image = tenant_images.get(container.get("name"))
        if image is not None and image != container.get("image"):
            container["image"] = image
            changed = True
        merged.append(container)
    return merged if changed else None


def check_dw_pod_spec_equality(super_pod: Dict[str, Any], tenant_pod: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Only the mutable part of a Pod spec is tenant owned after creation:
    container images and activeDeadlineSeconds.
    """
    super_spec, tenant_spec = super_pod.get("spec", {}), tenant_pod.get("spec", {})
    spec = {}
    for field in ("containers", "initContainers"):
        merged = _container_images_patch(super_spec.get(field), tenant_spec.get(field))
        if merged is not None:
            spec[field] = merged

    if super_spec.get("activeDeadlineSeconds") != tenant_spec.get("activeDeadlineSeconds"):
        spec["activeDeadlineSeconds"] = tenant_spec.get("activeDeadlineSeconds")
    if not spec:
        return None
    return {"spec": spec}


def check_dw_pod_equality(
    super_pod: Dict[str, Any], tenant_pod: Dict[str, Any], super_owned_prefixes: Sequence[str] = ()
) -> Optional[Dict[str, Any]]:
    return merge_patches(
        check_dw_object_meta_equality(super_pod, tenant_pod, super_owned_prefixes),
        check_dw_pod_spec_equality(super_pod, tenant_pod),
    )


def check_uw_pod_status_equality(super_pod: Dict[str, Any], tenant_pod: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """The whole Pod status is observed by the super cluster"""
    status = diff_merge_patch(tenant_pod.get("status") or {}, super_pod.get("status") or {})
    if status is None:
        return None
    return {"status": status}


def check_dw_ingress_equality(
    super_ingress: Dict[str, Any], tenant_ingress: Dict[str, Any], super_owned_prefixes: Sequence[str] = ()
) -> Optional[Dict[str, Any]]:
    spec = diff_merge_patch(super_ingress.get("spec") or {}, tenant_ingress.get("spec") or {})
    return merge_patches(
        check_dw_object_meta_equality(super_ingress, tenant_ingress, super_owned_prefixes),
        {"spec": spec} if spec is not None else None,
    )


def check_uw_ingress_status_equality(
    super_ingress: Dict[str, Any], tenant_ingress: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    desired = (super_ingress.get("status") or {}).get("loadBalancer") or {}
    current = (tenant_ingress.get("status") or {}).get("loadBalancer") or {}
    load_balancer = diff_merge_patch(current, desired)
    if load_balancer is None:
        return None
    return {"status": {"loadBalancer": load_balancer}}


def _public_object_patch(
    super_obj: Dict[str, Any], tenant_obj: Dict[str, Any], fields: Iterable[str]
) -> Optional[Dict[str, Any]]:
    desired = build_virtual_object(super_obj)
    patch = {}
    metadata = {}
    for key in ("labels", "annotations"):
        sub = diff_merge_patch(tenant_obj.get("metadata", {}).get(key) or {}, desired["metadata"].get(key) or {})
        if sub is not None:
            metadata[key] = sub
    if metadata:
        patch["metadata"] = metadata
    for field in fields:
        if field not in desired:
            if field in tenant_obj:
                patch[field] = None
            continue
        sub = diff_merge_patch(tenant_obj.get(field), desired[field])
        if sub is not None:
            patch[field] = sub
    return patch or None


def check_storage_class_equality(super_sc: Dict[str, Any], tenant_sc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Storage classes are owned by the super cluster; tenant edits are reverted"""
    return _public_object_patch(super_sc, tenant_sc, STORAGE_CLASS_FIELDS)


def check_crd_equality(super_crd: Dict[str, Any], tenant_crd: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return _public_object_patch(super_crd, tenant_crd, ("spec",))
