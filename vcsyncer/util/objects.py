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

"""Helpers for objects represented as plain kubernetes-style dicts"""

import copy
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def deep_copy(obj: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if obj is None:
        return None
    return copy.deepcopy(obj)


def meta(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.setdefault("metadata", {})


def name_of(obj: Dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("name", "")


def namespace_of(obj: Dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("namespace") or ""


def uid_of(obj: Dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("uid") or ""


def resource_version_of(obj: Dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("resourceVersion") or ""


def labels_of(obj: Dict[str, Any]) -> Dict[str, str]:
    return obj.get("metadata", {}).get("labels") or {}


def annotations_of(obj: Dict[str, Any]) -> Dict[str, str]:
    return obj.get("metadata", {}).get("annotations") or {}


def deletion_timestamp_of(obj: Dict[str, Any]) -> Optional[str]:
    return obj.get("metadata", {}).get("deletionTimestamp")


def deletion_grace_period_of(obj: Dict[str, Any]) -> Optional[int]:
    return obj.get("metadata", {}).get("deletionGracePeriodSeconds")


def object_key(obj: Dict[str, Any]) -> str:
    """namespace/name for namespaced objects, name otherwise"""
    namespace = namespace_of(obj)
    if namespace:
        return f"{namespace}/{name_of(obj)}"
    return name_of(obj)


def join_key(namespace: Optional[str], name: str) -> str:
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: str) -> Tuple[str, str]:
    """Split namespace/name (or name) into (namespace, name)"""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def split_cluster_key(key: str) -> Tuple[str, str, str]:
    """Split cluster/namespace/name (or cluster/name) into (cluster, namespace, name)"""
    parts = key.split("/")
    if len(parts) == 2:
        return parts[0], "", parts[1]
    if len(parts) == 3:
        return parts[0], parts[1], parts[2]
    raise ValueError(f"unexpected cluster key format: {key!r}")


def match_labels(labels: Dict[str, str], selector: Optional[Dict[str, str]]) -> bool:
    if not selector:
        return True
    return all(labels.get(k) == v for k, v in selector.items())


def parse_label_selector(selector: Optional[str]) -> Dict[str, str]:
    """Parse the equality-based subset of the label selector syntax: a=b,c=d"""
    result = {}
    if not selector:
        return result
    for term in selector.split(","):
        term = term.strip()
        if not term:
            continue
        if "=" not in term:
            raise ValueError(f"unsupported label selector term: {term!r}")
        key, value = term.split("=", 1)
        result[key.strip().rstrip("=")] = value.strip().lstrip("=")
    return result


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """Apply a JSON merge patch (RFC 7386) and return the patched copy"""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


def map_patch(current: Optional[Dict[str, str]], desired: Dict[str, str], keys=None) -> Optional[Dict[str, Any]]:
    """
    Build a merge patch that turns current into desired for the given keys.

    Args:
        current: current map (labels or annotations)
        desired: desired values
        keys: keys under consideration, defaults to the union of both maps

    Returns:
        Patch dict, or None when nothing differs
    """
    current = current or {}
    if keys is None:
        keys = set(current) | set(desired)
    patch = {}
    for key in keys:
        if key in desired:
            if current.get(key) != desired[key]:
                patch[key] = desired[key]
        elif key in current:
            patch[key] = None
    return patch or None
