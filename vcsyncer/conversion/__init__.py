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

from vcsyncer.conversion.equality import (
    apply_merge_patch,
    check_crd_equality,
    check_dw_ingress_equality,
    check_dw_object_meta_equality,
    check_dw_pod_equality,
    check_dw_pod_spec_equality,
    check_storage_class_equality,
    check_uw_ingress_status_equality,
    check_uw_object_meta_equality,
    check_uw_pod_status_equality,
    diff_merge_patch,
    merge_patches,
)
from vcsyncer.conversion.mapping import (
    build_super_metadata,
    build_super_object,
    build_virtual_object,
    get_owner_uid,
    get_virtual_owner,
    is_owned_by,
    to_super_namespace,
)

__all__ = [
    "apply_merge_patch",
    "check_crd_equality",
    "check_dw_ingress_equality",
    "check_dw_object_meta_equality",
    "check_dw_pod_equality",
    "check_dw_pod_spec_equality",
    "check_storage_class_equality",
    "check_uw_ingress_status_equality",
    "check_uw_object_meta_equality",
    "check_uw_pod_status_equality",
    "diff_merge_patch",
    "merge_patches",
    "build_super_metadata",
    "build_super_object",
    "build_virtual_object",
    "get_owner_uid",
    "get_virtual_owner",
    "is_owned_by",
    "to_super_namespace",
]
