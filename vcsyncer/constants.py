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

TENANCY_PREFIX = "tenancy.x-k8s.io/"

# Ownership mapping carried by every super object created by the syncer
LABEL_CLUSTER = TENANCY_PREFIX + "cluster"
LABEL_NAMESPACE = TENANCY_PREFIX + "namespace"
LABEL_NAME = TENANCY_PREFIX + "name"
LABEL_UID = TENANCY_PREFIX + "uid"
LABEL_VCNAME = TENANCY_PREFIX + "vcname"

# Keys the syncer owns on super objects; never compared or reverted
SYNCER_OWNED_ANNOTATIONS = frozenset([LABEL_CLUSTER, LABEL_NAMESPACE, LABEL_NAME, LABEL_UID])
SYNCER_OWNED_LABELS = frozenset([LABEL_VCNAME])

# Super objects published to every tenant
PUBLIC_STORAGE_CLASS_LABEL = TENANCY_PREFIX + "public.storageclass"
PUBLIC_CRD_LABEL = TENANCY_PREFIX + "super.public"
# Marks tenant copies created by upward sync
PUBLIC_OBJECT_OWNER_LABEL = TENANCY_PREFIX + "public.object"

LABEL_VIRTUAL_NODE = TENANCY_PREFIX + "virtualnode"

# Worker pool sizes
DWS_CONTROLLER_WORKER_HIGH = 10
DWS_CONTROLLER_WORKER_LOW = 3
UWS_CONTROLLER_WORKER_HIGH = 10
UWS_CONTROLLER_WORKER_LOW = 3

MINIMUM_GRACE_PERIOD_SECONDS = 30
