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

from typing import Any, Dict, Optional

from vcsyncer.constants import PUBLIC_STORAGE_CLASS_LABEL
from vcsyncer.conversion import equality
from vcsyncer.store import kinds
from vcsyncer.syncer.plugin import Registration
from vcsyncer.syncer.public import PublicObjectSyncer


class StorageClassSyncer(PublicObjectSyncer):
    """Public super storage classes are offered to every tenant"""

    kind = kinds.STORAGE_CLASS
    public_label = PUBLIC_STORAGE_CLASS_LABEL

    def check_public_equality(
        self, super_obj: Dict[str, Any], tenant_obj: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        return equality.check_storage_class_equality(super_obj, tenant_obj)


registration = Registration(
    id="storageclass",
    init_fn=lambda ctx: StorageClassSyncer(ctx.config, ctx.super_client, ctx.informer_factory),
)
