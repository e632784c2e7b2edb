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
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from vcsyncer.config import SyncerConfiguration
from vcsyncer.store.base import ObjectStoreClient
from vcsyncer.util.informer import SharedInformerFactory

logger = logging.getLogger(__name__)


@dataclass
class InitContext:
    config: SyncerConfiguration
    super_client: ObjectStoreClient
    informer_factory: SharedInformerFactory


@dataclass
class Registration:
    id: str
    init_fn: Callable[[InitContext], Any]
    disable: bool = False


class ResourceSyncerRegistry:
    """
    Table of resource syncer plugins, keyed by id.

    Built once by the composition root and handed to the manager; which
    plugins actually run is decided from the configuration at startup.
    """

    def __init__(self, registrations: List[Registration] = None):
        self._registrations: Dict[str, Registration] = {}
        for registration in registrations or []:
            self.register(registration)

    def register(self, registration: Registration):
        if registration.id in self._registrations:
            raise ValueError(f"resource syncer {registration.id} is already registered")
        self._registrations[registration.id] = registration

    def get(self, plugin_id: str) -> Registration:
        try:
            return self._registrations[plugin_id]
        except KeyError:
            raise ValueError(f"Unknown resource syncer: {plugin_id}")

    def list(self) -> List[Registration]:
        return list(self._registrations.values())

    def is_enabled(self, registration: Registration, config: SyncerConfiguration) -> bool:
        if registration.id in config.disabled_resources:
            return False
        if registration.id in config.enabled_resources:
            return True
        return not registration.disable

    def enabled(self, config: SyncerConfiguration) -> List[Registration]:
        for name in list(config.enabled_resources) + list(config.disabled_resources):
            if name not in self._registrations:
                logger.warning(f"Ignoring unknown resource syncer {name} in configuration")
        return [r for r in self._registrations.values() if self.is_enabled(r, config)]
