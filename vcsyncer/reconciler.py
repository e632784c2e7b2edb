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

"""Request/result types and the reconciler interfaces driven by the controllers"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class EventType(str, Enum):
    ADD = "Add"
    UPDATE = "Update"
    DELETE = "Delete"


@dataclass(frozen=True)
class ReconcileRequest:
    """
    Identifies one tenant object to reconcile. It carries no object state:
    the reconciler re-reads the current cached object, so coalesced or
    reordered events never make it act on a stale snapshot.
    """

    cluster_name: str
    namespace: str
    name: str
    uid: Optional[str] = None
    event: EventType = EventType.ADD

    @property
    def key(self) -> str:
        if self.namespace:
            return f"{self.cluster_name}/{self.namespace}/{self.name}"
        return f"{self.cluster_name}/{self.name}"


@dataclass
class ReconcileResult:
    requeue: bool = False
    requeue_after: Optional[float] = None


class DownwardReconciler(ABC):
    """Tenant -> super"""

    @abstractmethod
    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        pass


class UpwardReconciler(ABC):
    """Super -> tenant"""

    @abstractmethod
    def back_populate(self, key: str) -> None:
        pass


class PatrolReconciler(ABC):
    """Periodic consistency check between tenant and super control planes"""

    @abstractmethod
    def patroller_do(self) -> None:
        pass
