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

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


@dataclass
class WatchEvent:
    """One notification from a watch stream"""

    type: str
    object: Dict[str, Any]


class ObjectStoreClient(ABC):
    """Abstract handle to one control plane (super or tenant)"""

    name: str = ""

    @abstractmethod
    def get(self, kind: str, namespace: Optional[str], name: str) -> Dict[str, Any]:
        """
        Get a single object

        Raises:
            NotFoundError: if the object does not exist
        """
        pass

    @abstractmethod
    def list(self, kind: str, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> Dict[str, Any]:
        """
        List objects of a kind

        Returns:
            {"items": [...], "metadata": {"resourceVersion": "..."}}
        """
        pass

    @abstractmethod
    def watch(
        self,
        kind: str,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Iterator[WatchEvent]:
        """
        Stream changes after resource_version. The iterator ends when
        timeout_seconds elapse without being an error.

        Raises:
            ResourceExpiredError: resource_version is too old
        """
        pass

    @abstractmethod
    def create(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Raises:
            AlreadyExistsError: an object with the same name exists
        """
        pass

    @abstractmethod
    def update(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace an object; metadata.resourceVersion, when set, is a precondition.

        Raises:
            ConflictError: resourceVersion is stale
            NotFoundError: the object is gone
        """
        pass

    @abstractmethod
    def update_status(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace only the status of an object, same preconditions as update"""
        pass

    @abstractmethod
    def delete(
        self,
        kind: str,
        namespace: Optional[str],
        name: str,
        grace_period_seconds: Optional[int] = None,
        uid: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> None:
        """
        Delete an object, optionally with UID / resourceVersion preconditions.

        Raises:
            NotFoundError: the object does not exist
            ConflictError: a precondition failed
        """
        pass

    @abstractmethod
    def bind_pod(self, namespace: str, name: str, node_name: str, uid: Optional[str] = None) -> None:
        """
        Bind a pod to a node through the binding subresource

        Raises:
            ConflictError: the pod is already bound or the UID differs
        """
        pass

    def close(self) -> None:
        """Release any connection resources"""
        pass
