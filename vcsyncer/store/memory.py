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
import queue
import threading
import time
import uuid
from collections import deque
from typing import Any, Dict, Iterator, List, Optional

from vcsyncer.errors import AlreadyExistsError, ConflictError, NotFoundError, ResourceExpiredError
from vcsyncer.store import kinds
from vcsyncer.store.base import ADDED, DELETED, MODIFIED, ObjectStoreClient, WatchEvent
from vcsyncer.util.objects import deep_copy, join_key, match_labels, parse_label_selector, utc_now

logger = logging.getLogger(__name__)

DEFAULT_POD_GRACE_PERIOD = 30

_CLOSED = object()


class _Subscriber:
    def __init__(self, kind: str, namespace: Optional[str]):
        self.kind = kind
        self.namespace = namespace
        self.queue: "queue.Queue" = queue.Queue()

    def matches(self, kind: str, obj: Dict[str, Any]) -> bool:
        if kind != self.kind:
            return False
        if self.namespace:
            return obj.get("metadata", {}).get("namespace") == self.namespace
        return True


class InMemoryObjectStore(ObjectStoreClient):
    """
    Thread-safe in-process control plane.

    Implements the same contract as the kubernetes-backed store: resource
    versions, optimistic concurrency, UID preconditions, graceful pod deletion,
    finalizers and list/watch with a bounded event history.
    """

    def __init__(self, name: str = "memory", history_size: int = 10000):
        self.name = name
        self._lock = threading.RLock()
        self._objects: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._resource_version = 0
        self._history: deque = deque(maxlen=history_size)
        self._subscribers: List[_Subscriber] = []

    # ------------------------------------------------------------------ helpers

    def _bucket(self, kind: str) -> Dict[str, Dict[str, Any]]:
        kinds.kind_info(kind)
        return self._objects.setdefault(kind, {})

    def _key(self, kind: str, namespace: Optional[str], name: str) -> str:
        if kinds.kind_info(kind).namespaced:
            if not namespace:
                raise ValueError(f"{kind} {name} requires a namespace")
            return join_key(namespace, name)
        return name

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _emit(self, kind: str, event_type: str, obj: Dict[str, Any]):
        rv = int(obj["metadata"]["resourceVersion"])
        self._history.append((rv, kind, event_type, deep_copy(obj)))
        for sub in self._subscribers:
            if sub.matches(kind, obj):
                sub.queue.put(WatchEvent(event_type, deep_copy(obj)))

    def _lookup(self, kind: str, namespace: Optional[str], name: str) -> Dict[str, Any]:
        obj = self._bucket(kind).get(self._key(kind, namespace, name))
        if obj is None:
            raise NotFoundError(kind, namespace, name)
        return obj

    def _remove(self, kind: str, key: str, obj: Dict[str, Any]):
        del self._bucket(kind)[key]
        logger.debug(f"{self.name}: removed {kind} {key}")
        obj["metadata"]["resourceVersion"] = self._next_version()
        self._emit(kind, DELETED, obj)

    # ------------------------------------------------------------------ reads

    def get(self, kind: str, namespace: Optional[str], name: str) -> Dict[str, Any]:
        with self._lock:
            return deep_copy(self._lookup(kind, namespace, name))

    def list(self, kind: str, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> Dict[str, Any]:
        selector = parse_label_selector(label_selector)
        with self._lock:
            items = []
            for obj in self._bucket(kind).values():
                metadata = obj["metadata"]
                if namespace and metadata.get("namespace") != namespace:
                    continue
                if not match_labels(metadata.get("labels") or {}, selector):
                    continue
                items.append(deep_copy(obj))
            return {"items": items, "metadata": {"resourceVersion": str(self._resource_version)}}

    def watch(
        self,
        kind: str,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Iterator[WatchEvent]:
        kinds.kind_info(kind)
        sub = _Subscriber(kind, namespace)
        with self._lock:
            backlog = self._replay(sub, resource_version)
            self._subscribers.append(sub)
        return self._stream(sub, backlog, timeout_seconds)

    def _replay(self, sub: _Subscriber, resource_version: Optional[str]) -> List[WatchEvent]:
        if not resource_version:
            return []
        since = int(resource_version)
        if self._history and since < self._history[0][0] - 1:
            raise ResourceExpiredError(f"resource version {resource_version} is too old")
        return [
            WatchEvent(event_type, deep_copy(obj))
            for rv, kind, event_type, obj in self._history
            if rv > since and sub.matches(kind, obj)
        ]

    def _stream(self, sub: _Subscriber, backlog: List[WatchEvent], timeout_seconds: Optional[float]):
        deadline = time.monotonic() + timeout_seconds if timeout_seconds else None
        try:
            for event in backlog:
                yield event
            while True:
                wait = None
                if deadline is not None:
                    wait = deadline - time.monotonic()
                    if wait <= 0:
                        return
                try:
                    event = sub.queue.get(timeout=wait)
                except queue.Empty:
                    return
                if event is _CLOSED:
                    return
                yield event
        finally:
            with self._lock:
                if sub in self._subscribers:
                    self._subscribers.remove(sub)

    # ------------------------------------------------------------------ writes

    def create(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        info = kinds.kind_info(kind)
        new_obj = deep_copy(obj)
        metadata = new_obj.setdefault("metadata", {})
        name = metadata.get("name")
        if not name:
            raise ValueError(f"{kind} requires metadata.name")
        if not info.namespaced:
            metadata.pop("namespace", None)
        with self._lock:
            key = self._key(kind, metadata.get("namespace"), name)
            bucket = self._bucket(kind)
            if key in bucket:
                raise AlreadyExistsError(f"{kind} {key} already exists")
            new_obj["apiVersion"] = info.api_version
            new_obj["kind"] = kind
            metadata["uid"] = str(uuid.uuid4())
            metadata["creationTimestamp"] = utc_now()
            metadata["generation"] = 1
            metadata.pop("deletionTimestamp", None)
            metadata.pop("deletionGracePeriodSeconds", None)
            metadata["resourceVersion"] = self._next_version()
            bucket[key] = new_obj
            self._emit(kind, ADDED, new_obj)
            return deep_copy(new_obj)

    def _check_preconditions(self, current: Dict[str, Any], obj: Dict[str, Any], kind: str):
        metadata = obj.get("metadata", {})
        expected_rv = metadata.get("resourceVersion")
        if expected_rv and expected_rv != current["metadata"]["resourceVersion"]:
            raise ConflictError(
                f"{kind} {metadata.get('name')}: resourceVersion {expected_rv} is stale, "
                f"current is {current['metadata']['resourceVersion']}"
            )
        expected_uid = metadata.get("uid")
        if expected_uid and expected_uid != current["metadata"]["uid"]:
            raise ConflictError(f"{kind} {metadata.get('name')}: UID precondition failed")

    def update(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        info = kinds.kind_info(kind)
        metadata = obj.get("metadata", {})
        with self._lock:
            current = self._lookup(kind, metadata.get("namespace"), metadata.get("name"))
            self._check_preconditions(current, obj, kind)
            new_obj = deep_copy(obj)
            new_meta = new_obj.setdefault("metadata", {})
            for field in ("uid", "creationTimestamp", "deletionTimestamp", "deletionGracePeriodSeconds", "namespace"):
                if field in current["metadata"]:
                    new_meta[field] = current["metadata"][field]
                else:
                    new_meta.pop(field, None)
            if info.has_status:
                if "status" in current:
                    new_obj["status"] = deep_copy(current["status"])
                else:
                    new_obj.pop("status", None)
            if new_obj.get("spec") != current.get("spec"):
                new_meta["generation"] = current["metadata"].get("generation", 1) + 1
            else:
                new_meta["generation"] = current["metadata"].get("generation", 1)
            new_obj["apiVersion"] = info.api_version
            new_obj["kind"] = kind
            new_meta["resourceVersion"] = self._next_version()
            key = self._key(kind, new_meta.get("namespace"), new_meta["name"])
            # dropping the last finalizer of a deleting object completes its deletion
            finalized = current["metadata"].get("finalizers") and not new_meta.get("finalizers")
            if new_meta.get("deletionTimestamp") and finalized:
                self._remove(kind, key, new_obj)
                return deep_copy(new_obj)
            self._bucket(kind)[key] = new_obj
            self._emit(kind, MODIFIED, new_obj)
            return deep_copy(new_obj)

    def update_status(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        info = kinds.kind_info(kind)
        if not info.has_status:
            raise ValueError(f"{kind} has no status subresource")
        metadata = obj.get("metadata", {})
        with self._lock:
            current = self._lookup(kind, metadata.get("namespace"), metadata.get("name"))
            self._check_preconditions(current, obj, kind)
            current["status"] = deep_copy(obj.get("status") or {})
            current["metadata"]["resourceVersion"] = self._next_version()
            self._emit(kind, MODIFIED, current)
            return deep_copy(current)

    def delete(
        self,
        kind: str,
        namespace: Optional[str],
        name: str,
        grace_period_seconds: Optional[int] = None,
        uid: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> None:
        with self._lock:
            current = self._lookup(kind, namespace, name)
            metadata = current["metadata"]
            if uid and uid != metadata["uid"]:
                raise ConflictError(f"{kind} {name}: UID precondition failed, expected {uid} got {metadata['uid']}")
            if resource_version and resource_version != metadata["resourceVersion"]:
                raise ConflictError(f"{kind} {name}: resourceVersion precondition failed")
            key = self._key(kind, namespace, name)

            grace = self._grace_period(kind, current, grace_period_seconds)
            if grace <= 0 and not metadata.get("finalizers"):
                self._remove(kind, key, current)
                return

            if metadata.get("deletionTimestamp"):
                previous = metadata.get("deletionGracePeriodSeconds")
                if previous is not None and grace >= previous:
                    return
            else:
                metadata["deletionTimestamp"] = utc_now()
            metadata["deletionGracePeriodSeconds"] = max(grace, 0)
            metadata["resourceVersion"] = self._next_version()
            self._emit(kind, MODIFIED, current)

    def _grace_period(self, kind: str, obj: Dict[str, Any], requested: Optional[int]) -> int:
        if kind != kinds.POD:
            return 0
        # unscheduled pods are removed immediately, like the apiserver does
        if not obj.get("spec", {}).get("nodeName"):
            return 0
        if requested is not None:
            return requested
        grace = obj.get("spec", {}).get("terminationGracePeriodSeconds")
        return DEFAULT_POD_GRACE_PERIOD if grace is None else grace

    def bind_pod(self, namespace: str, name: str, node_name: str, uid: Optional[str] = None) -> None:
        with self._lock:
            current = self._lookup(kinds.POD, namespace, name)
            if uid and uid != current["metadata"]["uid"]:
                raise ConflictError(f"Pod {namespace}/{name}: UID precondition failed")
            spec = current.setdefault("spec", {})
            if spec.get("nodeName"):
                raise ConflictError(f"pod {name} is already assigned to node {spec['nodeName']}")
            spec["nodeName"] = node_name
            current["metadata"]["resourceVersion"] = self._next_version()
            self._emit(kinds.POD, MODIFIED, current)

    def close(self) -> None:
        with self._lock:
            for sub in self._subscribers:
                sub.queue.put(_CLOSED)
            self._subscribers = []
