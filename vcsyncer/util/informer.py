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

"""Informer-style cache: list, then watch, and notify handlers with before/after snapshots."""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from vcsyncer.errors import CacheSyncTimeoutError, ResourceExpiredError
from vcsyncer.store.base import DELETED, ObjectStoreClient
from vcsyncer.util.objects import deep_copy, namespace_of, object_key, resource_version_of

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30.0


class EventHandler:
    """Callbacks invoked from the informer thread. Handlers must not block."""

    def __init__(
        self,
        on_add: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_update: Optional[Callable[[Dict[str, Any], Dict[str, Any]], None]] = None,
        on_delete: Optional[Callable[[Dict[str, Any]], None]] = None,
        filter_func: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ):
        self.on_add = on_add
        self.on_update = on_update
        self.on_delete = on_delete
        self.filter_func = filter_func

    def _accepts(self, obj: Dict[str, Any]) -> bool:
        return self.filter_func is None or self.filter_func(obj)

    def handle_add(self, obj):
        if self.on_add and self._accepts(obj):
            self.on_add(obj)

    def handle_update(self, old, new):
        if self.on_update is None:
            return
        old_ok, new_ok = self._accepts(old), self._accepts(new)
        if old_ok and new_ok:
            self.on_update(old, new)
        elif new_ok:
            self.handle_add(new)
        elif old_ok:
            self.handle_delete(old)

    def handle_delete(self, obj):
        if self.on_delete and self._accepts(obj):
            self.on_delete(obj)


class Informer:
    """Maintain an in-memory cache of one kind in one control plane via list/watch"""

    def __init__(
        self,
        client: ObjectStoreClient,
        kind: str,
        namespace: Optional[str] = None,
        watch_timeout_seconds: float = 10.0,
        name: Optional[str] = None,
    ):
        self.client = client
        self.kind = kind
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.name = name or f"{getattr(client, 'name', 'store')}-{kind.lower()}"

        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._handlers: List[EventHandler] = []
        self._resource_version: Optional[str] = None
        self._synced = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    def add_event_handler(self, handler: EventHandler):
        """Register a handler; objects already cached are replayed as adds"""
        with self._lock:
            self._handlers.append(handler)
            existing = [deep_copy(obj) for obj in self._cache.values()]
        for obj in existing:
            self._dispatch(handler.handle_add, obj)

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=f"informer-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """Signal the watch loop to exit; joins only when a timeout is given"""
        self._stop_event.set()
        if timeout is not None and self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def wait_for_sync(self, timeout: Optional[float] = None) -> bool:
        return self._synced.wait(timeout)

    # ------------------------------------------------------------------ reads

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the cached object, or None"""
        with self._lock:
            return deep_copy(self._cache.get(key))

    def list(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [deep_copy(obj) for obj in self._cache.values() if not namespace or namespace_of(obj) == namespace]

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._cache.keys())

    # ------------------------------------------------------------------ loop

    def _run(self):
        backoff = 1.0
        while not self._stop_event.is_set():
            try:
                if self._resource_version is None:
                    self.resync()
                    backoff = 1.0
                self._watch_once()
                backoff = 1.0
            except ResourceExpiredError:
                logger.info(f"Informer {self.name}: resource version expired, relisting")
                self._resource_version = None
            except Exception as e:
                logger.warning(f"Informer {self.name} watch error: {e}", exc_info=True)
                self._resource_version = None
                self._stop_event.wait(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)

    def resync(self):
        """Full list; replaces the cache and notifies handlers about the differences"""
        result = self.client.list(self.kind, namespace=self.namespace)
        items = {object_key(item): item for item in result.get("items", [])}
        with self._lock:
            old_cache = self._cache
            self._cache = items
            self._resource_version = result.get("metadata", {}).get("resourceVersion") or None
            handlers = list(self._handlers)

        for key, obj in items.items():
            old = old_cache.get(key)
            if old is None:
                self._notify(handlers, "add", None, obj)
            elif resource_version_of(old) != resource_version_of(obj):
                self._notify(handlers, "update", old, obj)
        for key, old in old_cache.items():
            if key not in items:
                self._notify(handlers, "delete", old, None)
        if not self._synced.is_set():
            logger.info(f"Informer {self.name} synced {len(items)} objects")
        self._synced.set()

    def _watch_once(self):
        stream = self.client.watch(
            self.kind,
            namespace=self.namespace,
            resource_version=self._resource_version,
            timeout_seconds=self.watch_timeout_seconds,
        )
        try:
            for event in stream:
                if self._stop_event.is_set():
                    break
                self._handle_event(event.type, event.object)
        finally:
            close = getattr(stream, "close", None)
            if close:
                close()

    def _handle_event(self, event_type: str, obj: Dict[str, Any]):
        key = object_key(obj)
        with self._lock:
            old = self._cache.get(key)
            if event_type == DELETED:
                self._cache.pop(key, None)
            else:
                self._cache[key] = obj
            rv = resource_version_of(obj)
            if rv:
                self._resource_version = rv
            handlers = list(self._handlers)

        if event_type == DELETED:
            self._notify(handlers, "delete", old or obj, None)
        elif old is None:
            self._notify(handlers, "add", None, obj)
        else:
            self._notify(handlers, "update", old, obj)

    def _notify(self, handlers: List[EventHandler], action: str, old, new):
        for handler in handlers:
            if action == "add":
                self._dispatch(handler.handle_add, deep_copy(new))
            elif action == "update":
                self._dispatch(handler.handle_update, deep_copy(old), deep_copy(new))
            else:
                self._dispatch(handler.handle_delete, deep_copy(old))

    def _dispatch(self, fn, *args):
        try:
            fn(*args)
        except Exception as e:
            logger.error(f"Informer {self.name} handler failed: {e}", exc_info=True)


class SharedInformerFactory:
    """One informer per kind for a single control plane, shared by every plugin"""

    def __init__(self, client: ObjectStoreClient, watch_timeout_seconds: float = 10.0):
        self.client = client
        self.watch_timeout_seconds = watch_timeout_seconds
        self._informers: Dict[str, Informer] = {}
        self._lock = threading.Lock()
        self._started = False

    def informer_for(self, kind: str) -> Informer:
        with self._lock:
            if kind not in self._informers:
                informer = Informer(self.client, kind, watch_timeout_seconds=self.watch_timeout_seconds)
                self._informers[kind] = informer
                if self._started:
                    informer.start()
            return self._informers[kind]

    def start(self):
        with self._lock:
            self._started = True
            informers = list(self._informers.values())
        for informer in informers:
            informer.start()

    def stop(self):
        with self._lock:
            informers = list(self._informers.values())
            self._started = False
        for informer in informers:
            informer.stop()

    def wait_for_cache_sync(self, timeout: Optional[float] = None) -> Dict[str, bool]:
        with self._lock:
            informers = dict(self._informers)
        return {kind: informer.wait_for_sync(timeout) for kind, informer in informers.items()}

    def has_synced(self) -> bool:
        with self._lock:
            return all(informer.has_synced for informer in self._informers.values())


def wait_for_cache_sync(
    stop_event: threading.Event,
    synced_funcs: List[Callable[[], bool]],
    timeout: Optional[float] = None,
    poll: float = 0.1,
):
    """
    Block until every synced func reports True.

    Raises:
        CacheSyncTimeoutError: on timeout or when stop_event is set first
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    while not all(fn() for fn in synced_funcs):
        if stop_event.is_set():
            raise CacheSyncTimeoutError("stopped while waiting for caches to sync")
        if deadline is not None and time.monotonic() >= deadline:
            raise CacheSyncTimeoutError("failed to wait for caches to sync")
        stop_event.wait(poll)
