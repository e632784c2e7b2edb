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
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Sequence

from vcsyncer.controllers.base import ControllerOptions, QueueWorkerController
from vcsyncer.reconciler import ReconcileResult, UpwardReconciler
from vcsyncer.util.informer import wait_for_cache_sync

logger = logging.getLogger(__name__)


class UpwardController(QueueWorkerController):
    """
    Drives back-population of super object keys into their tenant clusters.

    Super keys carry no tenant cluster, so a reconciler marks the section
    that writes with a tenant client through cluster_scope(). Unregistering a
    cluster waits for those sections instead of for the keys themselves.
    """

    def __init__(
        self,
        kind: str,
        reconciler: UpwardReconciler,
        options: Optional[ControllerOptions] = None,
        name: Optional[str] = None,
    ):
        super().__init__(name or f"{kind.lower()}-uws", options)
        self.kind = kind
        self.reconciler = reconciler
        self._scopes: Dict[str, str] = {}
        self._scopes_cond = threading.Condition()

    def add_to_queue(self, key: str):
        self.queue.add(key)

    @contextmanager
    def cluster_scope(self, key: str, cluster_name: str) -> Iterator[None]:
        """Record that key is writing into cluster_name until the block exits"""
        with self._scopes_cond:
            self._scopes[key] = cluster_name
        try:
            yield
        finally:
            with self._scopes_cond:
                self._scopes.pop(key, None)
                self._scopes_cond.notify_all()

    def drain_cluster(
        self, cluster_name: str, owner_of: Callable[[str], Optional[str]], timeout: Optional[float] = None
    ) -> bool:
        """
        Drop the queued keys owned by cluster_name and wait until no key is
        writing into it any more.

        Returns:
            False when in-flight writes did not finish within timeout
        """
        # owners are resolved outside the queue lock, owner_of may read informer caches
        pending = set(self.queue.queued()) | set(self.queue.waiting())
        owned = {key for key in pending if owner_of(key) == cluster_name}
        removed = self.queue.remove_if(lambda key: key in owned)

        deadline = time.monotonic() + timeout if timeout is not None else None
        with self._scopes_cond:
            while cluster_name in self._scopes.values():
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.warning(f"Controller {self.name}: timed out draining writes into {cluster_name}")
                        return False
                self._scopes_cond.wait(remaining)
        logger.info(f"Controller {self.name} drained cluster {cluster_name}, dropped {removed} queued keys")
        return True

    def start(
        self,
        stop_event: threading.Event,
        synced_funcs: Sequence[Callable[[], bool]] = (),
        timeout: Optional[float] = None,
    ):
        wait_for_cache_sync(stop_event, list(synced_funcs), timeout)
        self.start_workers()

    def _process(self, key: str) -> Optional[ReconcileResult]:
        self.reconciler.back_populate(key)
        return None
