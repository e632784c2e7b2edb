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
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from vcsyncer.errors import ConflictError, IntegrityError, NotFoundError
from vcsyncer.reconciler import ReconcileResult
from vcsyncer.util.workqueue import ExponentialBackoff, RateLimitingQueue

logger = logging.getLogger(__name__)


@dataclass
class ControllerOptions:
    max_concurrent_reconciles: int = 3
    max_retries: int = 15
    queue_base_delay: float = 0.005
    queue_max_delay: float = 1000.0
    # delay for keys of clusters whose cache is not synced yet
    not_synced_delay: float = 1.0
    watch_timeout_seconds: float = 10.0

    @classmethod
    def from_config(cls, config, workers: int) -> "ControllerOptions":
        return cls(
            max_concurrent_reconciles=workers,
            max_retries=config.max_retries,
            queue_base_delay=config.queue_base_delay,
            queue_max_delay=config.queue_max_delay,
            watch_timeout_seconds=config.watch_timeout_seconds,
        )


class QueueWorkerController(ABC):
    """
    Worker pool draining a rate limited queue.

    Subclasses implement _process(key). The error policy lives here so every
    controller treats failures the same way:

    - NotFoundError: the object is gone, forget the key
    - ConflictError: lost an optimistic concurrency race, requeue with rate limit
    - IntegrityError: owner mapping violated, log loudly and drop the key
    - anything else: requeue with exponential backoff until max_retries,
      then count it as exhausted; patrol revisits the object later
    """

    def __init__(self, name: str, options: Optional[ControllerOptions] = None):
        self.name = name
        self.options = options or ControllerOptions()
        self.queue = RateLimitingQueue(
            name=name,
            backoff=ExponentialBackoff(self.options.queue_base_delay, self.options.queue_max_delay),
        )
        self._workers: List[threading.Thread] = []
        self._stats_lock = threading.Lock()
        self._stats = {
            "processed": 0,
            "succeeded": 0,
            "requeued": 0,
            "conflicts": 0,
            "not_found": 0,
            "integrity_failures": 0,
            "exhausted_retries": 0,
        }

    @abstractmethod
    def _process(self, key: str) -> Optional[ReconcileResult]:
        pass

    def _count(self, stat: str):
        with self._stats_lock:
            self._stats[stat] += 1

    # ------------------------------------------------------------------ workers

    def start_workers(self):
        for i in range(self.options.max_concurrent_reconciles):
            worker = threading.Thread(target=self._worker_loop, name=f"{self.name}-worker-{i}", daemon=True)
            worker.start()
            self._workers.append(worker)
        logger.info(f"Controller {self.name} started {len(self._workers)} workers")

    def stop(self, timeout: Optional[float] = None):
        """Stop dequeuing; in-flight keys are allowed to finish"""
        self.queue.shut_down()
        for worker in self._workers:
            if worker is not threading.current_thread():
                worker.join(timeout)
        self._workers = []

    def _worker_loop(self):
        while self.process_next_work_item():
            pass

    def process_next_work_item(self, timeout: Optional[float] = None) -> bool:
        """
        Take one key from the queue and process it.

        Returns:
            False when the queue has shut down (or timed out), True otherwise
        """
        key = self.queue.get(timeout)
        if key is None:
            return False
        try:
            self._reconcile_key(key)
        finally:
            self.queue.done(key)
        return True

    def _reconcile_key(self, key: str):
        self._count("processed")
        try:
            result = self._process(key)
        except NotFoundError as e:
            logger.debug(f"{self.name}: {key} not found, dropping: {e}")
            self._count("not_found")
            self.queue.forget(key)
            return
        except ConflictError as e:
            logger.debug(f"{self.name}: conflict on {key}, requeue: {e}")
            self._count("conflicts")
            self.queue.add_rate_limited(key)
            return
        except IntegrityError as e:
            logger.error(f"{self.name}: integrity violation on {key}, dropping: {e}")
            self._count("integrity_failures")
            self.queue.forget(key)
            return
        except Exception as e:
            if self.queue.num_requeues(key) < self.options.max_retries:
                logger.warning(f"{self.name}: failed to reconcile {key}, requeue: {e}")
                self._count("requeued")
                self.queue.add_rate_limited(key)
            else:
                logger.error(
                    f"{self.name}: giving up on {key} after {self.options.max_retries} retries: {e}", exc_info=True
                )
                self._count("exhausted_retries")
                self.queue.forget(key)
            return

        self._count("succeeded")
        self.queue.forget(key)
        if result is not None and result.requeue_after:
            self.queue.add_after(key, result.requeue_after)
        elif result is not None and result.requeue:
            self.queue.add_rate_limited(key)

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["queue_depth"] = len(self.queue)
        stats["in_flight"] = len(self.queue.in_flight())
        stats["workers"] = len(self._workers)
        return stats
