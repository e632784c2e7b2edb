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

"""
Rate limited work queue.

A key is never handed to two workers at the same time: adding a key that is
being processed marks it dirty, and it is re-queued once the worker calls
done(). Keys waiting in the queue are deduplicated.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """Per-key exponential failure backoff"""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, key: Hashable) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        # cap the exponent before computing to avoid float overflow
        return min(self.base_delay * (2 ** min(failures, 62)), self.max_delay)

    def forget(self, key: Hashable):
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class RateLimitingQueue:
    def __init__(self, name: str = "", backoff: Optional[ExponentialBackoff] = None):
        self.name = name
        self._backoff = backoff or ExponentialBackoff()
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty = set()
        self._processing = set()
        self._shutting_down = False

        self._waiting: List = []
        self._waiting_seq = itertools.count()
        self._waiting_cond = threading.Condition()
        self._delay_thread = threading.Thread(target=self._delay_loop, name=f"workqueue-delay-{name}", daemon=True)
        self._delay_thread.start()

    # ------------------------------------------------------------------ basic queue

    def add(self, key: Hashable):
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """
        Block until a key is available. Returns None on shutdown or timeout.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        with self._cond:
            while not self._queue and not self._shutting_down:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                self._cond.wait(remaining)
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: Hashable):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def in_flight(self) -> List[Hashable]:
        with self._cond:
            return list(self._processing)

    def queued(self) -> List[Hashable]:
        with self._cond:
            return list(self._queue)

    def waiting(self) -> List[Hashable]:
        """Keys scheduled by add_after that are not queued yet"""
        with self._waiting_cond:
            return [entry[2] for entry in self._waiting]

    def remove_if(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop queued (not in flight) keys matching predicate"""
        with self._cond:
            kept = deque(k for k in self._queue if not predicate(k))
            removed = len(self._queue) - len(kept)
            self._queue = kept
            self._dirty = {k for k in self._dirty if not predicate(k) or k in self._processing}
        with self._waiting_cond:
            self._waiting = [entry for entry in self._waiting if not predicate(entry[2])]
            heapq.heapify(self._waiting)
        return removed

    def wait_until_idle(self, predicate: Callable[[Hashable], bool], timeout: Optional[float] = None) -> bool:
        """Wait until no in-flight key matches predicate"""
        deadline = time.monotonic() + timeout if timeout is not None else None
        with self._cond:
            while any(predicate(k) for k in self._processing):
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                self._cond.wait(remaining)
            return True

    def shut_down(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._waiting_cond:
            self._waiting_cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    # ------------------------------------------------------------------ delaying

    def add_after(self, key: Hashable, delay: float):
        if delay <= 0:
            self.add(key)
            return
        with self._waiting_cond:
            heapq.heappush(self._waiting, (time.monotonic() + delay, next(self._waiting_seq), key))
            self._waiting_cond.notify()

    def _delay_loop(self):
        while True:
            with self._waiting_cond:
                if self.shutting_down:
                    return
                if not self._waiting:
                    self._waiting_cond.wait()
                    continue
                ready_at, _, key = self._waiting[0]
                now = time.monotonic()
                if ready_at > now:
                    self._waiting_cond.wait(ready_at - now)
                    continue
                heapq.heappop(self._waiting)
            self.add(key)

    # ------------------------------------------------------------------ rate limiting

    def add_rate_limited(self, key: Hashable):
        self.add_after(key, self._backoff.when(key))

    def forget(self, key: Hashable):
        self._backoff.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self._backoff.num_requeues(key)
