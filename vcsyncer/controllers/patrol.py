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
from typing import Any, Dict, Optional

from vcsyncer.reconciler import PatrolReconciler

logger = logging.getLogger(__name__)


class Patroller:
    """
    Periodic consistency backstop, independent of the notification streams.

    The first pass runs one period after start. A failing pass is logged and
    the next one runs on schedule.
    """

    def __init__(self, kind: str, reconciler: PatrolReconciler, period: float = 60.0, name: Optional[str] = None):
        self.kind = kind
        self.reconciler = reconciler
        self.period = period
        self.name = name or f"{kind.lower()}-patrol"
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._passes = 0
        self._failures = 0
        self._last_duration: Optional[float] = None

    def start(self, stop_event: Optional[threading.Event] = None):
        if stop_event is not None:
            self._stop_event = stop_event
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Patroller {self.name} started with period {self.period}s")

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _run(self):
        while not self._stop_event.wait(self.period):
            self.patrol_once()

    def patrol_once(self) -> bool:
        """Run one pass synchronously; returns False if it failed"""
        start = time.monotonic()
        try:
            self.reconciler.patroller_do()
            return True
        except Exception as e:
            logger.error(f"Patroller {self.name} pass failed: {e}", exc_info=True)
            with self._lock:
                self._failures += 1
            return False
        finally:
            with self._lock:
                self._passes += 1
                self._last_duration = time.monotonic() - start

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "passes": self._passes,
                "failures": self._failures,
                "last_duration_seconds": self._last_duration,
                "period_seconds": self.period,
            }
