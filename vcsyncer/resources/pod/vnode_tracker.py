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
VirtualNode reference tracking and garbage collection.

Two maps per tenant cluster, both guarded by a single lock:

- node -> UIDs of tenant pods bound (or being bound) to it
- GC map: nodes without pods, with the time they became quiescing and a
  destroying flag set while a sweep deletes them

Binding and GC race on the same node, so binding follows a reserve-then-use
contract: reserve() atomically takes the node out of the GC map and records
the pod reference, and fails when a sweep is already destroying the node.
The caller turns that failure into a retryable error and binds again later.
The lock only covers the in-memory maps; sweep() never holds it while
talking to a control plane.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


@dataclass
class _GCEntry:
    quiescing_since: float
    destroying: bool = False


class VNodeTracker:
    def __init__(self, grace_period: float = 120.0, clock: Callable[[], float] = time.monotonic):
        self.grace_period = grace_period
        self._clock = clock
        self._lock = threading.Lock()
        self._node_pods: Dict[str, Dict[str, Set[str]]] = {}
        self._gc: Dict[str, Dict[str, _GCEntry]] = {}

    # ------------------------------------------------------------------ references

    def reserve(self, cluster_name: str, node_name: str, pod_uid: Optional[str] = None) -> bool:
        """
        Claim node_name for a bind. Returns False if a GC sweep is destroying
        the node; otherwise the node leaves the quiescing set and pod_uid is
        recorded as a reference.
        """
        with self._lock:
            gc_map = self._gc.setdefault(cluster_name, {})
            entry = gc_map.get(node_name)
            if entry is not None and entry.destroying:
                return False
            gc_map.pop(node_name, None)
            pods = self._node_pods.setdefault(cluster_name, {}).setdefault(node_name, set())
            if pod_uid:
                pods.add(pod_uid)
            return True

    def release(self, cluster_name: str, node_name: str, pod_uid: str):
        with self._lock:
            pods = self._node_pods.get(cluster_name, {}).get(node_name)
            if pods is not None:
                pods.discard(pod_uid)

    def add_pod(self, cluster_name: str, node_name: str, pod_uid: str):
        """Record a pod observed bound to node_name in the tenant"""
        with self._lock:
            self._node_pods.setdefault(cluster_name, {}).setdefault(node_name, set()).add(pod_uid)
            entry = self._gc.get(cluster_name, {}).get(node_name)
            if entry is not None and not entry.destroying:
                del self._gc[cluster_name][node_name]

    def remove_pod(self, cluster_name: str, pod_uid: str):
        """Drop pod_uid from whichever node references it"""
        with self._lock:
            for pods in self._node_pods.get(cluster_name, {}).values():
                pods.discard(pod_uid)

    def seed_node(self, cluster_name: str, node_name: str):
        """Track a VirtualNode that already exists in the tenant so it is collected once unused"""
        with self._lock:
            self._node_pods.setdefault(cluster_name, {}).setdefault(node_name, set())

    def remove_cluster(self, cluster_name: str):
        with self._lock:
            self._node_pods.pop(cluster_name, None)
            self._gc.pop(cluster_name, None)

    # ------------------------------------------------------------------ inspection

    def pods_on(self, cluster_name: str, node_name: str) -> Set[str]:
        with self._lock:
            return set(self._node_pods.get(cluster_name, {}).get(node_name, ()))

    def nodes(self, cluster_name: str) -> List[str]:
        with self._lock:
            return sorted(self._node_pods.get(cluster_name, {}))

    def is_quiescing(self, cluster_name: str, node_name: str) -> bool:
        with self._lock:
            return node_name in self._gc.get(cluster_name, {})

    def is_destroying(self, cluster_name: str, node_name: str) -> bool:
        with self._lock:
            entry = self._gc.get(cluster_name, {}).get(node_name)
            return entry is not None and entry.destroying

    # ------------------------------------------------------------------ GC

    def sweep(self, delete_fn: Callable[[str, str], None], now: Optional[float] = None) -> List[Tuple[str, str]]:
        """
        One GC pass.

        Nodes without pods become quiescing; nodes quiescing for longer than
        the grace period are marked destroying and handed to delete_fn outside
        the lock. A successful delete forgets the node, a failed one clears
        the destroying flag so a later bind can reserve it again.

        Returns:
            (cluster, node) pairs that were deleted
        """
        now = self._clock() if now is None else now
        victims = []
        with self._lock:
            for cluster_name, nodes in self._node_pods.items():
                gc_map = self._gc.setdefault(cluster_name, {})
                for node_name, pods in nodes.items():
                    entry = gc_map.get(node_name)
                    if pods:
                        if entry is not None and not entry.destroying:
                            del gc_map[node_name]
                        continue
                    if entry is None:
                        gc_map[node_name] = _GCEntry(quiescing_since=now)
                    elif not entry.destroying and now - entry.quiescing_since >= self.grace_period:
                        entry.destroying = True
                        victims.append((cluster_name, node_name))

        removed = []
        for cluster_name, node_name in victims:
            try:
                delete_fn(cluster_name, node_name)
            except Exception as e:
                logger.warning(f"Failed to delete vNode {node_name} in cluster {cluster_name}, abort GC: {e}")
                with self._lock:
                    entry = self._gc.get(cluster_name, {}).get(node_name)
                    if entry is not None:
                        entry.destroying = False
                continue
            with self._lock:
                self._gc.get(cluster_name, {}).pop(node_name, None)
                nodes = self._node_pods.get(cluster_name, {})
                if not nodes.get(node_name):
                    nodes.pop(node_name, None)
            removed.append((cluster_name, node_name))
            logger.info(f"Garbage collected vNode {node_name} in cluster {cluster_name}")
        return removed
