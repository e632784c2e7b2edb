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
Error taxonomy shared by the object stores, the reconcilers and the queue machinery.

Reconcile functions raise; the controller that dequeued the key decides what
happens next:

- NotFoundError: expected transient state, the key is forgotten
- ConflictError: optimistic concurrency lost, requeued with rate limit
- IntegrityError: owner mapping violated, terminal for the key
- TransientError (and anything unexpected): exponential backoff, capped
"""


class SyncerError(Exception):
    """Base class for all syncer errors"""


class NotFoundError(SyncerError):
    """The requested object does not exist"""

    def __init__(self, kind: str, namespace: str = None, name: str = None, message: str = None):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        if message is None:
            target = f"{namespace}/{name}" if namespace else f"{name}"
            message = f"{kind} {target} not found"
        super().__init__(message)


class ClusterNotFoundError(NotFoundError):
    """The tenant cluster is not registered"""

    def __init__(self, cluster_name: str):
        self.cluster_name = cluster_name
        super().__init__("Cluster", name=cluster_name, message=f"cluster {cluster_name} is not registered")


class AlreadyExistsError(SyncerError):
    """Create raced with an existing object of the same name"""


class ConflictError(SyncerError):
    """Stale resourceVersion or failed UID precondition"""


class ResourceExpiredError(SyncerError):
    """Watch resource version is too old, a full re-list is required"""


class IntegrityError(SyncerError):
    """The owner mapping of a super object disagrees with the tenant object"""


class TransientError(SyncerError):
    """Retryable I/O failure talking to a control plane"""


class NodeQuiescingError(TransientError):
    """The bind target VirtualNode is being garbage collected"""

    def __init__(self, cluster_name: str, node_name: str):
        self.cluster_name = cluster_name
        self.node_name = node_name
        super().__init__(f"the bind target vNode {node_name} is being GCed in cluster {cluster_name}, retry")


class CacheSyncTimeoutError(SyncerError):
    """An informer cache did not report synced in time"""


def is_not_found(err: Exception) -> bool:
    return isinstance(err, NotFoundError)


def is_conflict(err: Exception) -> bool:
    return isinstance(err, ConflictError)


def is_already_exists(err: Exception) -> bool:
    return isinstance(err, AlreadyExistsError)
