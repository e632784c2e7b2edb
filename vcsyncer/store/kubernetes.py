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

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import urllib3
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import dynamic
from kubernetes.client.exceptions import ApiException
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from vcsyncer.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ResourceExpiredError,
    TransientError,
)
from vcsyncer.store import kinds
from vcsyncer.store.base import ObjectStoreClient, WatchEvent

logger = logging.getLogger(__name__)

_retry_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TransientError),
    reraise=True,
)


def _status_reason(err: ApiException) -> str:
    try:
        return json.loads(err.body or "{}").get("reason", "")
    except (TypeError, ValueError):
        return ""


def translate_api_exception(err: ApiException, kind: str, namespace: Optional[str], name: Optional[str]) -> Exception:
    """Map an ApiException onto the syncer error taxonomy"""
    status = err.status or 0
    if status == 404:
        return NotFoundError(kind, namespace, name)
    if status == 409:
        if _status_reason(err) == "AlreadyExists":
            return AlreadyExistsError(f"{kind} {namespace or ''}/{name} already exists")
        return ConflictError(f"{kind} {namespace or ''}/{name}: {err.reason}")
    if status == 410:
        return ResourceExpiredError(f"{kind}: {err.reason}")
    if status == 429 or status >= 500 or status == 0:
        return TransientError(f"{kind} {namespace or ''}/{name}: {status} {err.reason}")
    return err


@contextmanager
def _api_call(kind: str, namespace: Optional[str] = None, name: Optional[str] = None):
    try:
        yield
    except ApiException as e:
        translated = translate_api_exception(e, kind, namespace, name)
        if translated is e:
            raise
        raise translated from e
    except urllib3.exceptions.HTTPError as e:
        raise TransientError(f"{kind} {namespace or ''}/{name}: {e}") from e


class KubernetesObjectStore(ObjectStoreClient):
    """Object store backed by a real apiserver through the kubernetes client"""

    def __init__(self, api_client: k8s_client.ApiClient, name: str = "kubernetes"):
        self.name = name
        self._api_client = api_client
        self._dynamic = None
        self._resources: Dict[str, Any] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_kubeconfig(cls, kubeconfig: Dict[str, Any], name: str = "kubernetes") -> "KubernetesObjectStore":
        return cls(k8s_config.new_client_from_config_dict(kubeconfig), name=name)

    @classmethod
    def from_kubeconfig_file(cls, path: str, name: str = "kubernetes") -> "KubernetesObjectStore":
        return cls(k8s_config.new_client_from_config(config_file=path), name=name)

    @classmethod
    def in_cluster(cls, name: str = "super") -> "KubernetesObjectStore":
        k8s_config.load_incluster_config()
        return cls(k8s_client.ApiClient(), name=name)

    def _resource(self, kind: str):
        with self._lock:
            if kind not in self._resources:
                info = kinds.kind_info(kind)
                with _api_call(kind):
                    if self._dynamic is None:
                        self._dynamic = dynamic.DynamicClient(self._api_client)
                    self._resources[kind] = self._dynamic.resources.get(api_version=info.api_version, kind=kind)
                logger.debug(f"Discovered {info.api_version} {kind} on {self.name}")
            return self._resources[kind]

    @staticmethod
    def _namespace(kind: str, namespace: Optional[str]) -> Optional[str]:
        return namespace if kinds.kind_info(kind).namespaced else None

    @_retry_transient
    def get(self, kind: str, namespace: Optional[str], name: str) -> Dict[str, Any]:
        namespace = self._namespace(kind, namespace)
        with _api_call(kind, namespace, name):
            return self._resource(kind).get(name=name, namespace=namespace).to_dict()

    @_retry_transient
    def list(self, kind: str, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> Dict[str, Any]:
        namespace = self._namespace(kind, namespace)
        with _api_call(kind, namespace):
            result = self._resource(kind).get(namespace=namespace, label_selector=label_selector).to_dict()
        return {
            "items": result.get("items") or [],
            "metadata": {"resourceVersion": (result.get("metadata") or {}).get("resourceVersion", "")},
        }

    def watch(
        self,
        kind: str,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Iterator[WatchEvent]:
        namespace = self._namespace(kind, namespace)
        resource = self._resource(kind)
        with _api_call(kind, namespace):
            for event in resource.watch(
                namespace=namespace,
                resource_version=resource_version,
                timeout=int(timeout_seconds) if timeout_seconds else None,
            ):
                raw = event.get("raw_object") or {}
                if event.get("type") == "ERROR":
                    if raw.get("code") == 410:
                        raise ResourceExpiredError(f"{kind}: {raw.get('message')}")
                    raise TransientError(f"{kind} watch error: {raw.get('message')}")
                yield WatchEvent(event["type"], raw)

    @_retry_transient
    def create(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = obj.get("metadata", {})
        namespace = self._namespace(kind, metadata.get("namespace"))
        with _api_call(kind, namespace, metadata.get("name")):
            return self._resource(kind).create(body=obj, namespace=namespace).to_dict()

    @_retry_transient
    def update(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = obj.get("metadata", {})
        namespace = self._namespace(kind, metadata.get("namespace"))
        with _api_call(kind, namespace, metadata.get("name")):
            return self._resource(kind).replace(body=obj, namespace=namespace).to_dict()

    @_retry_transient
    def update_status(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = obj.get("metadata", {})
        namespace = self._namespace(kind, metadata.get("namespace"))
        with _api_call(kind, namespace, metadata.get("name")):
            status = self._resource(kind).subresources["status"]
            return status.replace(body=obj, name=metadata.get("name"), namespace=namespace).to_dict()

    @_retry_transient
    def delete(
        self,
        kind: str,
        namespace: Optional[str],
        name: str,
        grace_period_seconds: Optional[int] = None,
        uid: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> None:
        namespace = self._namespace(kind, namespace)
        body: Dict[str, Any] = {"apiVersion": "v1", "kind": "DeleteOptions", "propagationPolicy": "Background"}
        if grace_period_seconds is not None:
            body["gracePeriodSeconds"] = grace_period_seconds
        preconditions = {}
        if uid:
            preconditions["uid"] = uid
        if resource_version:
            preconditions["resourceVersion"] = resource_version
        if preconditions:
            body["preconditions"] = preconditions
        with _api_call(kind, namespace, name):
            self._resource(kind).delete(name=name, namespace=namespace, body=body)

    @_retry_transient
    def bind_pod(self, namespace: str, name: str, node_name: str, uid: Optional[str] = None) -> None:
        binding = k8s_client.V1Binding(
            metadata=k8s_client.V1ObjectMeta(name=name, namespace=namespace, uid=uid),
            target=k8s_client.V1ObjectReference(api_version="v1", kind=kinds.NODE, name=node_name),
        )
        with _api_call(kinds.POD, namespace, name):
            # The generated client cannot deserialize the binding response
            k8s_client.CoreV1Api(self._api_client).create_namespaced_pod_binding(
                name=name, namespace=namespace, body=binding, _preload_content=False
            )

    def close(self) -> None:
        self._api_client.close()
