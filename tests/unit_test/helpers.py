import time
from typing import Any, Callable, Dict, Optional

from vcsyncer import constants

TENANT = "tenant-a"


def wait_for(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is truthy or the timeout expires"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def make_namespace(name: str) -> Dict[str, Any]:
    return {"metadata": {"name": name}}


def make_pod(
    name: str,
    namespace: str = "default",
    image: str = "nginx:1.25",
    node_name: Optional[str] = None,
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    spec = {"containers": [{"name": "main", "image": image}]}
    if node_name:
        spec["nodeName"] = node_name
    return {"metadata": {"name": name, "namespace": namespace, "labels": dict(labels or {})}, "spec": spec}


def make_node(name: str, zone: str = "zone-a") -> Dict[str, Any]:
    return {
        "metadata": {
            "name": name,
            "labels": {"topology.kubernetes.io/zone": zone, "kubernetes.io/hostname": name, "pool": "gpu"},
        },
        "spec": {"taints": [{"key": "dedicated", "value": "gpu", "effect": "NoSchedule"}]},
        "status": {
            "capacity": {"cpu": "8", "memory": "32Gi"},
            "allocatable": {"cpu": "7", "memory": "30Gi"},
            "addresses": [{"type": "InternalIP", "address": "10.0.0.5"}],
        },
    }


def make_storage_class(name: str, public: bool = True, provisioner: str = "csi.example.com") -> Dict[str, Any]:
    labels = {constants.PUBLIC_STORAGE_CLASS_LABEL: "true"} if public else {}
    return {
        "metadata": {"name": name, "labels": labels},
        "provisioner": provisioner,
        "parameters": {"type": "ssd"},
        "reclaimPolicy": "Delete",
    }


def make_ingress(name: str, namespace: str = "default", host: str = "shop.example.com") -> Dict[str, Any]:
    return {
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "rules": [
                {
                    "host": host,
                    "http": {
                        "paths": [
                            {
                                "path": "/",
                                "pathType": "Prefix",
                                "backend": {"service": {"name": "web", "port": {"number": 80}}},
                            }
                        ]
                    },
                }
            ]
        },
    }


def node_name_of(obj: Optional[Dict[str, Any]]) -> Optional[str]:
    return ((obj or {}).get("spec") or {}).get("nodeName")
