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
from typing import Any, Dict, List

from vcsyncer.conversion.mapping import build_super_object
from vcsyncer.util.objects import name_of

logger = logging.getLogger(__name__)


def service_env_name(service_name: str) -> str:
    return service_name.upper().replace("-", "_")


def build_service_link_env(services: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """
    Docker-links style variables for the services of one namespace, as the
    kubelet would generate them from the tenant's point of view.
    """
    env = []
    for service in sorted(services, key=name_of):
        spec = service.get("spec") or {}
        cluster_ip = spec.get("clusterIP")
        # headless services have no virtual IP to link to
        if not cluster_ip or cluster_ip == "None":
            continue
        ports = spec.get("ports") or []
        if not ports:
            continue
        prefix = service_env_name(name_of(service))
        env.append({"name": f"{prefix}_SERVICE_HOST", "value": cluster_ip})
        env.append({"name": f"{prefix}_SERVICE_PORT", "value": str(ports[0].get("port"))})
        for port in ports:
            if port.get("name"):
                env.append(
                    {"name": f"{prefix}_SERVICE_PORT_{service_env_name(port['name'])}", "value": str(port.get("port"))}
                )
    return env


def _inject_env(containers: List[Dict[str, Any]], env: List[Dict[str, str]]):
    for container in containers:
        existing = container.setdefault("env", [])
        defined = {item.get("name") for item in existing}
        # variables declared by the tenant win
        existing.extend(dict(item) for item in env if item["name"] not in defined)


def mutate_super_pod(
    cluster_name: str,
    tenant_pod: Dict[str, Any],
    super_namespace: str,
    services: List[Dict[str, Any]] = None,
    enable_service_links: bool = True,
) -> Dict[str, Any]:
    """Build the super Pod for a tenant Pod"""
    super_pod = build_super_object(cluster_name, tenant_pod, super_namespace)
    spec = super_pod.setdefault("spec", {})

    # placement is decided by the super scheduler
    spec.pop("nodeName", None)

    if enable_service_links and spec.get("enableServiceLinks", True) and services:
        env = build_service_link_env(services)
        if env:
            _inject_env(spec.get("containers") or [], env)
            _inject_env(spec.get("initContainers") or [], env)
            logger.debug(f"Injected {len(env)} service link variables into pod {super_namespace}/{name_of(super_pod)}")
    return super_pod
