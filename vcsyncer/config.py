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

import os
from typing import Dict, List, Optional

import dotenv
from pydantic import BaseModel, Field, field_validator

from vcsyncer.constants import DWS_CONTROLLER_WORKER_LOW, TENANCY_PREFIX, UWS_CONTROLLER_WORKER_LOW

ENV_PREFIX = "VC_SYNCER_"


class SyncerConfiguration(BaseModel):
    """Deployment-time configuration of the syncer"""

    dws_workers: int = Field(default=DWS_CONTROLLER_WORKER_LOW, ge=1)
    uws_workers: int = Field(default=UWS_CONTROLLER_WORKER_LOW, ge=1)

    # Patrol and vnode GC intervals, seconds
    patrol_period: float = Field(default=60.0, gt=0)
    vnode_gc_period: float = Field(default=60.0, gt=0)
    vnode_gc_grace_period: float = Field(default=120.0, ge=0)

    # Queue backoff
    queue_base_delay: float = Field(default=0.005, gt=0)
    queue_max_delay: float = Field(default=1000.0, gt=0)
    max_retries: int = Field(default=15, ge=0)

    cluster_cache_sync_timeout: float = Field(default=60.0, gt=0)
    watch_timeout_seconds: float = Field(default=10.0, gt=0)

    # Plugins switched on or off on top of the registry defaults
    enabled_resources: List[str] = Field(default_factory=list)
    disabled_resources: List[str] = Field(default_factory=list)

    # Annotation/label prefixes back-populated from super to tenant
    uw_meta_prefixes: List[str] = Field(default_factory=lambda: [TENANCY_PREFIX])
    # Annotation prefixes only the super cluster manages (admission, defaults)
    super_owned_annotation_prefixes: List[str] = Field(default_factory=list)

    enable_service_links: bool = True

    super_kubeconfig: Optional[str] = None
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    @field_validator(
        "enabled_resources", "disabled_resources", "uw_meta_prefixes", "super_owned_annotation_prefixes", mode="before"
    )
    @classmethod
    def _split_csv(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None, load_dotenv: bool = True) -> "SyncerConfiguration":
        """
        Build the configuration from VC_SYNCER_* environment variables

        Args:
            env: environment mapping, defaults to os.environ
            load_dotenv: load a .env file into os.environ first
        """
        if env is None:
            if load_dotenv:
                dotenv.load_dotenv()
            env = os.environ
        values = {}
        for field_name in cls.model_fields:
            env_name = ENV_PREFIX + field_name.upper()
            if env_name in env:
                values[field_name] = env[env_name]
        return cls(**values)
