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
Command line entry of the syncer

Usage:
    python -m vcsyncer.cli.syncer run --kubeconfig super.kubeconfig --tenant tenant-a=tenant-a.kubeconfig
    python -m vcsyncer.cli.syncer run --fake --tenant tenant-a --tenant tenant-b
    python -m vcsyncer.cli.syncer plugins
"""

import argparse
import logging
import sys
from typing import List, Optional, Tuple

import uvicorn

from vcsyncer.app import create_app
from vcsyncer.config import SyncerConfiguration
from vcsyncer.log import configure_logging
from vcsyncer.manager import SyncerManager
from vcsyncer.resources import build_default_registry
from vcsyncer.store.base import ObjectStoreClient
from vcsyncer.store.kubernetes import KubernetesObjectStore
from vcsyncer.store.memory import InMemoryObjectStore

logger = logging.getLogger(__name__)


def parse_tenant(value: str) -> Tuple[str, Optional[str]]:
    """name=kubeconfig, or a bare name for in-memory tenants"""
    name, sep, kubeconfig = value.partition("=")
    if not name:
        raise argparse.ArgumentTypeError(f"invalid tenant {value!r}, expected name=kubeconfig")
    return name, kubeconfig if sep else None


def build_config(args: argparse.Namespace) -> SyncerConfiguration:
    config = SyncerConfiguration.from_env()
    overrides = {}
    if args.kubeconfig:
        overrides["super_kubeconfig"] = args.kubeconfig
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.host:
        overrides["api_host"] = args.host
    if args.port:
        overrides["api_port"] = args.port
    if args.enable:
        overrides["enabled_resources"] = args.enable
    if args.disable:
        overrides["disabled_resources"] = args.disable
    if not overrides:
        return config
    return SyncerConfiguration(**{**config.model_dump(), **overrides})


def build_super_client(config: SyncerConfiguration, fake: bool) -> ObjectStoreClient:
    if fake:
        return InMemoryObjectStore(name="super")
    if config.super_kubeconfig:
        return KubernetesObjectStore.from_kubeconfig_file(config.super_kubeconfig, name="super")
    return KubernetesObjectStore.in_cluster(name="super")


def build_tenant_client(name: str, kubeconfig: Optional[str], fake: bool) -> ObjectStoreClient:
    if fake or kubeconfig is None:
        return InMemoryObjectStore(name=name)
    return KubernetesObjectStore.from_kubeconfig_file(kubeconfig, name=name)


def run(args: argparse.Namespace) -> int:
    config = build_config(args)
    configure_logging(config.log_level)

    manager = SyncerManager(config, build_super_client(config, args.fake), build_default_registry())
    try:
        manager.start(timeout=config.cluster_cache_sync_timeout)
        for name, kubeconfig in args.tenant or []:
            manager.register_cluster(name, build_tenant_client(name, kubeconfig, args.fake))
        uvicorn.run(create_app(manager), host=config.api_host, port=config.api_port, log_level=config.log_level.lower())
    finally:
        manager.stop(timeout=10)
    return 0


def list_plugins(args: argparse.Namespace) -> int:
    config = SyncerConfiguration.from_env()
    registry = build_default_registry()
    for registration in registry.list():
        state = "enabled" if registry.is_enabled(registration, config) else "disabled"
        print(f"{registration.id}\t{state}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Virtual cluster resource syncer")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the syncer and its health API")
    run_parser.add_argument("--kubeconfig", help="Kubeconfig of the super cluster (default: in-cluster config)")
    run_parser.add_argument(
        "--tenant", action="append", type=parse_tenant, help="Tenant cluster as name=kubeconfig, repeatable"
    )
    run_parser.add_argument("--fake", action="store_true", help="Use in-memory control planes")
    run_parser.add_argument("--host", help="Health API listen address")
    run_parser.add_argument("--port", type=int, help="Health API port")
    run_parser.add_argument("--log-level", help="Log level, e.g. INFO or DEBUG")
    run_parser.add_argument("--enable", action="append", help="Enable a resource syncer plugin, repeatable")
    run_parser.add_argument("--disable", action="append", help="Disable a resource syncer plugin, repeatable")

    subparsers.add_parser("plugins", help="List resource syncer plugins")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == "run":
            return run(args)
        elif args.command == "plugins":
            return list_plugins(args)
    except Exception as e:
        logger.error(f"Command failed: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
