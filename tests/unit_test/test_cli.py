import argparse
from unittest.mock import patch

import pytest

from vcsyncer.cli import syncer as cli
from vcsyncer.store.memory import InMemoryObjectStore


def test_parse_tenant():
    assert cli.parse_tenant("tenant-a=/etc/tenant-a.kubeconfig") == ("tenant-a", "/etc/tenant-a.kubeconfig")
    assert cli.parse_tenant("tenant-b") == ("tenant-b", None)
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_tenant("=/etc/kubeconfig")


def test_fake_clients_are_in_memory():
    config = cli.SyncerConfiguration()
    assert isinstance(cli.build_super_client(config, fake=True), InMemoryObjectStore)
    assert isinstance(cli.build_tenant_client("tenant-a", None, fake=False), InMemoryObjectStore)


def test_build_config_applies_flags():
    args = argparse.Namespace(
        kubeconfig="/etc/super.kubeconfig", log_level=None, host=None, port=9090, enable=["crd"], disable=None
    )
    with patch.object(cli.SyncerConfiguration, "from_env", return_value=cli.SyncerConfiguration()):
        config = cli.build_config(args)
    assert config.super_kubeconfig == "/etc/super.kubeconfig"
    assert config.api_port == 9090
    assert config.enabled_resources == ["crd"]
    assert config.log_level == "INFO"


def test_plugins_command(capsys):
    with patch.object(cli.SyncerConfiguration, "from_env", return_value=cli.SyncerConfiguration()):
        assert cli.main(["plugins"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert "pod\tenabled" in lines
    assert "crd\tdisabled" in lines


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 1
    assert "usage" in capsys.readouterr().out
