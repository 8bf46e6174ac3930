"""Shared test fixtures and configuration for vmprovision tests."""

from typing import Any, Dict, List
from unittest import mock

import pytest


@pytest.fixture
def mock_proxmox():
    """Mock Proxmox API client for testing."""
    with mock.patch('vmprovision.proxmox_api.ProxmoxAPI') as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        # Setup common return values
        proxmox.nodes.get.return_value = [
            {"node": "pve", "status": "online"},
            {"node": "still-fawn", "status": "online"},
        ]
        proxmox.cluster.resources.get.return_value = []
        proxmox.cluster.nextid.get.return_value = "120"
        proxmox.pools.get.return_value = [{"poolid": "web"}, {"poolid": "db"}]
        proxmox.nodes.return_value.tasks.return_value.status.get.return_value = {
            "status": "stopped",
            "exitstatus": "OK",
        }
        proxmox.nodes.return_value.qemu.return_value.config.get.return_value = {}

        yield proxmox


@pytest.fixture
def mock_env(monkeypatch):
    """Set up test environment variables and matching Config attributes."""
    env_vars = {
        "API_TOKEN": "provision@pve!automation=secretvalue",
        "PVE_HOST": "pve.example.com",
        "DNS_SERVERS": "172.25.0.53,172.25.1.53",
        "SEARCH_DOMAIN": "lab.example.com",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    # Config reads class attributes at import time
    from vmprovision.config import Config
    monkeypatch.setattr(Config, "API_TOKEN", env_vars["API_TOKEN"])
    monkeypatch.setattr(Config, "PVE_HOST", env_vars["PVE_HOST"])
    monkeypatch.setattr(Config, "PVE_NODE", None)
    monkeypatch.setattr(Config, "VERIFY_SSL", False)
    monkeypatch.setattr(Config, "USE_CLI_FALLBACK", True)
    monkeypatch.setattr(Config, "OWNER_TAG_PREFIX", "owner-")
    monkeypatch.setattr(Config, "NO_BACKUP_TAG", "no-backup")
    monkeypatch.setattr(Config, "NETWORK_MODEL", "virtio")

    return env_vars


@pytest.fixture
def no_sleep():
    """Skip polling delays."""
    with mock.patch('vmprovision.proxmox_api.time.sleep') as sleep:
        yield sleep


@pytest.fixture
def cluster_resources() -> List[Dict[str, Any]]:
    """Sample /cluster/resources?type=vm output."""
    return [
        {"vmid": 9000, "name": "ubuntu-24.04", "node": "pve", "type": "qemu", "template": 1},
        {"vmid": 101, "name": "web01", "node": "still-fawn", "type": "qemu", "template": 0, "status": "running"},
        {"vmid": 200, "name": "dns01", "node": "pve", "type": "lxc", "status": "running"},
    ]


@pytest.fixture
def sample_vm_config() -> Dict[str, Any]:
    """Sample VM configuration for testing."""
    return {
        "name": "web02",
        "cores": 2,
        "memory": 4096,
        "net0": "virtio=BC:24:11:AA:BB:CC,bridge=vmbr0,firewall=1",
        "scsi0": "local-zfs:vm-120-disk-0,size=32G",
        "scsi1": "local-zfs:vm-120-disk-1,size=100G,backup=1",
        "ide2": "local-zfs:vm-120-cloudinit,media=cdrom",
        "ide0": "none,media=cdrom",
        "tags": "linux",
        "agent": 1,
    }
