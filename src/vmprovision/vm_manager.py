#!/usr/bin/env python3
"""
src/vmprovision/vm_manager.py

Provision VMs from templates on Proxmox: pool, datastore, tags, static
networking, backup exclusion and network adapter, then start.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from proxmoxer.core import ResourceException

from vmprovision.config import Config
from vmprovision.customization import NetworkCustomization
from vmprovision.proxmox_api import ProvisioningError, ProxmoxClient, normalize_tag

logger = logging.getLogger(__name__)


def _as_list(value: Any, key: str) -> List[str]:
    """Accept a YAML list or a comma-separated scalar such as 'web,linux'."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return [item.strip() for item in str(value).split(",") if item.strip()]
    raise ValueError(f"'{key}' must be a list or a comma-separated string, got {type(value).__name__}")


@dataclass
class ProvisionRequest:
    """Everything needed to create one VM."""

    name: str
    template: str
    resource_pool: str
    network_segment: str
    vlan: Optional[int] = None
    owner: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    cidr: Optional[str] = None
    dns_servers: List[str] = field(default_factory=list)
    exclude_from_backup: bool = False
    start: bool = True
    node: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisionRequest":
        """
        Build a request from a YAML mapping.

        Args:
            data: Mapping with at least name, template, pool and network

        Raises:
            ValueError: If a required key is missing
        """
        missing = [key for key in ("name", "template", "pool", "network") if not data.get(key)]
        if missing:
            raise ValueError(f"VM entry {data.get('name', '?')!r} is missing: {', '.join(missing)}")

        vlan = data.get("vlan")
        return cls(
            name=str(data["name"]),
            template=str(data["template"]),
            resource_pool=str(data["pool"]),
            network_segment=str(data["network"]),
            vlan=int(vlan) if vlan is not None else None,
            owner=data.get("owner"),
            tags=_as_list(data.get("tags"), "tags"),
            cidr=data.get("ip"),
            dns_servers=_as_list(data.get("dns"), "dns"),
            exclude_from_backup=bool(data.get("no_backup", False)),
            start=bool(data.get("start", True)),
            node=data.get("node"),
        )


@dataclass
class ProvisionResult:
    name: str
    vmid: int
    node: str
    datastore: str
    tags: List[str] = field(default_factory=list)
    customization: Optional[NetworkCustomization] = None
    started: bool = False


def load_requests(path: Union[str, Path]) -> List[ProvisionRequest]:
    """Read a YAML file with a top-level ``vms:`` list."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    entries = data.get("vms", []) if isinstance(data, dict) else []
    if not isinstance(entries, list):
        raise ValueError(f"{path}: 'vms' must be a list")

    defaults = data.get("defaults", {}) if isinstance(data, dict) else {}
    return [ProvisionRequest.from_dict({**defaults, **entry}) for entry in entries]


class VMProvisioner:
    """Runs the create-from-template workflow against one cluster session."""

    def __init__(self, client: ProxmoxClient):
        self.client = client

    def build_customization(self, request: ProvisionRequest) -> Optional[NetworkCustomization]:
        """Static network settings for the request, None for DHCP."""
        if not request.cidr:
            return None
        dns_servers = request.dns_servers or Config.get_dns_servers()
        return NetworkCustomization.from_cidr(request.cidr, dns_servers, Config.get_search_domain())

    @staticmethod
    def wanted_tags(request: ProvisionRequest) -> List[str]:
        """Normalized owner, extra and no-backup tags, in assignment order."""
        wanted = list(request.tags)
        if request.owner:
            wanted.insert(0, f"{Config.OWNER_TAG_PREFIX}{request.owner}")
        if request.exclude_from_backup:
            wanted.append(Config.NO_BACKUP_TAG)
        return [normalize_tag(tag) for tag in wanted]

    def provision(self, request: ProvisionRequest) -> ProvisionResult:
        """
        Create, configure and start one VM.

        The network configuration is validated before anything is changed
        on the cluster, so a bad address never leaves a half-built VM.

        Raises:
            SubnetError: If the requested address is invalid
            ValueError: If the VLAN id is out of range or a tag is unusable
            ProvisioningError: If a lookup or cluster task fails
        """
        customization = self.build_customization(request)
        if request.vlan is not None and not 1 <= request.vlan <= 4094:
            raise ValueError(f"VLAN {request.vlan} is outside 1-4094")
        wanted = self.wanted_tags(request)

        if self.client.find_vm(request.name) is not None:
            raise ProvisioningError(f"VM {request.name!r} already exists")

        template = self.client.find_template(request.template)
        pool = self.client.resolve_resource_pool(request.resource_pool)
        node = request.node or self.client.node or template.node
        datastore = self.client.datastore_with_most_free_space(node)

        vm = self.client.create_vm(request.name, template, pool, datastore, customization)

        tags: List[str] = []
        for tag in wanted:
            tags = self.client.assign_tag(vm, tag)

        if request.exclude_from_backup:
            self.client.exclude_from_backup(vm)

        self.client.set_network_adapter(vm, request.network_segment, vlan=request.vlan)

        started = False
        if request.start:
            self.client.start_vm(vm)
            started = self.client.wait_for_status(vm, "running")
            if started:
                logger.info(f"VM {vm.name!r} (vmid={vm.vmid}) is running")
            else:
                logger.error(f"VM {vm.name!r} did not start in time")

        return ProvisionResult(
            name=vm.name,
            vmid=vm.vmid,
            node=vm.node,
            datastore=datastore.name,
            tags=tags,
            customization=customization,
            started=started,
        )

    def provision_all(self, requests: List[ProvisionRequest]) -> Dict[str, Union[ProvisionResult, str]]:
        """Provision each request in turn; failures are recorded, not raised."""
        results: Dict[str, Union[ProvisionResult, str]] = {}
        for request in requests:
            try:
                results[request.name] = self.provision(request)
            except (ProvisioningError, ResourceException, ValueError) as e:
                logger.error(f"Failed to provision {request.name!r}: {e}")
                results[request.name] = str(e)
        return results
