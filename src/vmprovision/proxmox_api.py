"""Session handle over the Proxmox VE API used for VM provisioning."""

import fnmatch
import json
import logging
import os
import re
import shlex
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import paramiko
from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException

from vmprovision.config import Config
from vmprovision.customization import NetworkCustomization, dhcp_params

logger = logging.getLogger(__name__)

DISK_KEY = re.compile(r"^(scsi|virtio|sata|ide)\d+$")
NIC_MODELS = ("virtio", "e1000", "e1000e", "rtl8139", "vmxnet3")
INVALID_TAG_CHARS = re.compile(r"[^a-z0-9_\-+.]")


class ProvisioningError(RuntimeError):
    """A cluster lookup or task did not produce the expected result."""


@dataclass
class VMRef:
    """Identifies a VM (or template) on the cluster."""

    vmid: int
    node: str
    name: str


@dataclass
class Datastore:
    name: str
    node: str
    available: int
    total: int


@dataclass
class NetworkSegment:
    """A bridge or SDN vnet a network adapter can be attached to."""

    name: str
    node: Optional[str]
    type: str
    cidr: Optional[str] = None
    comments: str = ""
    active: bool = True


def normalize_tag(tag: str) -> str:
    """Lowercase ``tag`` and replace characters Proxmox does not allow in tags."""
    cleaned = INVALID_TAG_CHARS.sub("-", tag.strip().lower()).lstrip("-+.")
    if not cleaned:
        raise ValueError(f"Tag {tag!r} is empty after normalization")
    return cleaned


def split_tags(raw: Any) -> List[str]:
    return [tag for tag in re.split(r"[;,\s]+", str(raw or "")) if tag]


class ProxmoxClient:
    """Wrapper around Proxmox API with CLI fallback for SSL failures."""

    TASK_POLL_INTERVAL = 2
    STATUS_POLL_INTERVAL = 5

    def __init__(
        self,
        host: str,
        node: Optional[str] = None,
        verify_ssl: Optional[bool] = None,
        use_cli_fallback: Optional[bool] = None,
    ) -> None:
        self.host = host
        self.node = node or Config.PVE_NODE
        self.cli_mode = False
        self.use_cli_fallback = Config.USE_CLI_FALLBACK if use_cli_fallback is None else use_cli_fallback
        verify_ssl = Config.VERIFY_SSL if verify_ssl is None else verify_ssl

        # Extract API token components
        if Config.API_TOKEN is None:
            raise ValueError("API_TOKEN environment variable is not set")
        user_token, sep, self.api_token = Config.API_TOKEN.partition("=")
        self.user, bang, self.token_name = user_token.partition("!")
        if not sep or not bang or not self.api_token or not self.token_name:
            raise ValueError("API_TOKEN must look like user@realm!tokenname=secret")

        try:
            self.proxmox: Optional[ProxmoxAPI] = ProxmoxAPI(
                host, user=self.user, token_name=self.token_name, token_value=self.api_token, verify_ssl=verify_ssl
            )
        except (ResourceException, Exception) as e:
            error_msg = str(e)
            if ("SSL" in error_msg or "certificate" in error_msg) and self.use_cli_fallback:
                logger.warning(f"API connection failed ({error_msg}), using CLI fallback")
                self.cli_mode = True
                self.proxmox = None
            else:
                raise

    @classmethod
    def connect(cls, server_address: Optional[str] = None, **kwargs: Any) -> "ProxmoxClient":
        """Open a session against ``server_address`` (defaults to PVE_HOST)."""
        client = cls(server_address or Config.PVE_HOST, **kwargs)
        logger.info(f"Connected to {client.host}{' (CLI mode)' if client.cli_mode else ''}")
        return client

    def _exec_ssh_command(self, command: str) -> Any:
        """Execute command via SSH and return parsed JSON."""
        ssh_user = os.getenv("SSH_USER", "root")
        ssh_key = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))

        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(hostname=self.host, username=ssh_user, key_filename=ssh_key)

        stdin, stdout, stderr = ssh.exec_command(command)
        output = stdout.read().decode().strip()
        error = stderr.read().decode().strip()

        ssh.close()

        if error:
            logger.error(f"SSH command error: {error}")
            raise RuntimeError(f"Command failed: {error}")

        return json.loads(output)

    def _pvesh(self, path: str, **params: Any) -> Any:
        options = "".join(f" --{key} {shlex.quote(str(value))}" for key, value in params.items())
        return self._exec_ssh_command(f"pvesh get {path}{options} --output-format json")

    def _api(self, action: str) -> ProxmoxAPI:
        if self.proxmox is None:
            raise ProvisioningError(f"Cannot {action} in CLI mode")
        return self.proxmox

    # === LOOKUPS ===

    def _cluster_vms(self) -> List[Dict[str, Any]]:
        if self.cli_mode:
            return self._pvesh("/cluster/resources", type="vm")  # type: ignore[no-any-return]
        return self.proxmox.cluster.resources.get(type="vm")  # type: ignore[no-any-return, union-attr]

    def _online_nodes(self) -> List[str]:
        if self.node:
            return [self.node]
        if self.cli_mode:
            nodes = self._pvesh("/nodes")
        else:
            nodes = self.proxmox.nodes.get()  # type: ignore[union-attr]
        return sorted(n["node"] for n in nodes if n.get("status", "online") == "online")

    def find_vm(self, name: str, template: bool = False) -> Optional[VMRef]:
        """Return the VM (or template) called ``name``, or None."""
        matches = [
            vm
            for vm in self._cluster_vms()
            if vm.get("type", "qemu") == "qemu" and vm.get("name") == name and bool(vm.get("template")) == template
        ]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(f"{len(matches)} VMs named {name!r}, using vmid {matches[0]['vmid']}")
        vm = matches[0]
        return VMRef(vmid=int(vm["vmid"]), node=vm["node"], name=name)

    def find_template(self, name: str) -> VMRef:
        template = self.find_vm(name, template=True)
        if template is None:
            raise ProvisioningError(f"Template {name!r} not found")
        return template

    def list_datastores(self, node: str) -> List[Datastore]:
        """Active storages on ``node`` that can hold VM disk images."""
        api = self._api("list datastores")
        datastores = []
        for storage in api.nodes(node).storage.get(content="images", enabled=1):
            if not storage.get("active", 1):
                continue
            datastores.append(
                Datastore(
                    name=storage["storage"],
                    node=node,
                    available=int(storage.get("avail", 0)),
                    total=int(storage.get("total", 0)),
                )
            )
        return datastores

    def datastore_with_most_free_space(self, node: str) -> Datastore:
        datastores = self.list_datastores(node)
        if not datastores:
            raise ProvisioningError(f"No active image datastore found on node {node!r}")
        best = max(datastores, key=lambda ds: ds.available)
        logger.info(f"Selected datastore {best.name} on {node} ({best.available // 1024**3} GiB free)")
        return best

    def resolve_resource_pool(self, name: str) -> str:
        api = self._api("resolve resource pools")
        pools = {pool["poolid"] for pool in api.pools.get()}
        if name not in pools:
            raise ProvisioningError(f"Resource pool {name!r} does not exist")
        return name

    def next_vmid(self) -> int:
        return int(self._api("allocate VMIDs").cluster.nextid.get())

    # === TASKS ===

    def wait_for_task(self, node: str, upid: str, timeout: Optional[int] = None) -> None:
        """
        Block until a Proxmox task finishes.

        Raises:
            ProvisioningError: If the task exits with a non-OK status or does
                not finish within ``timeout`` seconds
        """
        api = self._api("wait for tasks")
        timeout = Config.TASK_TIMEOUT if timeout is None else timeout
        deadline = time.time() + timeout
        while time.time() < deadline:
            status = api.nodes(node).tasks(upid).status.get()
            if status.get("status") == "stopped":
                exitstatus = status.get("exitstatus", "unknown")
                if exitstatus != "OK":
                    raise ProvisioningError(f"Task {upid} failed: {exitstatus}")
                return
            time.sleep(self.TASK_POLL_INTERVAL)
        raise ProvisioningError(f"Task {upid} did not finish within {timeout}s")

    def wait_for_status(self, vm: VMRef, expected: str = "running", timeout: Optional[int] = None) -> bool:
        """Poll VM status until it reports ``expected``; False on timeout."""
        api = self._api("poll VM status")
        timeout = Config.VM_START_TIMEOUT if timeout is None else timeout
        deadline = time.time() + timeout
        while time.time() < deadline:
            st = api.nodes(vm.node).qemu(vm.vmid).status.current.get()
            if st.get("status") == expected:
                return True
            time.sleep(self.STATUS_POLL_INTERVAL)
        return False

    # === VM OPERATIONS ===

    def create_vm(
        self,
        name: str,
        template: VMRef,
        resource_pool: str,
        datastore: Datastore,
        customization: Optional[NetworkCustomization] = None,
    ) -> VMRef:
        """
        Full-clone ``template`` into ``resource_pool`` on ``datastore``.

        The guest OS customization is applied through cloud-init: static
        addressing when ``customization`` is given, DHCP otherwise.

        Returns:
            Reference to the new VM
        """
        api = self._api("create VMs")
        vmid = self.next_vmid()
        logger.info(f"Cloning template {template.name} (vmid={template.vmid}) to {name} (vmid={vmid})")

        upid = api.nodes(template.node).qemu(template.vmid).clone.post(
            newid=vmid,
            name=name,
            full=1,
            storage=datastore.name,
            pool=resource_pool,
            target=datastore.node,
        )
        self.wait_for_task(template.node, upid)

        vm = VMRef(vmid=vmid, node=datastore.node, name=name)
        params = customization.to_cloudinit_params() if customization else dhcp_params()
        api.nodes(vm.node).qemu(vm.vmid).config.post(**params)
        return vm

    def assign_tag(self, vm: VMRef, tag: str) -> List[str]:
        """Add ``tag`` to the VM's tags; returns the resulting tag list."""
        api = self._api("assign tags")
        tag = normalize_tag(tag)
        config = api.nodes(vm.node).qemu(vm.vmid).config.get()
        tags = split_tags(config.get("tags"))
        if tag in tags:
            return tags

        tags.append(tag)
        api.nodes(vm.node).qemu(vm.vmid).config.post(tags=";".join(tags))
        logger.info(f"Tagged {vm.name} with {tag}")
        return tags

    def exclude_from_backup(self, vm: VMRef) -> List[str]:
        """Set backup=0 on every disk of the VM; returns the changed disk keys."""
        api = self._api("exclude VMs from backup")
        config = api.nodes(vm.node).qemu(vm.vmid).config.get()

        changed = {}
        for key, value in config.items():
            value = str(value)
            if not DISK_KEY.match(key) or "media=cdrom" in value or "cloudinit" in value:
                continue
            options = [opt for opt in value.split(",") if not opt.startswith("backup=")]
            options.append("backup=0")
            changed[key] = ",".join(options)

        if changed:
            api.nodes(vm.node).qemu(vm.vmid).config.post(**changed)
            logger.info(f"Excluded {vm.name} disks from backup: {', '.join(sorted(changed))}")
        else:
            logger.warning(f"{vm.name} has no disks to exclude from backup")
        return sorted(changed)

    def set_network_adapter(
        self, vm: VMRef, segment: str, vlan: Optional[int] = None, interface: int = 0
    ) -> str:
        """Attach net<interface> to ``segment``, keeping an existing MAC address."""
        if vlan is not None and not 1 <= vlan <= 4094:
            raise ValueError(f"VLAN {vlan} is outside 1-4094")
        api = self._api("configure network adapters")
        key = f"net{interface}"
        existing = str(api.nodes(vm.node).qemu(vm.vmid).config.get().get(key, ""))

        options = [opt for opt in existing.split(",") if opt]
        head = options[0] if options else ""
        # "virtio=BC:24:11:..." or bare "virtio" carries the model (and MAC)
        if head.split("=")[0] in NIC_MODELS:
            options = options[1:]
        else:
            head = Config.NETWORK_MODEL

        value_parts = [head, f"bridge={segment}"]
        if vlan is not None:
            value_parts.append(f"tag={vlan}")
        value_parts.extend(opt for opt in options if opt.split("=")[0] not in ("bridge", "tag"))

        value = ",".join(value_parts)
        api.nodes(vm.node).qemu(vm.vmid).config.post(**{key: value})
        logger.info(f"Set {vm.name} {key} -> {value}")
        return value

    def start_vm(self, vm: VMRef) -> str:
        logger.info(f"Starting VM {vm.name} (vmid={vm.vmid})")
        return self._api("start VMs").nodes(vm.node).qemu(vm.vmid).status.start.post()  # type: ignore[no-any-return]

    # === QUERIES ===

    def query_guest_ip_addresses(self, vm_name: str) -> List[str]:
        """IP addresses reported by the QEMU guest agent, loopback and link-local skipped."""
        vm = self.find_vm(vm_name)
        if vm is None:
            raise ProvisioningError(f"VM {vm_name!r} not found")

        if self.cli_mode:
            data = self._pvesh(f"/nodes/{vm.node}/qemu/{vm.vmid}/agent/network-get-interfaces")
        else:
            data = self.proxmox.nodes(vm.node).qemu(vm.vmid).agent("network-get-interfaces").get()  # type: ignore[union-attr]
        interfaces = data.get("result", []) if isinstance(data, dict) else data

        addresses = []
        for iface in interfaces:
            if iface.get("name") == "lo":
                continue
            for entry in iface.get("ip-addresses", []):
                ip = entry.get("ip-address", "")
                if not ip or ip.startswith("127.") or ip == "::1" or ip.lower().startswith("fe80:"):
                    continue
                if ip.startswith("169.254."):
                    continue
                addresses.append(ip)
        return addresses

    def list_network_segments(self, name_pattern: str = "*", node: Optional[str] = None) -> List[NetworkSegment]:
        """Bridges and SDN vnets whose name matches the shell-style ``name_pattern``."""
        segments = []
        for node_name in [node] if node else self._online_nodes():
            if self.cli_mode:
                interfaces = self._pvesh(f"/nodes/{node_name}/network", type="any_bridge")
            else:
                interfaces = self.proxmox.nodes(node_name).network.get(type="any_bridge")  # type: ignore[union-attr]
            for iface in interfaces:
                segments.append(
                    NetworkSegment(
                        name=iface["iface"],
                        node=node_name,
                        type=iface.get("type", "bridge"),
                        cidr=iface.get("cidr"),
                        comments=(iface.get("comments") or "").strip(),
                        active=bool(iface.get("active", 0)),
                    )
                )

        if not self.cli_mode:
            try:
                vnets = self.proxmox.cluster.sdn.vnets.get()  # type: ignore[union-attr]
            except ResourceException as e:
                logger.debug(f"SDN vnets unavailable: {e}")
                vnets = []
            for vnet in vnets:
                segments.append(
                    NetworkSegment(
                        name=vnet["vnet"],
                        node=None,
                        type="vnet",
                        comments=vnet.get("alias", ""),
                    )
                )

        pattern = name_pattern.lower()
        matched = [seg for seg in segments if fnmatch.fnmatch(seg.name.lower(), pattern)]
        return sorted(matched, key=lambda seg: (seg.name, seg.node or ""))
