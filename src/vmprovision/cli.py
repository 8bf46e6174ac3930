#!/usr/bin/env python3
"""
VM provisioning CLI.

    vmprov subnet 172.25.14.32/27
    vmprov create web01 --template ubuntu-24.04 --pool web --network vmbr0 --ip 172.25.14.40/27
    vmprov apply vms.yaml
    vmprov ip web01
    vmprov networks 'vmbr*'
"""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from vmprovision.config import Config
from vmprovision.customization import validate_cidr
from vmprovision.proxmox_api import ProxmoxClient
from vmprovision.subnet import SubnetError, gateway_address, network_address, subnet_mask
from vmprovision.vm_manager import ProvisionRequest, ProvisionResult, VMProvisioner, load_requests

# Initialize CLI app and console
app = typer.Typer(
    name="vmprov",
    help="Provision VMs from templates on a Proxmox cluster",
    add_completion=False
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


def get_client(server: Optional[str], node: Optional[str] = None) -> ProxmoxClient:
    """Connect to the cluster or exit with an error."""
    try:
        return ProxmoxClient.connect(server or Config.PVE_HOST, node=node)
    except Exception as e:
        console.print(f"[red]❌ Failed to connect to Proxmox:[/red] {e}")
        raise typer.Exit(1)


def print_result(result: ProvisionResult) -> None:
    table = Table(title=f"VM {result.name}", show_header=False)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("VMID", str(result.vmid))
    table.add_row("Node", result.node)
    table.add_row("Datastore", result.datastore)
    table.add_row("Tags", ", ".join(result.tags) or "-")
    if result.customization:
        table.add_row("IP Address", result.customization.cidr)
        table.add_row("Subnet Mask", result.customization.subnet_mask)
        table.add_row("Gateway", result.customization.gateway)
        table.add_row("DNS", ", ".join(result.customization.dns_servers) or "-")
    else:
        table.add_row("IP Address", "dhcp")
    table.add_row("Running", "✅" if result.started else "❌")
    console.print(table)


@app.command("subnet")
def subnet(cidr: str = typer.Argument(..., help="Address in a.b.c.d/n form")) -> None:
    """Show subnet mask, network and gateway for a CIDR address."""
    try:
        address, prefix_length = validate_cidr(cidr)
        mask = subnet_mask(prefix_length)
        network = network_address(address, prefix_length)
        gateway = gateway_address(address, prefix_length)
    except SubnetError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Subnet: {cidr}", show_header=False, box=None)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Address", address)
    table.add_row("Prefix Length", f"/{prefix_length}")
    table.add_row("Subnet Mask", mask)
    table.add_row("Network", network)
    table.add_row("Gateway", gateway)
    console.print(table)


@app.command("create")
def create(
    name: str = typer.Argument(..., help="Name of the new VM"),
    template: str = typer.Option(..., "--template", "-t", help="Template to clone"),
    pool: str = typer.Option(..., "--pool", "-p", help="Resource pool"),
    network: str = typer.Option(..., "--network", "-n", help="Network segment (bridge or vnet)"),
    vlan: Optional[int] = typer.Option(None, "--vlan", help="VLAN tag for the adapter"),
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Owner tag value"),
    tag: List[str] = typer.Option([], "--tag", help="Extra tag (repeatable)"),
    ip: Optional[str] = typer.Option(None, "--ip", help="Static address a.b.c.d/n (DHCP when omitted)"),
    dns: List[str] = typer.Option([], "--dns", help="DNS server (repeatable, default DNS_SERVERS)"),
    no_backup: bool = typer.Option(False, "--no-backup", help="Exclude the VM from backup"),
    no_start: bool = typer.Option(False, "--no-start", help="Do not start the VM"),
    node: Optional[str] = typer.Option(None, "--node", help="Target node"),
    server: Optional[str] = typer.Option(None, "--server", "-s", help="Proxmox API host"),
) -> None:
    """Create a VM from a template and configure it."""
    request = ProvisionRequest(
        name=name,
        template=template,
        resource_pool=pool,
        network_segment=network,
        vlan=vlan,
        owner=owner,
        tags=list(tag),
        cidr=ip,
        dns_servers=list(dns),
        exclude_from_backup=no_backup,
        start=not no_start,
        node=node,
    )

    provisioner = VMProvisioner(get_client(server, node))
    try:
        result = provisioner.provision(request)
    except Exception as e:
        console.print(f"[red]❌ Provisioning {name} failed:[/red] {e}")
        raise typer.Exit(1)

    print_result(result)
    if not result.started and request.start:
        raise typer.Exit(1)


@app.command("apply")
def apply(
    config_file: Path = typer.Argument(..., help="YAML file with a 'vms' list"),
    server: Optional[str] = typer.Option(None, "--server", "-s", help="Proxmox API host"),
) -> None:
    """Provision every VM listed in a YAML file."""
    if not config_file.exists():
        console.print(f"❌ Config file not found: {config_file}")
        raise typer.Exit(1)

    try:
        requests = load_requests(config_file)
    except Exception as e:
        console.print(f"[red]❌ Invalid config file:[/red] {e}")
        raise typer.Exit(1)

    provisioner = VMProvisioner(get_client(server))
    try:
        results = provisioner.provision_all(requests)
    except Exception as e:
        console.print(f"[red]❌ Provisioning failed:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title="Provisioning Results")
    table.add_column("VM", style="cyan")
    table.add_column("VMID", style="blue")
    table.add_column("Node")
    table.add_column("Status")

    failed = 0
    for vm_name, outcome in results.items():
        if isinstance(outcome, ProvisionResult):
            status = "[green]running[/green]" if outcome.started else "[yellow]created[/yellow]"
            table.add_row(vm_name, str(outcome.vmid), outcome.node, status)
        else:
            failed += 1
            table.add_row(vm_name, "-", "-", f"[red]{outcome}[/red]")
    console.print(table)

    if failed:
        raise typer.Exit(1)


@app.command("ip")
def ip_addresses(
    vm_name: str = typer.Argument(..., help="VM name"),
    server: Optional[str] = typer.Option(None, "--server", "-s", help="Proxmox API host"),
) -> None:
    """Show the IP addresses reported by a VM's guest agent."""
    client = get_client(server)
    try:
        addresses = client.query_guest_ip_addresses(vm_name)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if not addresses:
        console.print(f"⚠️  {vm_name} reports no IP addresses")
        return
    for address in addresses:
        console.print(address)


@app.command("networks")
def networks(
    pattern: str = typer.Argument("*", help="Shell-style name pattern, e.g. 'vmbr*'"),
    node: Optional[str] = typer.Option(None, "--node", help="Only this node"),
    server: Optional[str] = typer.Option(None, "--server", "-s", help="Proxmox API host"),
) -> None:
    """List network segments VMs can be attached to."""
    client = get_client(server, node)
    try:
        segments = client.list_network_segments(pattern, node=node)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Network Segments ({pattern})")
    table.add_column("Name", style="cyan")
    table.add_column("Node", style="blue")
    table.add_column("Type")
    table.add_column("CIDR")
    table.add_column("Comment")

    for segment in segments:
        table.add_row(segment.name, segment.node or "cluster", segment.type, segment.cidr or "", segment.comments)
    console.print(table)


if __name__ == "__main__":
    app()
