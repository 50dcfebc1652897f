"""
Command-line interface for KVM hot-backup
"""
import asyncio
import dataclasses
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich import print as rprint

from kvm_hotbackup.config import settings, log_settings, BackupSettings
from kvm_hotbackup.exceptions import HypervisorError, UsageError
from kvm_hotbackup.logging_config import setup_logging, get_logger
from kvm_hotbackup.models import VMState
from kvm_hotbackup.notifier import ConsoleNotifier, MailNotifier, SummaryFileNotifier
from kvm_hotbackup.orchestrator import (
    BackupOrchestrator, create_adapter, find_orphaned_overlays, validate_destination,
)

app = typer.Typer(help="Live backup of KVM/libvirt and VirtualBox virtual machines")
console = Console()

USAGE_EXIT_CODE = 2


def init_logging(config: BackupSettings):
    """Initialize logging system"""
    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_dir=config.log_dir,
        log_file_max_size=config.log_file_max_size,
        backup_count=log_settings.log_file_backup_count,
    )


def _settings_with(**overrides) -> BackupSettings:
    return dataclasses.replace(settings, **{k: v for k, v in overrides.items() if v is not None})


@app.command()
def backup(
    destination: str = typer.Argument(..., help="Backup root directory"),
    max_days: int = typer.Argument(..., help="Delete backup sets older than this many days (0 keeps all)"),
    report_to: Optional[str] = typer.Argument(None, help="User or address to mail the report to"),
    hypervisor: Optional[str] = typer.Option(None, "--hypervisor", "-H", help="libvirt or virtualbox"),
    uri: Optional[str] = typer.Option(None, "--uri", help="Libvirt connection URI"),
    shrink: Optional[bool] = typer.Option(None, "--shrink/--no-shrink", help="Compact qcow2 copies"),
    parallel: Optional[int] = typer.Option(None, "--parallel", "-j", help="VMs backed up at once"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not echo the run log"),
):
    """Back up every VM of this host into a new backup set"""
    config = _settings_with(
        backup_root=destination,
        keep_backups_max_days=max_days,
        email_log_to=report_to,
        hypervisor=hypervisor,
        libvirt_uri=uri,
        shrink_disk_images=shrink,
        parallel_vms=parallel,
    )
    if quiet:
        config.output_to_stdout = False

    try:
        validate_destination(config.backup_root)
        if config.keep_backups_max_days < 0:
            raise UsageError("max_days must not be negative")
        adapter = create_adapter(config)
    except UsageError as e:
        rprint(f"[red]ERROR: {e}[/red]")
        raise typer.Exit(USAGE_EXIT_CODE)

    init_logging(config)
    logger = get_logger("kvm_hotbackup.cli")

    console_notifier = ConsoleNotifier(console)
    notifiers = [SummaryFileNotifier(), console_notifier]
    if config.email_log_to:
        notifiers.append(MailNotifier(config.email_log_to, config.mail_command))

    orchestrator = BackupOrchestrator(
        config, adapter, notifiers=notifiers,
        echo=console_notifier.echo if config.output_to_stdout else None,
    )

    try:
        with adapter:
            run = asyncio.run(orchestrator.execute_backup())
    except UsageError as e:
        rprint(f"[red]ERROR: {e}[/red]")
        raise typer.Exit(USAGE_EXIT_CODE)
    except HypervisorError as e:
        rprint(f"[red]ERROR: {e}[/red]")
        logger.error("Backup run aborted", error=str(e))
        raise typer.Exit(1)

    logger.info("Backup run finished", run_id=run.run_id, succeeded=run.succeeded,
                total=run.total, skipped=run.skipped)
    if run.has_failures:
        raise typer.Exit(1)


@app.command()
def list_vms(
    hypervisor: Optional[str] = typer.Option(None, "--hypervisor", "-H", help="libvirt or virtualbox"),
    uri: Optional[str] = typer.Option(None, "--uri", help="Libvirt connection URI"),
):
    """List all virtual machines and whether they are skipped"""
    config = _settings_with(hypervisor=hypervisor, libvirt_uri=uri)
    init_logging(config)

    try:
        adapter = create_adapter(config)
        with adapter:
            vms = [adapter.describe(vm) for vm in adapter.list_all_vms()]
    except (UsageError, HypervisorError, LookupError) as e:
        rprint(f"[red]Error listing VMs: {e}[/red]")
        raise typer.Exit(1)

    if not vms:
        rprint("[yellow]No VMs found[/yellow]")
        return

    table = Table(title="All Virtual Machines")
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("Disks", style="blue")
    table.add_column("Backup")

    for vm in vms:
        state_color = "green" if vm.state == VMState.RUNNING else "red"
        table.add_row(
            vm.name,
            f"[{state_color}]{vm.state.value}[/{state_color}]",
            "\n".join(f"{d.target}: {d.source}" for d in vm.disks),
            "[yellow]skip[/yellow]" if adapter.is_skip_marked(vm) else "✓",
        )

    console.print(table)


@app.command()
def recover(
    hypervisor: Optional[str] = typer.Option(None, "--hypervisor", "-H", help="libvirt or virtualbox"),
    uri: Optional[str] = typer.Option(None, "--uri", help="Libvirt connection URI"),
):
    """Report VMs left running on backup overlays by an interrupted run"""
    config = _settings_with(hypervisor=hypervisor, libvirt_uri=uri)
    init_logging(config)

    try:
        adapter = create_adapter(config)
        with adapter:
            orphans = find_orphaned_overlays(adapter.list_all_vms(), config.backup_marker)
    except (UsageError, HypervisorError) as e:
        rprint(f"[red]Error scanning VMs: {e}[/red]")
        raise typer.Exit(1)

    if not orphans:
        rprint("[green]✓ No VM is running on a backup overlay[/green]")
        return

    table = Table(title="Orphaned backup overlays")
    table.add_column("VM", style="cyan")
    table.add_column("Target")
    table.add_column("Overlay", style="red")
    table.add_column("Manual merge command")
    for vm, disk in orphans:
        table.add_row(vm.name, disk.target, disk.source, adapter.manual_commit_command(vm, disk))
    console.print(table)
    raise typer.Exit(1)


@app.command()
def clone(
    vm_name: str = typer.Argument(..., help="VM to clone"),
    clone_name: str = typer.Argument(..., help="Name of the new VM"),
    destination: str = typer.Argument(..., help="Directory receiving the clone's disks"),
    hypervisor: Optional[str] = typer.Option(None, "--hypervisor", "-H", help="libvirt or virtualbox"),
    uri: Optional[str] = typer.Option(None, "--uri", help="Libvirt connection URI"),
):
    """Clone a VM into a destination directory"""
    config = _settings_with(hypervisor=hypervisor, libvirt_uri=uri)
    init_logging(config)

    try:
        validate_destination(destination)
        adapter = create_adapter(config)
        with adapter:
            matches = [vm for vm in adapter.list_all_vms() if vm.name == vm_name]
            if not matches:
                raise UsageError(f"No VM named '{vm_name}'")
            adapter.clone_vm(adapter.describe(matches[0]), clone_name, destination)
    except UsageError as e:
        rprint(f"[red]ERROR: {e}[/red]")
        raise typer.Exit(USAGE_EXIT_CODE)
    except (HypervisorError, LookupError) as e:
        rprint(f"[red]Error cloning VM: {e}[/red]")
        raise typer.Exit(1)

    rprint(f"[green]✓ Cloned {vm_name} as {clone_name}[/green]")


@app.command()
def config():
    """Show current configuration"""
    config_table = Table(title="KVM Hot-Backup Configuration")
    config_table.add_column("Setting", style="cyan")
    config_table.add_column("Value", style="green")

    for field in dataclasses.fields(settings):
        config_table.add_row(field.name, str(getattr(settings, field.name)))
    config_table.add_row("effective_skip_token", settings.effective_skip_token)

    console.print(config_table)


if __name__ == "__main__":
    app()
