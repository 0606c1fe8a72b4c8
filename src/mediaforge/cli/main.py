"""
MediaForge CLI Main Entry Point.

Command-line front-end for listing devices, planning layouts and running
install, upgrade and reset batches.
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Any

import click
import humanize
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from mediaforge import __version__
from mediaforge.core.config import MediaForgeConfig, load_config
from mediaforge.core.credentials import CredentialInput
from mediaforge.core.events import Phase, ProgressDetail
from mediaforge.core.exceptions import MediaForgeError, ValidationError
from mediaforge.core.job import JobResult
from mediaforge.core.layout import PlanRejection
from mediaforge.core.models import DeviceSnapshot
from mediaforge.core.monitor import SelectionMode
from mediaforge.core.results import BatchReport, DeviceOperationResult
from mediaforge.core.session import Session

console = Console()


class ConsoleAdapter:
    """Presentation adapter that renders batch events on the console."""

    def __init__(
        self,
        progress: Progress | None = None,
        assume_yes: bool = False,
        quiet: bool = False,
    ) -> None:
        self.progress = progress
        self.assume_yes = assume_yes
        self.quiet = quiet
        self.task: Any = None
        self.device_count = 0

    def on_device_list_changed(self, snapshots: tuple[DeviceSnapshot, ...]) -> None:
        console.print(device_table(list(snapshots), title="Eligible devices"))

    def on_batch_progress(self, device_index: int, phase: Phase, detail: ProgressDetail) -> None:
        if self.progress is None or self.task is None:
            return
        description = f"[{device_index + 1}/{self.device_count}] {phase.value}"
        if detail.message:
            description += f": {detail.message}"
        if detail.bytes_total:
            self.progress.update(
                self.task,
                description=description,
                completed=detail.bytes_done or 0,
                total=detail.bytes_total,
            )
        else:
            self.progress.update(self.task, description=description, completed=0, total=None)

    def on_device_completed(self, result: DeviceOperationResult) -> None:
        if self.quiet:
            return
        if result.succeeded:
            console.print(f"[green]✓ {result.device.device_path}: {result.message}[/green]")
        elif result.cancelled:
            console.print(f"[yellow]- {result.device.device_path}: {result.message}[/yellow]")
        else:
            reason = result.reason.value if result.reason else "failed"
            console.print(f"[red]✗ {result.device.device_path} ({reason}): {result.message}[/red]")

    def on_batch_completed(self, report: BatchReport) -> None:
        if self.quiet:
            return
        summary = report.summary()
        console.print(
            f"Batch finished: {summary['succeeded']} succeeded, {summary['failed']} failed, "
            f"{summary['cancelled']} cancelled"
        )

    def confirm_destructive_operation(self, message: str) -> bool:
        if self.assume_yes:
            return True
        if self.progress is not None:
            self.progress.stop()
        try:
            return click.confirm(message, default=False)
        finally:
            if self.progress is not None:
                self.progress.start()


def get_session(ctx: click.Context) -> Session:
    """Get or create session from context."""
    if "session" not in ctx.obj:
        config = ctx.obj.get("config") or load_config()
        ctx.obj["session"] = Session(config=config)
    return ctx.obj["session"]


def update_config(session: Session, section: str, **changes: Any) -> None:
    """Override fields of one configuration section for this invocation."""
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        return
    current = getattr(session.config, section)
    session.config = session.config.model_copy(
        update={section: current.model_validate({**current.model_dump(), **changes})}
    )


def resolve_devices(session: Session, names: tuple[str, ...]) -> list[DeviceSnapshot]:
    devices = []
    for name in names:
        device = session.get_device(name)
        if device is None:
            console.print(f"[red]Device not found: {name}[/red]")
            sys.exit(1)
        devices.append(device)
    return devices


def device_table(devices: list[DeviceSnapshot], title: str = "Devices") -> Table:
    table = Table(title=title)
    table.add_column("Device", style="cyan")
    table.add_column("Model", style="white")
    table.add_column("Size", style="green")
    table.add_column("Kind", style="yellow")
    table.add_column("Partitions", style="magenta")

    for device in devices:
        roles = ", ".join(
            f"{p.number}:{p.role.name.lower()}" for p in device.partitions
        )
        table.add_row(
            device.device_path,
            device.display_name[:30],
            humanize.naturalsize(device.size_bytes, binary=True),
            device.kind.name,
            roles,
        )
    return table


def print_report(ctx: click.Context, result: JobResult[BatchReport]) -> None:
    report = result.data
    if ctx.obj.get("json_output", False):
        payload: dict[str, Any] = {
            "success": result.success,
            "error": result.error,
            "warnings": result.warnings,
            "report": report.to_dict() if report else None,
        }
        click.echo(json.dumps(payload, indent=2, default=str))
    elif report is not None:
        table = Table(title=f"{report.operation.capitalize()} report")
        table.add_column("Device", style="cyan")
        table.add_column("Result")
        table.add_column("Duration", style="dim")
        table.add_column("Message", style="white")
        for row in report.results:
            outcome = "[green]OK[/green]" if row.succeeded else f"[red]{row.reason.value}[/red]"
            table.add_row(
                row.device.device_path,
                outcome,
                humanize.naturaldelta(row.duration_seconds),
                row.message,
            )
        console.print(table)
        if report.cancelled:
            console.print("[yellow]Batch was cancelled[/yellow]")
        for warning in result.warnings:
            console.print(f"[yellow]⚠ {warning}[/yellow]")
    elif result.error:
        console.print(f"[red]✗ {result.error}[/red]")

    failed = report is None or report.summary()["failed"] > 0
    if failed or not result.success:
        sys.exit(1)


def run_batch(ctx: click.Context, session: Session, operation: str, *args: Any) -> None:
    devices = args[0]
    adapter = ConsoleAdapter(
        assume_yes=ctx.obj.get("assume_yes", False),
        quiet=ctx.obj.get("json_output", False),
    )
    adapter.device_count = len(devices)
    session.adapter = adapter

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
            disable=ctx.obj.get("json_output", False),
        ) as progress:
            adapter.progress = progress
            adapter.task = progress.add_task(f"{operation.capitalize()}...", total=None)
            result = getattr(session, operation)(*args)
    except ValidationError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    print_report(ctx, result)


@click.group()
@click.version_option(version=__version__, prog_name="MediaForge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Confirm destructive operations")
@click.pass_context
def cli(ctx: click.Context, config: Path | None, json_output: bool, assume_yes: bool) -> None:
    """
    MediaForge - Live system installer for removable media.

    Installs the running live system onto storage devices, upgrades
    devices installed earlier and resets their writable partitions.
    """
    ctx.ensure_object(dict)

    if config:
        ctx.obj["config"] = MediaForgeConfig.load(config)
    else:
        ctx.obj["config"] = load_config()

    ctx.obj["json_output"] = json_output
    ctx.obj["assume_yes"] = assume_yes


@cli.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include non-removable devices")
@click.pass_context
def list_devices(ctx: click.Context, show_all: bool) -> None:
    """List storage devices and their partition roles."""
    session = get_session(ctx)

    with console.status("Scanning devices..."):
        devices = session.list_devices()
    if not show_all:
        devices = [d for d in devices if d.removable or d.kind.is_removable_media]

    if ctx.obj.get("json_output", False):
        click.echo(json.dumps([d.to_dict() for d in devices], indent=2, default=str))
        return

    console.print(device_table(devices))


@cli.command("plan")
@click.argument("device")
@click.option("--exchange-mb", type=int, help="Size of the exchange partition in MiB")
@click.option("--source", "source_path", type=click.Path(path_type=Path), help="Source system")
@click.pass_context
def plan(
    ctx: click.Context, device: str, exchange_mb: int | None, source_path: Path | None
) -> None:
    """Show the installation layout for DEVICE."""
    session = get_session(ctx)
    update_config(session, "install", exchange_mb=exchange_mb)
    target = resolve_devices(session, (device,))[0]
    result = session.plan_install(target, session.detect_source(source_path))

    if ctx.obj.get("json_output", False):
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        if isinstance(result, PlanRejection):
            sys.exit(1)
        return

    if isinstance(result, PlanRejection):
        console.print(f"[red]✗ {result.reason.value}: {result.message}[/red]")
        sys.exit(1)

    table = Table(title=f"Layout for {target.device_path} ({result.state.name})")
    table.add_column("#", style="dim")
    table.add_column("Role", style="cyan")
    table.add_column("Size", style="green")
    for partition in result.partitions():
        table.add_row(
            str(partition.number),
            partition.role.name.lower(),
            humanize.naturalsize(partition.size_bytes, binary=True),
        )
    console.print(table)


def prompt_credentials(method: str) -> CredentialInput:
    if method == "personal":
        return CredentialInput.from_strings(
            password=click.prompt("Password", hide_input=True),
            password_repeat=click.prompt("Repeat password", hide_input=True),
        )
    return CredentialInput.from_strings(
        master=click.prompt("Master password", hide_input=True),
        master_repeat=click.prompt("Repeat master password", hide_input=True),
        initial=click.prompt("Initial password", hide_input=True),
        initial_repeat=click.prompt("Repeat initial password", hide_input=True),
    )


@cli.command("install")
@click.argument("devices", nargs=-1, required=True)
@click.option("--exchange-mb", type=int, help="Size of the exchange partition in MiB")
@click.option("--exchange-label", help="Label of the exchange partition")
@click.option(
    "--exchange-fs",
    "exchange_filesystem",
    type=click.Choice(["vfat", "exfat", "ntfs"]),
    help="Exchange file system",
)
@click.option(
    "--data-fs",
    "data_filesystem",
    type=click.Choice(["ext2", "ext3", "ext4"]),
    help="Data file system",
)
@click.option("--auto-number", "auto_number_pattern", help="Label pattern replaced by a counter")
@click.option("--copy-exchange/--no-copy-exchange", default=None)
@click.option("--copy-data/--no-copy-data", default=None)
@click.option(
    "--data-mode",
    "data_partition_mode",
    type=click.Choice(["read_write", "read_only", "not_used"]),
    help="How the live system uses the data partition",
)
@click.option(
    "--unlock",
    "unlock_method",
    type=click.Choice(["none", "personal", "master_initial"]),
    help="Encrypt the data partition",
)
@click.option("--source", "source_path", type=click.Path(path_type=Path), help="Source system")
@click.pass_context
def install(
    ctx: click.Context,
    devices: tuple[str, ...],
    source_path: Path | None,
    **options: Any,
) -> None:
    """Install the live system onto DEVICES."""
    session = get_session(ctx)
    update_config(session, "install", **options)

    method = session.config.install.unlock_method
    if method != "none":
        try:
            session.select_unlock_method(method, prompt_credentials(method))
        except ValidationError as e:
            console.print(f"[red]✗ {e}[/red]")
            sys.exit(1)

    targets = resolve_devices(session, devices)
    run_batch(ctx, session, "install", targets, session.detect_source(source_path))


@cli.command("upgrade")
@click.argument("devices", nargs=-1, required=True)
@click.option(
    "--strategy",
    "repartition_strategy",
    type=click.Choice(["keep", "resize", "remove"]),
    help="What to do with the exchange partition",
)
@click.option("--exchange-mb", "resize_exchange_mb", type=int, help="New exchange size in MiB")
@click.option(
    "--backup-to",
    "backup_destination",
    type=click.Path(path_type=Path),
    help="Back up the data partition into this directory first",
)
@click.option("--remove-backup", is_flag=True, default=None, help="Remove the backup afterwards")
@click.option("--reset-data", "reset_data_partition", is_flag=True, default=None)
@click.option("--keep-system", is_flag=True, help="Do not replace the system partition")
@click.option("--overwrite", "overwrite_list", multiple=True, help="DEST[=SOURCE] to copy")
@click.option("--source", "source_path", type=click.Path(path_type=Path), help="Source system")
@click.pass_context
def upgrade(
    ctx: click.Context,
    devices: tuple[str, ...],
    keep_system: bool,
    overwrite_list: tuple[str, ...],
    source_path: Path | None,
    **options: Any,
) -> None:
    """Upgrade DEVICES to the running system."""
    session = get_session(ctx)
    if options.get("backup_destination") is not None:
        options["automatic_backup"] = True
    update_config(
        session,
        "upgrade",
        upgrade_system_partition=False if keep_system else None,
        overwrite_list=overwrite_list or None,
        **options,
    )
    targets = resolve_devices(session, devices)
    run_batch(ctx, session, "upgrade", targets, session.detect_source(source_path))


@cli.command("reset")
@click.argument("devices", nargs=-1, required=True)
@click.option("--format-exchange", is_flag=True, default=None, help="Reformat exchange")
@click.option(
    "--exchange-fs", "exchange_filesystem", type=click.Choice(["vfat", "exfat", "ntfs"])
)
@click.option("--exchange-label", "new_exchange_label", help="New exchange label")
@click.option("--format-data", is_flag=True, default=None, help="Reformat the data partition")
@click.option("--data-fs", "data_filesystem", type=click.Choice(["ext2", "ext3", "ext4"]))
@click.option("--home/--no-home", "reset_home", default=None, help="Reset the home directory")
@click.option("--system/--no-system", "reset_system", default=None, help="Reset system files")
@click.pass_context
def reset(ctx: click.Context, devices: tuple[str, ...], **options: Any) -> None:
    """Reset the writable partitions of DEVICES."""
    session = get_session(ctx)
    if options.get("new_exchange_label") is not None:
        options["keep_exchange_label"] = False
    update_config(session, "reset", **options)
    targets = resolve_devices(session, devices)
    run_batch(ctx, session, "reset", targets)


@cli.command("monitor")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in SelectionMode]),
    default=SelectionMode.INSTALL.value,
    show_default=True,
    help="Which devices are eligible",
)
@click.pass_context
def monitor(ctx: click.Context, mode: str) -> None:
    """Follow device hot-plug events until interrupted."""
    session = get_session(ctx)
    session.adapter = ConsoleAdapter()
    session.start_monitor(SelectionMode(mode))
    console.print("[dim]Watching devices, press Ctrl+C to stop[/dim]")
    try:
        while session.monitor.is_running:
            time.sleep(0.5)
    finally:
        session.close()


def main() -> None:
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except MediaForgeError as e:
        console.print(f"[red]Error ({e.reason.value}): {e}[/red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
