"""Thin CLI wrapper for imx_bootstack.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from imx_bootstack import __version__
from imx_bootstack.config import Settings, load_settings, print_settings_json
from imx_bootstack.errors import (
    EXIT_FAILURE,
    BootstackError,
    ConfigurationError,
    OperationCancelled,
)

app = typer.Typer(
    name="imx-bootstack",
    help="i.MX boot stack builder - kernel, U-Boot, ATF, boot image and SD flashing",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"imx-bootstack version {__version__}")
        raise typer.Exit()


def help_callback(ctx: typer.Context, value: bool) -> None:
    """Print usage and exit with a failure status."""
    if value:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=EXIT_FAILURE)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """i.MX boot stack builder - kernel, U-Boot, ATF, boot image and SD flashing."""


def _confirm(prompt: str) -> bool:
    return typer.confirm(prompt, default=False)


def _fail(message: str, code: int = EXIT_FAILURE) -> typer.Exit:
    console.print(f"[red]Error: {escape(message)}[/red]")
    return typer.Exit(code=code)


def _load(env_file: Path | None, **overrides: object) -> Settings:
    """Load settings, converting validation failures into a clean exit."""
    try:
        return load_settings(env_file, **overrides)
    except ValidationError as e:
        console.print("[red]Invalid configuration:[/red]")
        console.print(escape(str(e)))
        raise typer.Exit(code=EXIT_FAILURE) from None
    except ConfigurationError as e:
        raise _fail(e.message) from None


@app.command(add_help_option=False)
def run(
    workdir: Annotated[
        Path | None,
        typer.Option("--workdir", "-w", help="Root directory for trees and outputs"),
    ] = None,
    build_target: Annotated[
        str,
        typer.Option(
            "--build-target",
            "-t",
            help="kernel, dts, uboot, atf, image, build, all, flash or clean:<sub>",
        ),
    ] = "all",
    branch: Annotated[
        str | None,
        typer.Option("--branch", "-b", help="Kernel branch to build"),
    ] = None,
    custom_dts: Annotated[
        str | None,
        typer.Option(
            "--custom-dts", "-d", help="'all' or comma-separated device tree names"
        ),
    ] = None,
    clean: Annotated[
        bool,
        typer.Option("--clean", "-c", help="Run 'make mrproper' before the kernel"),
    ] = False,
    flash_device: Annotated[
        str | None,
        typer.Option("--flash-device", "-f", help="Block device to flash"),
    ] = None,
    device: Annotated[
        str | None,
        typer.Option("--device", help="Alias of --flash-device"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show destructive commands, run none"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Verbose build tool output"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompts"),
    ] = False,
    resume: Annotated[
        bool,
        typer.Option("--resume", help="Skip steps unchanged since their last success"),
    ] = False,
    env_file: Annotated[
        Path | None,
        typer.Option("--env-file", help="Environment file with IMX_BOOT_* settings"),
    ] = None,
    rootfs_tarball: Annotated[
        Path | None,
        typer.Option("--rootfs-tarball", "-r", help="Root filesystem tarball"),
    ] = None,
    help_: Annotated[
        bool,
        typer.Option(
            "--help",
            "-h",
            help="Show this message and exit",
            callback=help_callback,
            is_eager=True,
            expose_value=False,
        ),
    ] = False,
) -> None:
    """Build and/or flash the boot stack.

    The working directory is required, either with --workdir or through
    IMX_BOOT_WORKDIR. Flashing is destructive and asks for confirmation
    unless --yes or --dry-run is given.
    """
    from imx_bootstack.db import open_history
    from imx_bootstack.logs import configure_logging
    from imx_bootstack.pipeline import parse_target, run_pipeline, validate_request

    settings = _load(
        env_file,
        workdir=workdir,
        kernel_branch=branch,
        custom_dts=custom_dts,
        clean_kernel=clean or None,
        flash_device=flash_device or device,
        dry_run=dry_run or None,
        verbose=verbose or None,
        assume_yes=yes or None,
    )

    try:
        request = parse_target(build_target)
        if rootfs_tarball is not None:
            raise ConfigurationError(
                "Root filesystem tarballs are not supported (-r/--rootfs-tarball)",
                error_code="NOT_IMPLEMENTED",
            )
        validate_request(settings, request)

        settings.root.mkdir(parents=True, exist_ok=True)
        configure_logging(
            settings.effective_log_file,
            "DEBUG" if settings.verbose else settings.log_level,
        )
        session_factory = open_history(settings.effective_db_url)

        if settings.dry_run:
            console.print(
                "[blue]Dry-run mode: destructive commands are shown only[/blue]"
            )

        result = run_pipeline(
            settings,
            request,
            confirm=_confirm,
            resume=resume,
            session_factory=session_factory,
        )
    except OperationCancelled as e:
        console.print(f"[yellow]{escape(e.message)}[/yellow]")
        raise typer.Exit(code=e.exit_code) from None
    except BootstackError as e:
        raise _fail(e.message, e.exit_code) from None

    console.print(f"[green]✓ Target {result.target} finished[/green]")
    if result.executed:
        console.print(f"  Done: {', '.join(result.executed)}")
    if result.skipped:
        console.print(f"  Skipped (unchanged): {', '.join(result.skipped)}")
    console.print(f"  Log: {settings.effective_log_file}")


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
    workdir: Annotated[
        Path | None,
        typer.Option("--workdir", "-w", help="Working directory"),
    ] = None,
    env_file: Annotated[
        Path | None,
        typer.Option("--env-file", help="Environment file with IMX_BOOT_* settings"),
    ] = None,
) -> None:
    """Show effective configuration."""
    settings = _load(env_file, workdir=workdir)
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Sources:[/bold]")
    console.print(f"  Kernel:       {settings.kernel_repo} ({settings.kernel_branch})")
    console.print(f"  U-Boot:       {settings.uboot_repo} ({settings.uboot_branch})")
    console.print(f"  ATF:          {settings.atf_repo} ({settings.atf_branch})")
    console.print(
        f"  imx-mkimage:  {settings.mkimage_repo} ({settings.mkimage_branch})"
    )
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  ARCH:          {settings.arch}")
    console.print(f"  CROSS_COMPILE: {settings.cross_compile}")
    console.print(f"  Jobs:          {settings.jobs}")
    console.print(f"  Device trees:  {settings.dts_selection}")
    console.print(f"  SoC:           {settings.soc_target}")
    console.print(f"  Boot image:    {settings.output_image}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    if settings.workdir is None:
        console.print("  Working directory: (not set)")
    else:
        console.print(f"  Working directory: {settings.root}")
        console.print(f"  Kernel output:     {settings.kernel_output_dir}")
        console.print(f"  Boot tools:        {settings.tools_dir}")
        console.print(f"  Log file:          {settings.effective_log_file}")
        console.print(f"  History database:  {settings.effective_db_url}")
    console.print()
    console.print("[bold]Flashing:[/bold]")
    console.print(f"  Device:        {settings.flash_device or '(none)'}")
    console.print(f"  BOOT label:    {settings.boot_label_pattern}")
    console.print(f"  Rootfs label:  {settings.rootfs_label}")


@app.command()
def history(
    workdir: Annotated[
        Path | None,
        typer.Option("--workdir", "-w", help="Working directory"),
    ] = None,
    env_file: Annotated[
        Path | None,
        typer.Option("--env-file", help="Environment file with IMX_BOOT_* settings"),
    ] = None,
    run_id: Annotated[
        str | None,
        typer.Option("--run-id", help="Filter by run"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option("--status", "-s", help="Filter steps by status"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 50,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded pipeline steps and flash operations."""
    from imx_bootstack.builds.history import get_stage_records
    from imx_bootstack.db import open_history
    from imx_bootstack.flash.service import get_flash_records
    from imx_bootstack.types import StepStatus

    settings = _load(env_file, workdir=workdir)

    status_filter: StepStatus | None = None
    if status:
        try:
            status_filter = StepStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print(
                "Valid values: " + ", ".join(s.value for s in StepStatus)
            )
            raise typer.Exit(code=EXIT_FAILURE) from None

    try:
        root = settings.root
        factory = open_history(settings.effective_db_url)
    except BootstackError as e:
        raise _fail(e.message) from None

    with factory() as session:
        stages = get_stage_records(
            session,
            workdir=str(root),
            run_id=run_id,
            status=status_filter,
            limit=limit,
        )
        flashes = get_flash_records(session, run_id=run_id, limit=limit)

    if json_output:
        output = {
            "stages": [
                {
                    "id": r.id,
                    "run_id": r.run_id,
                    "target": r.target,
                    "step": r.step,
                    "status": r.status,
                    "fingerprint": r.fingerprint,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                    "error_code": r.error_code,
                    "error_message": r.error_message,
                }
                for r in stages
            ],
            "flashes": [
                {
                    "id": r.id,
                    "run_id": r.run_id,
                    "kind": r.kind,
                    "device_path": r.device_path,
                    "device_type": r.device_type,
                    "dry_run": r.dry_run,
                    "status": r.status,
                    "error_type": r.error_type,
                    "error_message": r.error_message,
                }
                for r in flashes
            ],
        }
        console.print(json.dumps(output, indent=2), soft_wrap=True)
        return

    if not stages and not flashes:
        console.print("[yellow]No history records found[/yellow]")
        return

    status_colors = {
        "succeeded": "green",
        "failed": "red",
        "running": "blue",
        "cancelled": "yellow",
        "skipped": "cyan",
        "dry-run": "cyan",
    }
    console.print(f"[bold]Found {len(stages)} step record(s):[/bold]")
    for r in stages:
        color = status_colors.get(r.status, "white")
        started = r.started_at.isoformat() if r.started_at else "N/A"
        console.print(
            f"  [{color}]{r.step}[/{color}] {r.status} "
            f"(target {r.target}, run {r.run_id[:8]}, started {started})"
        )
        if r.error_message:
            console.print(f"    Error: {escape(r.error_message)}")

    if flashes:
        console.print()
        console.print(f"[bold]Found {len(flashes)} flash record(s):[/bold]")
        for r in flashes:
            color = status_colors.get(r.status, "white")
            console.print(
                f"  [{color}]Flash #{r.id}[/{color}] {r.kind} -> {r.device_path} "
                f"{r.status}"
            )
            if r.error_message:
                console.print(f"    Error: {escape(r.error_message)}")


if __name__ == "__main__":
    app()
