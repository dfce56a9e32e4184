"""Thin CLI wrapper for onefile_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Build flags (presets, ``--with-X``/``--without-X`` and friends) are passed
through as extra arguments and resolved by the configuration resolver, so
every command that takes flags accepts exactly the same vocabulary.
"""

import json
import logging
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from onefile_imagegen import __version__
from onefile_imagegen.config import Settings, get_settings, print_settings_json

if TYPE_CHECKING:
    from onefile_imagegen.buildconfig.models import BuildConfiguration
    from onefile_imagegen.pipeline.runner import PipelineResult

app = typer.Typer(
    name="onefile-imagegen",
    help="Build a bootable single-file Linux image from versioned components",
    no_args_is_help=True,
)
console = Console()

FLAG_CONTEXT = {"allow_extra_args": True, "ignore_unknown_options": True}

STATE_COLORS = {
    "completed": "green",
    "skipped": "dim",
    "running": "blue",
    "pending": "yellow",
    "failed": "red",
}


def setup_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"onefile-imagegen version {__version__}")
        raise typer.Exit()


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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Build a bootable single-file Linux image from versioned components."""
    setup_logging("DEBUG" if verbose else get_settings().log_level)


def _resolve_config(tokens: list[str], settings: Settings) -> "BuildConfiguration":
    """Resolve flag tokens against the saved defaults, exiting on error."""
    from onefile_imagegen.buildconfig.io import load_defaults
    from onefile_imagegen.buildconfig.resolver import ConfigError, resolve

    try:
        defaults = load_defaults(settings.defaults_path)
        return resolve(tokens, defaults)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(code=1) from None


def _print_config(config: "BuildConfiguration", fingerprint: str) -> None:
    from onefile_imagegen.types import PasswordMode

    enabled = [c.value for c in config.components.enabled()]
    disabled = [c.value for c, on in config.components.as_mapping().items() if not on]

    console.print("[bold]Build Configuration:[/bold]")
    console.print()
    console.print(f"  Build type:        {config.build_type.value}")
    console.print(f"  Fingerprint:       {fingerprint}")
    console.print()
    console.print("[bold]Components:[/bold]")
    console.print(f"  [green]Enabled:[/green]  {', '.join(enabled) or '(none)'}")
    console.print(f"  [dim]Disabled:[/dim] {', '.join(disabled) or '(none)'}")
    if config.extra_packages:
        console.print(f"  Extra packages: {', '.join(config.extra_packages)}")
    console.print()
    console.print("[bold]Kernel:[/bold]")
    console.print(f"  Base config:       {config.kernel_config or '(preset default)'}")
    if config.alpine_kernel_config and config.kernel_config is None:
        console.print("  Base source:       Alpine LTS kernel config")
    console.print(f"  Component overlays: {config.auto_kernel_config}")
    for overlay in config.config_overlays:
        console.print(f"  Custom overlay:    {overlay}")
    console.print()
    console.print("[bold]Output:[/bold]")
    compression = (
        config.compression.tool.value if config.compression.enabled else "disabled"
    )
    console.print(f"  Compression:       {compression}")
    console.print(f"  Root password:     {config.password.mode.value}")
    if config.password.mode == PasswordMode.RANDOM:
        console.print(f"  Password length:   {config.password.length}")
    console.print()
    console.print("[bold]Resources:[/bold]")
    console.print(f"  Requested jobs:    {config.jobs or 'auto'}")
    console.print(f"  Temporary swap:    {'allowed' if config.use_swap else 'off'}")
    console.print(f"  Download cache:    {'on' if config.cache.enabled else 'off'}")
    if config.cache.directory:
        console.print(f"  Cache directory:   {config.cache.directory}")
    console.print(f"  Keep ccache:       {config.cache.keep_ccache}")


def _print_result(result: "PipelineResult") -> None:
    from onefile_imagegen.buildconfig.fingerprint import short_fingerprint

    console.print(
        f"[bold]Pipeline ({result.mode.value}, {result.selector}) "
        f"for {short_fingerprint(result.fingerprint)}:[/bold]"
    )
    for record in result.records:
        state = record.state.value
        color = STATE_COLORS.get(state, "white")
        name = f"{record.stage.ordinal}. {record.stage.name:<10}"
        line = f"  {name} [{color}]{state}[/{color}]"
        if record.attempts > 1:
            line += f" after {record.attempts} attempts"
        console.print(line)

    if result.succeeded:
        console.print("[green]Build succeeded[/green]")
        return

    console.print()
    console.print(f"[red]{result.error}[/red]")
    console.print(f"  Last completed stage: {result.last_completed or '(none)'}")
    console.print(f"  Failing stage:        {result.failed_stage}")
    if result.resume_hint:
        console.print(f"  [yellow]{result.resume_hint}[/yellow]")


@app.command(context_settings=FLAG_CONTEXT)
def build(
    ctx: typer.Context,
    resume: Annotated[
        bool,
        typer.Option("--resume", "-r", help="Skip stages already checkpointed"),
    ] = False,
    clean_start: Annotated[
        bool,
        typer.Option(
            "--clean-start",
            "-c",
            help="Discard this configuration's checkpoints and start over",
        ),
    ] = False,
    clean_end: Annotated[
        bool,
        typer.Option(
            "--clean-end",
            "-C",
            help="After a successful build, remove everything but the output",
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output result as JSON"),
    ] = False,
) -> None:
    """Run the build pipeline.

    Takes an optional stage (all, fetch, install, configure, compile,
    finalize) followed by build flags.
    """
    from onefile_imagegen.artifacts.manifest import MANIFEST_NAME
    from onefile_imagegen.buildconfig.resolver import ConfigError
    from onefile_imagegen.kconfig.document import MergeError
    from onefile_imagegen.pipeline.lock import PipelineInterrupted, RunLockError
    from onefile_imagegen.pipeline.service import (
        clean_build,
        run_build,
        workspace_for,
    )
    from onefile_imagegen.pipeline.stages import split_stage_selector
    from onefile_imagegen.toolchain.fetch import FetchError
    from onefile_imagegen.types import RunMode

    if resume and clean_start:
        console.print("[red]--resume and --clean-start cannot be combined[/red]")
        raise typer.Exit(code=1)

    settings = get_settings()
    try:
        selector, flags = split_stage_selector(ctx.args)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(code=1) from None
    config = _resolve_config(flags, settings)

    mode = RunMode.FRESH
    if resume:
        mode = RunMode.RESUME
    elif clean_start:
        mode = RunMode.CLEAN

    try:
        result = run_build(config, selector, mode, settings)
    except MergeError as e:
        console.print(f"[red]Kernel configuration error: {e}[/red]")
        raise typer.Exit(code=1) from None
    except FetchError as e:
        console.print(f"[red]Could not fetch Alpine kernel config: {e}[/red]")
        raise typer.Exit(code=1) from None
    except RunLockError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    except PipelineInterrupted as e:
        console.print(f"[yellow]{e}; resources released[/yellow]")
        console.print("Re-run with --resume to continue from the interrupted stage.")
        raise typer.Exit(code=130) from None

    cleanup = None
    if clean_end and result.succeeded:
        try:
            cleanup = clean_build(config, settings, keep_output=True)
        except (RunLockError, OSError) as e:
            console.print(f"[red]Post-build cleanup failed: {e}[/red]")
            raise typer.Exit(code=1) from None

    if json_output:
        data = result.to_dict()
        if cleanup is not None:
            data["cleanup"] = {
                "checkpoints_removed": cleanup.checkpoints_removed,
                "removed_paths": cleanup.removed_paths,
            }
        console.print(json.dumps(data, indent=2), soft_wrap=True)
    else:
        _print_result(result)
        if result.succeeded and "finalize" in result.executed:
            workspace = workspace_for(settings)
            console.print(f"  Artifact: {workspace.raw_artifact}")
            console.print(f"  Manifest: {workspace.output_dir / MANIFEST_NAME}")
        if cleanup is not None:
            console.print(
                f"  Cleaned up {len(cleanup.removed_paths)} path(s) and "
                f"{cleanup.checkpoints_removed} checkpoint(s)"
            )

    if not result.succeeded:
        raise typer.Exit(code=1)


@app.command("show-config", context_settings=FLAG_CONTEXT)
def show_config(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the resolved build configuration without running any stage."""
    from onefile_imagegen.buildconfig.fingerprint import compute_fingerprint
    from onefile_imagegen.buildconfig.io import config_to_dict

    settings = get_settings()
    config = _resolve_config(list(ctx.args), settings)
    fingerprint = compute_fingerprint(config)

    if json_output:
        data = config_to_dict(config, keep_password_mode=True)
        data["fingerprint"] = fingerprint
        console.print(json.dumps(data, indent=2), soft_wrap=True)
    else:
        _print_config(config, fingerprint)


@app.command("save-config", context_settings=FLAG_CONTEXT)
def save_config(ctx: typer.Context) -> None:
    """Save the resolved build configuration as the default."""
    from onefile_imagegen.buildconfig.io import save_defaults
    from onefile_imagegen.types import PasswordMode

    settings = get_settings()
    config = _resolve_config(list(ctx.args), settings)

    try:
        path = save_defaults(config, settings.defaults_path)
    except OSError as e:
        console.print(f"[red]Could not save configuration: {e}[/red]")
        raise typer.Exit(code=1) from None

    console.print(f"[green]Saved default configuration to {path}[/green]")
    if config.password.mode == PasswordMode.EXPLICIT:
        console.print(
            "[yellow]Explicit passwords are not saved; "
            "builds using these defaults generate a random password[/yellow]"
        )


@app.command("kernel-config", context_settings=FLAG_CONTEXT)
def kernel_config(
    ctx: typer.Context,
    output: Annotated[
        str | None,
        typer.Option("--output", "-o", help="Write to a file instead of stdout"),
    ] = None,
) -> None:
    """Render the effective kernel configuration."""
    from pathlib import Path

    from onefile_imagegen.kconfig.document import MergeError
    from onefile_imagegen.pipeline.service import effective_kernel_config
    from onefile_imagegen.toolchain.fetch import FetchError

    settings = get_settings()
    config = _resolve_config(list(ctx.args), settings)

    try:
        document = effective_kernel_config(config, settings)
    except MergeError as e:
        console.print(f"[red]Kernel configuration error: {e}[/red]")
        raise typer.Exit(code=1) from None
    except FetchError as e:
        console.print(f"[red]Could not fetch Alpine kernel config: {e}[/red]")
        raise typer.Exit(code=1) from None

    if output:
        path = document.write(Path(output))
        console.print(f"[green]Wrote {len(document)} settings to {path}[/green]")
    else:
        typer.echo(document.render(), nl=False)


@app.command(context_settings=FLAG_CONTEXT)
def resources(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Probe the environment and show the resource plan."""
    from onefile_imagegen.resources.probe import probe_environment
    from onefile_imagegen.resources.scheduler import SchedulerPolicy, plan

    settings = get_settings()
    config = _resolve_config(list(ctx.args), settings)

    snapshot = probe_environment()
    profile = plan(
        snapshot,
        config.jobs,
        allow_swap=config.use_swap,
        policy=SchedulerPolicy.from_settings(settings),
    )

    if json_output:
        output = {
            "environment": {
                "context": snapshot.context.value,
                "available_memory_bytes": snapshot.available_memory_bytes,
                "total_memory_bytes": snapshot.total_memory_bytes,
                "core_count": snapshot.core_count,
                "is_root": snapshot.is_root,
                "can_sudo": snapshot.can_sudo,
            },
            "profile": profile.to_dict(),
        }
        console.print(json.dumps(output, indent=2), soft_wrap=True)
        return

    console.print("[bold]Environment:[/bold]")
    console.print(f"  Context:           {snapshot.context.value}")
    console.print(f"  Available memory:  {snapshot.available_memory_gib:.1f} GiB")
    console.print(f"  Cores:             {snapshot.core_count}")
    console.print(f"  Root:              {snapshot.is_root}")
    console.print(f"  sudo available:    {snapshot.can_sudo}")
    console.print()
    console.print("[bold]Resource plan:[/bold]")
    console.print(f"  Workers:           {profile.worker_count}")
    console.print(f"  Compiler flags:    {profile.compiler_flags}")
    console.print(f"  Low memory:        {profile.low_memory}")
    swap = f"{profile.swap_size_mb} MB" if profile.swap_requested else "no"
    console.print(f"  Temporary swap:    {swap}")


checkpoints_app = typer.Typer(help="Inspect and clear stage checkpoints")
app.add_typer(checkpoints_app, name="checkpoints")


@checkpoints_app.command("list", context_settings=FLAG_CONTEXT)
def checkpoints_list(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List checkpointed stages for the resolved configuration."""
    from onefile_imagegen.buildconfig.fingerprint import compute_fingerprint
    from onefile_imagegen.pipeline.service import open_store
    from onefile_imagegen.pipeline.stages import STAGES

    settings = get_settings()
    config = _resolve_config(list(ctx.args), settings)
    fingerprint = compute_fingerprint(config)
    completed = open_store(settings).completed_stages(fingerprint)

    if json_output:
        output = {
            "fingerprint": fingerprint,
            "stages": [
                {
                    "stage": s.name,
                    "completed_at": completed[s.name].isoformat()
                    if s.name in completed
                    else None,
                }
                for s in STAGES
            ],
        }
        console.print(json.dumps(output, indent=2), soft_wrap=True)
        return

    console.print(f"[bold]Checkpoints for {fingerprint}:[/bold]")
    for stage in STAGES:
        if stage.name in completed:
            console.print(
                f"  [green]{stage.name:<10}[/green] "
                f"completed {completed[stage.name].isoformat()}"
            )
        else:
            console.print(f"  [yellow]{stage.name:<10}[/yellow] pending")


@checkpoints_app.command("clear", context_settings=FLAG_CONTEXT)
def checkpoints_clear(ctx: typer.Context) -> None:
    """Delete the checkpoints of the resolved configuration."""
    from onefile_imagegen.buildconfig.fingerprint import compute_fingerprint
    from onefile_imagegen.pipeline.service import open_store

    settings = get_settings()
    config = _resolve_config(list(ctx.args), settings)
    removed = open_store(settings).invalidate(compute_fingerprint(config))
    console.print(f"[green]Removed {removed} checkpoint(s)[/green]")


@app.command(context_settings=FLAG_CONTEXT)
def clean(ctx: typer.Context) -> None:
    """Remove the working directory and the configuration's checkpoints."""
    from onefile_imagegen.pipeline.lock import RunLockError
    from onefile_imagegen.pipeline.service import clean_build

    settings = get_settings()
    config = _resolve_config(list(ctx.args), settings)

    try:
        result = clean_build(config, settings)
    except RunLockError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    for path in result.removed_paths:
        console.print(f"  Removed {path}")
    console.print(
        f"[green]Clean complete; {result.checkpoints_removed} "
        "checkpoint(s) removed[/green]"
    )


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective application settings."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
        return

    console.print("[bold]Effective Settings:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  State directory:     {settings.state_dir}")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Kernel configs:      {settings.kernel_config_dir}")
    console.print(f"  Checkpoint DB:       {settings.db_url}")
    console.print(f"  Saved defaults:      {settings.defaults_path}")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print()
    console.print("[bold]Components:[/bold]")
    console.print(f"  Alpine:              {settings.alpine_version}")
    console.print(f"  Kernel:              {settings.kernel_version}")
    console.print(f"  ZFS:                 {settings.zfs_version}")
    console.print()
    console.print("[bold]Resources:[/bold]")
    console.print(f"  Memory per worker:   {settings.per_worker_memory_gib} GiB")
    console.print(f"  Low-memory below:    {settings.low_memory_threshold_gib} GiB")
    console.print(f"  Swap size:           {settings.swap_size_mb} MB")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Stage timeout:       {settings.stage_timeout}")


if __name__ == "__main__":
    app()
