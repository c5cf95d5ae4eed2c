"""CLI entry point for pbsync."""

from __future__ import annotations

import sys

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pbsync import __version__
from pbsync.config import AppConfig
from pbsync.errors import SyncError
from pbsync.utils.logging import set_log_level

console = Console()


def load_config(config_path: str | None, **overrides) -> AppConfig:
    """Load configuration from file or environment, then apply CLI overrides."""
    try:
        if config_path:
            return AppConfig.from_yaml(config_path).with_overrides(**overrides)
        return AppConfig.from_env_and_args(**overrides)
    except (ValidationError, ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading config: {escape(str(e))}[/red]")
        sys.exit(1)


def common_options(func):
    """Options shared by every command that talks to instances."""
    func = click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
                        help="YAML configuration file")(func)
    func = click.option("--env-file", type=click.Path(dir_okay=False),
                        help="Env file with SOURCE_*/TARGET_* credentials (default: .env)")(func)
    func = click.option("--no-input", is_flag=True, default=False,
                        help="Never prompt for credentials")(func)
    func = click.option("--log-level", default="INFO", show_default=True,
                        type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))(func)
    return func


def _credential_overrides(env_file: str | None, no_input: bool) -> dict:
    return {"env_file": env_file, "interactive": False if no_input else None}


@click.group()
@click.version_option(version=__version__, prog_name="pbsync")
def main():
    """Migrate the full state of one PocketBase instance to another.

    A backup is created on the source, downloaded, uploaded to the
    target and restored there.
    """
    pass


@main.command()
@common_options
@click.option("--work-dir", type=click.Path(file_okay=False), help="Directory for the local backup copy")
@click.option("--poll-interval", type=float, help="Seconds between health probes after restore")
@click.option("--ready-timeout", type=float, help="Give up waiting for the target after N seconds")
@click.option("--keep-local", is_flag=True, default=False, help="Keep the local backup after upload")
@click.option("--report", "report_path", type=click.Path(dir_okay=False), help="Write a JSON run report")
@click.option("--dry-run", is_flag=True, default=False, help="List stages without executing them")
def sync(config_path: str | None, env_file: str | None, no_input: bool, log_level: str,
         work_dir: str | None, poll_interval: float | None, ready_timeout: float | None,
         keep_local: bool, report_path: str | None, dry_run: bool):
    """Copy the source instance onto the target instance."""
    set_log_level(log_level)
    config = load_config(
        config_path,
        transfer={"work_dir": work_dir, "keep_local": True if keep_local else None},
        readiness={"interval": poll_interval, "timeout": ready_timeout},
        credentials=_credential_overrides(env_file, no_input),
    )

    from pbsync.pipeline.sync import SyncPipeline
    from pbsync.utils.progress import RichTransferProgress

    pipeline = SyncPipeline(
        config,
        progress_factory=lambda description: RichTransferProgress(description, console=console),
    )

    if dry_run:
        console.print("[yellow]DRY RUN — No changes will be made[/yellow]")
        pipeline.dry_run()
        return

    try:
        result = pipeline.run()
    except KeyboardInterrupt:
        console.print("\n[red]Cancelled[/red]")
        sys.exit(1)

    if report_path:
        result.save(report_path)

    if result.success:
        console.print("\n[bold green]✅ Sync completed successfully[/bold green]")
        console.print(f"  Backup: {result.backup_name}")
        console.print(f"  Duration: {result.duration}")
        for warning in result.warnings:
            console.print(f"  [yellow]⚠ {escape(warning.message)}[/yellow]")
    else:
        console.print(f"\n[bold red]❌ Sync failed at stage '{result.failed_stage}'[/bold red]")
        console.print(f"  Error: {escape(result.error or '')}")
        sys.exit(result.exit_code)


@main.command()
@common_options
def check(config_path: str | None, env_file: str | None, no_input: bool, log_level: str):
    """Authenticate with both instances and verify they are usable."""
    set_log_level(log_level)
    config = load_config(config_path, credentials=_credential_overrides(env_file, no_input))

    from pbsync.pipeline.sync import SyncPipeline

    pipeline = SyncPipeline(config)
    try:
        results = pipeline.preflight()
    except SyncError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[red]Cancelled[/red]")
        sys.exit(1)

    table = Table(title="Instance checks")
    table.add_column("Role", style="cyan")
    table.add_column("URL")
    table.add_column("Check")
    table.add_column("Result")

    labels = {"source": "can backup", "target": "healthy"}
    for role, error in results.items():
        icon = "✅" if error is None else "❌"
        table.add_row(role, pipeline.sessions[role].base_url, labels[role], f"{icon} {error or 'ok'}")
    console.print(table)

    if any(error is not None for error in results.values()):
        sys.exit(1)


if __name__ == "__main__":
    main()
