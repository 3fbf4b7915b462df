import logging
import typer
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from rich.console import Console
from rich.table import Table

from abrpub.config.loader import load_config
from abrpub.config.models import AppConfig, EncoderConfig
from abrpub.domain.errors import ConversionError
from abrpub.domain.models import AssetPathPolicy, JobStatus
from abrpub.infrastructure.catalog import SqliteCatalog
from abrpub.infrastructure.event_bus import EventBus
from abrpub.infrastructure.ffmpeg import SegmentEncoder
from abrpub.infrastructure.ffprobe import FFprobeAdapter
from abrpub.infrastructure.hwaccel import CapabilityProber
from abrpub.infrastructure.logging import setup_logging
from abrpub.infrastructure.object_store import S3ObjectStore
from abrpub.infrastructure.webhook import WebhookNotifier
from abrpub.infrastructure.workspace import WorkspaceManager
from abrpub.pipeline.ladder import LadderPlanner
from abrpub.pipeline.orchestrator import Orchestrator
from abrpub.pipeline.publisher import Publisher
from abrpub.ui.dashboard import Dashboard
from abrpub.ui.manager import UIManager
from abrpub.ui.state import UIState

app = typer.Typer(help="abrpub - HLS adaptive bitrate packaging and publishing")
console = Console()

CONFIG_OPTION = typer.Option(Path("conf/abrpub.yaml"), "--config", "-c", help="Path to YAML config")
DEBUG_OPTION = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging")


def _prepare(config_path: Path, debug: bool) -> AppConfig:
    config = load_config(config_path)
    if debug:
        config.general.debug = True
    logger = setup_logging(config.general.log_dir, debug=config.general.debug)
    logger.info(f"abrpub started: config={config_path}, workspace={config.general.workspace_dir}")
    return config


@contextmanager
def _orchestrator(config: AppConfig, bus: EventBus, probe: bool = True) -> Iterator[Orchestrator]:
    """Builds the pipeline around one store client that lives for the whole command."""
    encoder_name = config.encoder.force_encoder or "libx264"
    if probe:
        prober = CapabilityProber(timeout=config.encoder.probe_timeout_seconds,
                                  vaapi_device=config.encoder.vaapi_device)
        report = prober.detect(validate=config.encoder.validate_encoder,
                               force_encoder=config.encoder.force_encoder)
        encoder_name = report.recommended_encoder

    catalog = SqliteCatalog(config.catalog.path)
    try:
        with S3ObjectStore(config.storage) as store:
            policy = AssetPathPolicy(root=config.storage.root_prefix)
            yield Orchestrator(
                config=config,
                event_bus=bus,
                catalog=catalog,
                store=store,
                ffprobe_adapter=FFprobeAdapter(),
                encoder=SegmentEncoder(event_bus=bus, config=config.encoder, encoder=encoder_name),
                publisher=Publisher(store, config.publisher, event_bus=bus, policy=policy),
                notifier=WebhookNotifier(config.webhook.url, timeout=config.webhook.timeout_seconds),
                workspaces=WorkspaceManager(config.general.workspace_dir),
                planner=LadderPlanner(config.ladder),
            )
    finally:
        catalog.close()


def _fatal(e: Exception):
    logging.getLogger("abrpub").exception(f"Fatal error: {e}")
    typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.command()
def convert(
    asset_id: str = typer.Argument(..., help="Catalog id of the asset to convert"),
    config_path: Path = CONFIG_OPTION,
    include_480p: Optional[bool] = typer.Option(None, "--include-480p/--no-480p", help="Add the 480p rendition"),
    force: bool = typer.Option(False, "--force", help="Convert even if the catalog marks the asset ready"),
    encoder: Optional[str] = typer.Option(None, "--encoder", help="Force an encoder (libx264, h264_nvenc, h264_qsv, h264_vaapi)"),
    delete_original: bool = typer.Option(False, "--delete-original", help="Delete the source object after publishing"),
    debug: bool = DEBUG_OPTION,
):
    """Convert one asset to HLS and publish it."""
    try:
        config = _prepare(config_path, debug)
        if encoder:
            config.encoder = EncoderConfig(**{**config.encoder.model_dump(), "force_encoder": encoder})
        if delete_original:
            config.general.delete_original = True
        with _orchestrator(config, EventBus()) as orchestrator:
            job = orchestrator.convert(asset_id, force=force, include_lower_rendition=include_480p)
    except KeyboardInterrupt:
        typer.echo("\nInterrupted by user")
        raise typer.Exit(code=130)
    except (ConversionError, ValueError, OSError) as e:
        _fatal(e)

    if job.status != JobStatus.COMPLETE:
        typer.secho(f"{asset_id} failed: {job.error_message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    suffix = " (already converted)" if job.skipped else ""
    typer.secho(f"{asset_id} published at {job.output_path}{suffix}", fg=typer.colors.GREEN)


@app.command()
def batch(
    asset_ids: Optional[List[str]] = typer.Argument(None, help="Asset ids to convert"),
    config_path: Path = CONFIG_OPTION,
    all_pending: bool = typer.Option(False, "--all-pending", help="Convert every catalog asset without HLS output"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Concurrent conversions"),
    include_480p: Optional[bool] = typer.Option(None, "--include-480p/--no-480p", help="Add the 480p rendition"),
    force: bool = typer.Option(False, "--force", help="Re-convert assets already marked ready"),
    debug: bool = DEBUG_OPTION,
):
    """Convert several assets concurrently with a live dashboard."""
    try:
        config = _prepare(config_path, debug)
        bus = EventBus()
        ui_state = UIState()
        UIManager(bus, ui_state)
        with _orchestrator(config, bus) as orchestrator:
            ids = list(asset_ids or [])
            if all_pending:
                ids.extend(a for a in orchestrator.pending_assets() if a not in ids)
            if not ids:
                typer.echo("Nothing to convert.")
                return
            with Dashboard(ui_state, console=console):
                jobs = orchestrator.run_batch(ids, batch_size=batch_size, force=force,
                                              include_lower_rendition=include_480p)
    except KeyboardInterrupt:
        typer.echo("\nInterrupted by user")
        raise typer.Exit(code=130)
    except (ConversionError, ValueError, OSError) as e:
        _fatal(e)

    failed = [j for j in jobs if j.status == JobStatus.FAILED]
    for job in failed:
        typer.secho(f"{job.asset_id}: {job.error_message}", fg=typer.colors.RED, err=True)
    if failed:
        raise typer.Exit(code=1)


@app.command()
def publish(
    asset_id: str = typer.Argument(..., help="Asset whose encoded workspace should be published"),
    config_path: Path = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Resume publishing from an existing workspace without re-encoding."""
    try:
        config = _prepare(config_path, debug)
        with _orchestrator(config, EventBus(), probe=False) as orchestrator:
            job = orchestrator.resume(asset_id)
    except (ConversionError, ValueError, OSError) as e:
        _fatal(e)

    if job.status != JobStatus.COMPLETE:
        typer.secho(f"{asset_id} publish failed: {job.error_message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.secho(f"{asset_id} published at {job.output_path} ({job.uploaded_objects} objects uploaded)",
                fg=typer.colors.GREEN)


@app.command()
def status(
    asset_id: str = typer.Argument(..., help="Asset to inspect"),
    config_path: Path = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Show what is published for an asset compared with its local workspace."""
    try:
        config = _prepare(config_path, debug)
        with _orchestrator(config, EventBus(), probe=False) as orchestrator:
            remote = orchestrator.status(asset_id)
    except (ConversionError, ValueError, OSError) as e:
        _fatal(e)

    table = Table(title=f"{remote.prefix}  master: {'yes' if remote.master_present else 'no'}")
    table.add_column("Rendition")
    table.add_column("Playlist", justify="center")
    table.add_column("Remote", justify="right")
    table.add_column("Local", justify="right")
    table.add_column("Complete", justify="center")
    for r in remote.renditions:
        table.add_row(
            r.name,
            "✓" if r.playlist_present else "✗",
            str(r.remote_segments),
            "-" if r.local_segments is None else str(r.local_segments),
            "[green]yes[/green]" if r.complete else "[red]no[/red]",
        )
    console.print(table)
    if not remote.complete:
        raise typer.Exit(code=1)


@app.command()
def probe(
    config_path: Path = CONFIG_OPTION,
    no_validate: bool = typer.Option(False, "--no-validate", help="Skip the encoder smoke test"),
    debug: bool = DEBUG_OPTION,
):
    """Detect hardware encoders and show which one would be used."""
    config = _prepare(config_path, debug)
    prober = CapabilityProber(timeout=config.encoder.probe_timeout_seconds, vaapi_device=config.encoder.vaapi_device)
    report = prober.detect(validate=not no_validate, force_encoder=config.encoder.force_encoder)

    table = Table(title="Encoder capabilities")
    table.add_column("Property")
    table.add_column("Value")
    table.add_row("Vendors", ", ".join(sorted(report.vendors)) or "none")
    table.add_row("ffmpeg encoders", ", ".join(report.details.get("ffmpeg_encoders", ())) or "none")
    table.add_row("Supported", ", ".join(sorted(report.supported_encoders)) or "none")
    table.add_row("Validated", ", ".join(sorted(report.validated_encoders)) or "-")
    table.add_row("Selected", f"[bold]{report.recommended_encoder}[/bold]")
    for vendor in ("nvidia", "amd", "intel"):
        for line in report.details.get(vendor, ()):
            table.add_row(vendor, line)
    console.print(table)


if __name__ == "__main__":
    app()
