"""CLI interface for resumable GeoINT uploads."""

import logging
import sys
import threading
from pathlib import Path

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table

from ..core.api import BACKENDS, GeointUploadAPI
from ..core.config import MB, S3Config, UploaderConfig
from ..core.events import LoggingListener
from ..core.exceptions import GeointUploadError
from ..core.models import Alert, ProgressEvent, ServiceId, UploadOutcome
from ..core.resume_store import ResumeStateStore

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()

OUTCOME_STYLES = {
    UploadOutcome.COMPLETED: "green",
    UploadOutcome.FAILED: "red",
    UploadOutcome.CANCELLED: "yellow",
    UploadOutcome.INVALID: "red",
    UploadOutcome.SKIPPED: "dim",
}


class RichProgressListener(LoggingListener):
    """Drives one progress bar per file plus one for the whole batch."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self.batch_task = progress.add_task("[bold]Total", total=100)
        self.file_tasks = {}
        self._lock = threading.Lock()

    def on_progress(self, event: ProgressEvent) -> None:
        with self._lock:
            task = self.file_tasks.get(event.file_index)
            if task is None:
                task = self.progress.add_task(event.file_name, total=100)
                self.file_tasks[event.file_index] = task
        self.progress.update(task, completed=event.file_percent)
        self.progress.update(self.batch_task, completed=event.batch_percent)

    def on_alert(self, alert: Alert) -> None:
        color = "red" if alert.level == "error" else "yellow"
        where = f" ({alert.file_name})" if alert.file_name else ""
        message = f": {alert.message}" if alert.message else ""
        self.progress.console.print(f"[{color}]{alert.title}{where}{message}[/{color}]")


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    elif size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    elif size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / (1024 * 1024 * 1024):.1f} GB"


def load_config(ctx, **overrides) -> UploaderConfig:
    return UploaderConfig.from_env(
        api_key=ctx.obj["api_key"], state_dir=ctx.obj["state_dir"], **overrides
    )


def load_s3_config(ctx):
    if ctx.obj["backend"] != "s3":
        return None
    return S3Config.from_env(
        bucket=ctx.obj["bucket"], endpoint_url=ctx.obj["endpoint_url"]
    )


@click.group()
@click.option(
    "--api-key",
    envvar="GEOINT_API_KEY",
    help="API key sent as x-api-key (or set GEOINT_API_KEY env var)",
)
@click.option(
    "--backend",
    type=click.Choice(BACKENDS, case_sensitive=False),
    default="http",
    envvar="GEOINT_BACKEND",
    show_default=True,
    help="Upload through the REST gateway or straight to an S3 bucket",
)
@click.option("--bucket", help="S3 bucket for the s3 backend (or GEOINT_S3_BUCKET)")
@click.option("--endpoint-url", help="S3 endpoint URL (or GEOINT_S3_ENDPOINT_URL)")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory of resume state (or GEOINT_UPLOAD_STATE_DIR)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, api_key, backend, bucket, endpoint_url, state_dir, verbose):
    """GeoINT Upload CLI - Resumable uploads of large imagery files."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    ctx.ensure_object(dict)
    ctx.obj.update(
        {
            "api_key": api_key,
            "backend": backend.lower(),
            "bucket": bucket,
            "endpoint_url": endpoint_url,
            "state_dir": state_dir,
        }
    )


@cli.command()
@click.argument(
    "paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False)
)
@click.option(
    "--service",
    type=click.Choice([s.name.lower() for s in ServiceId], case_sensitive=False),
    help="Destination category (default: GEOINT_SERVICE or optical)",
)
@click.option("--name", help="Image name (single file only; default: file name)")
@click.option("--tags", default="", help="Comma-separated tags")
@click.option(
    "--metadata-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON or XML metadata attached to every file",
)
@click.option(
    "--imaging-date",
    type=click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]),
    help="Acquisition date (default: file modification time)",
)
@click.option("--chunk-size", type=int, help="Part size in MB for multipart uploads")
@click.option("--concurrency", type=int, help="Parts transferred in parallel")
@click.pass_context
def upload(
    ctx, paths, service, name, tags, metadata_file, imaging_date, chunk_size, concurrency
):
    """Upload one or more files. Ctrl-C cancels the active transfer."""
    try:
        if name and len(paths) > 1:
            raise click.UsageError("--name can only be used with a single file")

        config = load_config(
            ctx,
            service=service,
            chunk_size=chunk_size * MB if chunk_size else None,
            concurrency=concurrency,
        )
        metadata = metadata_file.read_text(encoding="utf-8") if metadata_file else None

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            listener = RichProgressListener(progress)
            api = GeointUploadAPI(
                config=config,
                listener=listener,
                backend=ctx.obj["backend"],
                s3_config=load_s3_config(ctx),
            )
            outcome = {}

            def run():
                try:
                    outcome["results"] = api.upload_paths(
                        paths,
                        title=name,
                        tags=tags,
                        metadata=metadata,
                        imaging_date=imaging_date,
                    )
                except Exception as e:
                    outcome["error"] = e

            worker = threading.Thread(target=run, name="upload", daemon=True)
            worker.start()
            try:
                while worker.is_alive():
                    worker.join(0.2)
            except KeyboardInterrupt:
                progress.console.print("[yellow]Cancelling...[/yellow]")
                if not api.cancel():
                    progress.console.print(
                        "[yellow]Upload is being finalized and can no longer "
                        "be cancelled[/yellow]"
                    )
                worker.join()

        if "error" in outcome:
            raise outcome["error"]

        results = outcome["results"]
        table = Table(title="Upload results")
        table.add_column("File", style="cyan")
        table.add_column("Outcome")
        table.add_column("Entity", style="dim")
        table.add_column("Error", style="red")
        for result in results:
            style = OUTCOME_STYLES[result.outcome]
            table.add_row(
                result.file_name,
                f"[{style}]{result.outcome.value}[/{style}]",
                result.entity_id or "",
                result.error or "",
            )
        console.print(table)

        if not all(r.ok for r in results):
            sys.exit(1)
        console.print("[green]✓[/green] All uploads completed successfully!")

    except (GeointUploadError, ValueError, OSError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command("resume-list")
@click.pass_context
def resume_list(ctx):
    """List interrupted multipart uploads that can be resumed."""
    try:
        store = ResumeStateStore(load_config(ctx).state_dir)
        records = store.items()
        if not records:
            console.print("[yellow]No resumable uploads found.[/yellow]")
            return

        table = Table(title="Resumable uploads")
        table.add_column("Key", style="cyan")
        table.add_column("Upload ID", style="green")
        table.add_column("Image ID")
        table.add_column("Service")
        table.add_column("Chunk", justify="right")
        table.add_column("Parts", justify="right")

        for key, state in records:
            try:
                service = ServiceId(int(state.service_id)).name.lower()
            except ValueError:
                service = state.service_id
            table.add_row(
                key,
                state.upload_id,
                state.image_id,
                service,
                format_size(state.chunk_size),
                str(len(state.completed_parts)),
            )
        console.print(table)

    except (GeointUploadError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command("resume-clear")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def resume_clear(ctx, yes):
    """Forget all interrupted uploads."""
    try:
        store = ResumeStateStore(load_config(ctx).state_dir)
        if not yes and not Confirm.ask(
            "Clear all resume states? Interrupted uploads will restart from scratch",
            console=console,
        ):
            console.print("[yellow]Aborted.[/yellow]")
            return
        removed = store.delete_all()
        console.print(f"[green]✓[/green] Cleared {removed} resume state(s)")

    except (GeointUploadError, ValueError, OSError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option(
    "--max-age-hours",
    type=int,
    default=24,
    show_default=True,
    help="Abort multipart sessions older than this",
)
@click.pass_context
def cleanup(ctx, max_age_hours):
    """Abort abandoned multipart sessions in the bucket (s3 backend)."""
    try:
        if ctx.obj["backend"] != "s3":
            raise click.UsageError("cleanup requires --backend s3")
        api = GeointUploadAPI(
            config=load_config(ctx), backend="s3", s3_config=load_s3_config(ctx)
        )
        cleaned = api.cleanup_abandoned_uploads(max_age_hours)
        console.print(f"[green]✓[/green] Aborted {cleaned} abandoned upload(s)")

    except (GeointUploadError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


def main():
    """Main entry point."""
    cli()
