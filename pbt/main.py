import typer
import time
import warnings
from pathlib import Path
from typing import Optional, Dict, Any

import yaml
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

# pyexiftool warns on every batch call; keep the terminal clean
warnings.filterwarnings("ignore")
from pbt.config.loader import load_config
from pbt.config.models import AppConfig
from pbt.domain.models import BatchResult, BatchStatus
from pbt.infrastructure.logging import setup_logging
from pbt.infrastructure.file_scanner import FileScanner
from pbt.infrastructure.exif_tool import ExifToolAdapter
from pbt.infrastructure.image_codec import PillowCodec
from pbt.infrastructure.record_store import SqliteRecordStore
from pbt.infrastructure.ollama import OllamaProvider
from pbt.pipeline.orchestrator import Orchestrator

app = typer.Typer(help="PBT (Photo Batch Tagging) - ingest a folder of photos and tag them with a vision model")

POLL_INTERVAL_S = 0.25


def _load(config_path: Path) -> AppConfig:
    try:
        return load_config(config_path)
    except FileNotFoundError:
        # Running without a config file is fine; everything has a default
        if config_path == Path("conf/pbt.yaml"):
            return AppConfig()
        raise


def _cli_overrides(**values: Any) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _summary_table(result: BatchResult) -> Table:
    table = Table(title=f"Batch {result.batch_id[:8]} - {result.status.value}", show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Files discovered", str(result.total_files))
    table.add_row("Processed", str(result.processed_files))
    table.add_row("Ingested", str(result.successful_files))
    table.add_row("Duplicates", str(result.duplicate_files))
    table.add_row("Ingestion errors", str(result.error_files))
    table.add_row("Analysis completed", str(result.completed_analysis))
    table.add_row("Analysis failed", str(result.failed_analysis))
    table.add_row("Analysis pending", str(result.pending_analysis + result.retrying_files))
    table.add_row("Rate", f"{result.processing_rate} files/min")
    table.add_row("Memory", f"{result.memory_usage.used} MB ({result.memory_usage.percentage}%)")
    table.add_row("Started", result.start_time)
    if result.end_time:
        table.add_row("Finished", result.end_time)
    return table


def _error_table(result: BatchResult, limit: int = 20) -> Optional[Table]:
    if not result.errors:
        return None
    table = Table(title=f"Errors ({len(result.errors)})")
    table.add_column("Type")
    table.add_column("File")
    table.add_column("Error")
    for record in result.errors[:limit]:
        table.add_row(record.type.value, record.file, record.error)
    if len(result.errors) > limit:
        table.add_row("...", f"{len(result.errors) - limit} more", "")
    return table


def _watch(orchestrator: Orchestrator, batch_id: str, console: Console) -> BatchResult:
    """Renders live progress until the batch leaves the processing state."""
    with Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TextColumn("{task.fields[info]}"),
        TimeElapsedColumn(),
        console=console,
        transient=False,
    ) as progress:
        files_task = progress.add_task("Ingest", total=None, info="")
        analysis_task = progress.add_task("Analyze", total=None, info="")
        while True:
            result = orchestrator.get_status(batch_id)
            analysed = result.completed_analysis + result.failed_analysis
            progress.update(
                files_task,
                total=result.total_files or None,
                completed=result.processed_files,
                info=f"{result.current_phase.value} | {result.processing_rate}/min | "
                     f"ETA {result.estimated_time_remaining or '-'}",
            )
            progress.update(
                analysis_task,
                total=result.successful_files or None,
                completed=analysed,
                info=f"active {result.active_analysis} | queued {result.pending_analysis} | "
                     f"retrying {result.retrying_files}",
            )
            if result.status != BatchStatus.PROCESSING:
                return result
            time.sleep(POLL_INTERVAL_S)


@app.command()
def process(
    folder: Path = typer.Argument(..., help="Folder to scan recursively for photos"),
    config_path: Path = typer.Option(Path("conf/pbt.yaml"), "--config", "-c", help="Path to YAML config"),
    parallel: Optional[int] = typer.Option(None, "--parallel", "-p", help="Parallel ingestion workers"),
    max_analysis: Optional[int] = typer.Option(None, "--max-analysis", help="Max concurrent analysis requests"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Analysis retries per image"),
    retry_delay: Optional[int] = typer.Option(None, "--retry-delay", help="Delay between analysis retries (ms)"),
    skip_duplicates: Optional[bool] = typer.Option(
        None, "--skip-duplicates/--no-skip-duplicates", help="Skip files already in the database"
    ),
    rate_limit: Optional[bool] = typer.Option(
        None, "--rate-limit/--no-rate-limit", help="Space analysis groups by rate_limit_interval"
    ),
    prompt: Optional[str] = typer.Option(None, "--prompt", help="Custom analysis prompt"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Ingest FOLDER and run AI analysis on every new photo."""
    console = Console()
    try:
        try:
            config = _load(config_path)
        except Exception as exc:
            typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)

        if debug:
            config.general.debug = True

        if not folder.is_dir():
            typer.secho(f"Error: {folder} is not a directory", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)

        overrides = _cli_overrides(
            parallel_connections=parallel,
            max_concurrent_analysis=max_analysis,
            max_retries=max_retries,
            retry_delay=retry_delay,
            skip_duplicates=skip_duplicates,
            enable_rate_limit=rate_limit,
            custom_prompt=prompt,
        )

        logger = setup_logging(Path(config.general.log_path), debug=config.general.debug)
        logger.info(f"PBT started: folder={folder}")
        logger.info(
            f"Config: model={config.provider.model}, db={config.storage.database_path}, overrides={overrides}"
        )

        store = SqliteRecordStore(config.storage.database_path)
        codec = PillowCodec()
        provider = OllamaProvider(config.provider)
        exif = ExifToolAdapter()

        if not provider.test_connection():
            typer.secho(
                f"Warning: Ollama model {config.provider.model} not reachable at {config.provider.base_url}; "
                "analysis will fail and be retried",
                fg=typer.colors.YELLOW,
                err=True,
            )

        orchestrator = Orchestrator(
            config,
            record_store=store,
            codec=codec,
            provider=provider,
            metadata_extractor=exif,
            file_scanner=FileScanner(config.general.extensions),
        )
        batch_id = orchestrator.start_batch(folder, overrides)
        console.print(f"Batch [bold]{batch_id}[/bold] started for {folder}")

        interrupted = False
        try:
            try:
                result = _watch(orchestrator, batch_id, console)
            except KeyboardInterrupt:
                interrupted = True
                console.print("[yellow]Pause requested, waiting for in-flight work...[/yellow]")
                orchestrator.pause_batch(batch_id)
                result = orchestrator.wait(batch_id)

            console.print(_summary_table(result))
            errors = _error_table(result)
            if errors is not None:
                console.print(errors)
        finally:
            orchestrator.shutdown(wait=True)
            provider.close()
            exif.close()
            store.close()
            logger.info("PBT finished")

        if interrupted:
            typer.secho("\n✓ Batch paused by user (Ctrl+C)", fg=typer.colors.YELLOW)
            raise typer.Exit(code=130)
        if result.status == BatchStatus.ERROR:
            raise typer.Exit(code=1)

    except KeyboardInterrupt:
        typer.secho("\n✓ Stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)

    except typer.Exit:
        raise

    except Exception as e:
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.command()
def config(
    config_path: Path = typer.Option(Path("conf/pbt.yaml"), "--config", "-c", help="Path to YAML config"),
):
    """Print the effective configuration."""
    try:
        loaded = _load(config_path)
    except Exception as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(yaml.safe_dump(loaded.model_dump(mode="json"), sort_keys=False))


if __name__ == "__main__":
    app()
