"""Command-line interface for retrovault."""

import sys
import logging
import argparse
import asyncio
from pathlib import Path
from typing import List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

logger = logging.getLogger(__name__)

from retrovault import __version__
from retrovault.config.loader import load_config, ConfigError
from retrovault.config.validator import validate_config, ValidationError
from retrovault.config.settings import PipelineSettings
from retrovault.errors import FatalPipelineError
from retrovault.ingestion.jobs import BatchFile
from retrovault.ingestion.manager import BatchJobManager
from retrovault.ingestion.policy import BatchPolicy, validate_batch
from retrovault.pipeline.hashing import format_file_size
from retrovault.pipeline.manifest import ManifestError, ManifestStore
from retrovault.pipeline.orchestrator import PipelineOrchestrator
from retrovault.plugins.loader import PluginLoader
from retrovault.plugins.registry import PluginRegistry
from retrovault.plugins.sandbox import PluginSandbox

console = Console()


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog='retrovault',
        description='ROM ingestion, archival and RetroArch library promotion',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ingest files one at a time
  retrovault ingest ~/Downloads/Zelda.nes ~/Downloads/Metroid.nes

  # Ingest a batch as a job, stopping at the first failure
  retrovault batch ~/Downloads/*.sfc --stop-on-error

  # Show the archive manifest for a platform
  retrovault manifest nes

  # List known platforms
  retrovault --config /path/to/config.yaml platforms
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    parser.add_argument(
        '--config',
        type=Path,
        metavar='PATH',
        help='Path to config.yaml (default: ./config.yaml)'
    )

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    ingest = subparsers.add_parser('ingest', help='Run files through the pipeline one by one')
    ingest.add_argument('files', nargs='+', type=Path, metavar='FILE')

    batch = subparsers.add_parser('batch', help='Submit files as one batch job')
    batch.add_argument('files', nargs='+', type=Path, metavar='FILE')
    batch.add_argument(
        '--stop-on-error',
        action='store_true',
        help='Fail the job at the first file that fails. Overrides config.'
    )

    manifest = subparsers.add_parser('manifest', help='Show archived ROMs for a platform')
    manifest.add_argument('platform', metavar='PLATFORM')

    subparsers.add_parser('platforms', help='List known platforms')

    return parser


def _setup_logging(config: dict) -> None:
    """
    Setup logging configuration from config.

    Args:
        config: Configuration dictionary
    """
    logging_config = config.get('logging', {})

    # Get log level
    level_str = (logging_config.get('level') or 'INFO').upper()
    level = getattr(logging, level_str, logging.INFO)

    handlers = []

    if logging_config.get('console', True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
        handlers.append(console_handler)

    # File handler (if configured)
    log_file = logging_config.get('file')
    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            print(f"Error: Could not create log file '{log_file}': {e}", file=sys.stderr)
            sys.exit(1)

    logging.basicConfig(
        level=level,
        handlers=handlers,
        force=True  # Override any existing configuration
    )

    # Plugin downloads log full URLs at DEBUG
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)

    # Suppress PIL/Pillow debug logging (verbose chunk parsing messages)
    logging.getLogger('PIL').setLevel(logging.INFO)


def main(argv: Optional[list] = None) -> int:
    """
    Main entry point for retrovault CLI.

    Args:
        argv: Command-line arguments (default: sys.argv)

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    # Load and validate configuration
    try:
        config = load_config(args.config)
        validate_config(config)
    except (ConfigError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    _setup_logging(config)

    if args.command == 'batch' and args.stop_on_error:
        config['batch']['continue_on_error'] = False

    try:
        settings = PipelineSettings.from_config(config)

        if args.command == 'platforms':
            return show_platforms(settings)
        if args.command == 'manifest':
            return show_manifest(settings, args.platform)

        orchestrator = _build_orchestrator(config, settings)

        if args.command == 'ingest':
            return run_ingest(orchestrator, args.files)
        return asyncio.run(run_batch(config, settings, orchestrator, args.files))
    except FatalPipelineError as e:
        print(f"\nFatal error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n\nIngestion interrupted by user.", file=sys.stderr)
        return 130


def _build_orchestrator(config: dict, settings: PipelineSettings) -> PipelineOrchestrator:
    """Load configured plugins and wire the pipeline."""
    registry = PluginRegistry()
    sandbox = PluginSandbox(timeout=settings.plugin_timeout)

    if config['plugins'].get('enabled'):
        loader = PluginLoader(registry, cache_dir=settings.workspace_root / 'plugins')
        loaded = loader.load_from_config(config['plugins'].get('sources', []))
        logger.info(f"Loaded {len(loaded)} plugin(s)")

        for plugin_id, valid in registry.validate_all().items():
            if not valid:
                logger.warning(f"Plugin {plugin_id} reports an invalid state; unregistering")
                registry.unregister(plugin_id)

    return PipelineOrchestrator.from_settings(settings, registry, sandbox)


def run_ingest(orchestrator: PipelineOrchestrator, files: List[Path]) -> int:
    """Ingest files synchronously, printing one row per file."""
    table = Table(title="Ingest results", box=box.SIMPLE)
    table.add_column("File", overflow="fold")
    table.add_column("Platform")
    table.add_column("Result")
    table.add_column("Detail", overflow="fold")

    failures = 0
    for path in files:
        result = orchestrator.process(path)
        if result.success:
            table.add_row(path.name, result.rom.platform, "[green]archived[/green]", result.rom.filename)
        else:
            failures += 1
            status = "[yellow]quarantined[/yellow]" if result.quarantined else "[red]failed[/red]"
            platform = result.rom.platform if result.rom else "-"
            table.add_row(path.name, platform or "-", status, f"{result.phase}: {result.error}")

    console.print(table)
    return 1 if failures else 0


async def run_batch(
    config: dict,
    settings: PipelineSettings,
    orchestrator: PipelineOrchestrator,
    files: List[Path],
) -> int:
    """Admit files as a batch, run the job and print its summary."""
    batch_files = [BatchFile.from_path(path) for path in files]
    policy = BatchPolicy.from_config(config, settings.platforms)

    admission = validate_batch(
        [{'name': f.filename, 'size': f.size} for f in batch_files], policy
    )
    if not admission.valid:
        print(f"Batch rejected: {admission.error}", file=sys.stderr)
        return 2

    manager = BatchJobManager.from_config(config, orchestrator)
    job = manager.submit(batch_files)

    await manager.start()
    try:
        snapshot = await manager.wait_for(job.job_id)
    finally:
        await manager.stop()

    progress = snapshot['progress']
    table = Table(title=f"Job {snapshot['jobId']}", box=box.SIMPLE, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value", overflow="fold")
    table.add_row("Status", snapshot['status'])
    table.add_row("Processed", f"{progress['processed']}/{progress['total']}")
    table.add_row("Errors", str(len(snapshot.get('errors', []))))
    console.print(table)

    for error in snapshot.get('errors', []):
        console.print(f"  [red]•[/red] {error}")

    if snapshot['status'] == 'failed' or snapshot.get('errors'):
        return 1
    return 0


def show_manifest(settings: PipelineSettings, platform: str) -> int:
    """Print a platform manifest."""
    if settings.platforms.get(platform) is None:
        print(f"Unknown platform: {platform}", file=sys.stderr)
        return 2

    try:
        entries = ManifestStore(settings.manifests_dir).entries(platform)
    except ManifestError as e:
        print(f"Manifest error: {e}", file=sys.stderr)
        return 1

    table = Table(title=f"{platform} manifest ({len(entries)} entries)", box=box.SIMPLE)
    table.add_column("Filename", overflow="fold")
    table.add_column("Size", justify="right")
    table.add_column("Hash")
    table.add_column("Archived")

    for entry in entries:
        table.add_row(entry.filename, format_file_size(entry.size), entry.hash[:16], entry.archived_at)

    console.print(table)
    return 0


def show_platforms(settings: PipelineSettings) -> int:
    """Print the platform table."""
    table = Table(title="Platforms", box=box.SIMPLE)
    table.add_column("Id", style="bold")
    table.add_column("Name")
    table.add_column("Extensions")
    table.add_column("BIOS")

    for platform in settings.platforms:
        table.add_row(
            platform.id,
            platform.name,
            " ".join(platform.extensions),
            " ".join(platform.bios_files) or "-",
        )

    console.print(table)
    return 0


if __name__ == '__main__':
    sys.exit(main())
