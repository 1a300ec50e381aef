"""
Framework-free ingestion service.

Each method corresponds to one HTTP endpoint and returns a
(status_code, body) pair for the host web framework to serialize:

    POST /api/roms/upload                 -> upload()
    POST /api/roms/batch-upload           -> batch_upload()
    GET  /api/roms/batch-status/<job_id>  -> batch_status()
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from ..config.settings import PipelineSettings
from ..errors import FatalPipelineError
from ..pipeline.orchestrator import PipelineOrchestrator
from ..plugins.registry import PluginRegistry
from ..plugins.sandbox import PluginSandbox
from .jobs import BatchFile
from .manager import BatchJobManager
from .policy import BatchPolicy, validate_batch

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any]]


class IngestService:
    """Single-file and batch ingestion entry points."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        manager: BatchJobManager,
        policy: BatchPolicy,
    ):
        self.orchestrator = orchestrator
        self.manager = manager
        self.policy = policy

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        registry: Optional[PluginRegistry] = None,
        sandbox: Optional[PluginSandbox] = None,
    ) -> 'IngestService':
        """
        Wire settings, orchestrator, job manager and policy from config.

        Raises:
            PlatformConfigError: If the platform table is malformed
        """
        settings = PipelineSettings.from_config(config)
        orchestrator = PipelineOrchestrator.from_settings(settings, registry, sandbox)
        manager = BatchJobManager.from_config(config, orchestrator)
        policy = BatchPolicy.from_config(config, settings.platforms)
        return cls(orchestrator, manager, policy)

    async def start(self) -> None:
        await self.manager.start()

    async def stop(self) -> None:
        await self.manager.stop()

    def upload(self, path) -> Response:
        """
        Ingest one file synchronously through the full pipeline.

        Returns:
            (200, {success, platform, filename, hash, rom}) or
            (400, {success, errors, phase}) or
            (500, {success, errors}) when the pipeline cannot run at all
        """
        try:
            result = self.orchestrator.process(path)
        except FatalPipelineError as e:
            logger.error(f"Upload of {path} aborted: {e}")
            return 500, {
                'success': False,
                'errors': [f"Fatal error: {e}"],
            }

        if not result.success:
            return 400, {
                'success': False,
                'errors': list(result.errors),
                'phase': result.phase,
            }

        rom = result.rom
        return 200, {
            'success': True,
            'platform': rom.platform,
            'filename': rom.filename,
            'hash': rom.hash,
            'rom': rom.to_dict(),
        }

    def batch_upload(
        self,
        files: Iterable[Dict[str, Any]],
        continue_on_error: Optional[bool] = None,
    ) -> Response:
        """
        Admit a batch and queue a job for it.

        Args:
            files: Items with 'name', 'size' and 'path'
            continue_on_error: Override the configured default

        Returns:
            (202, {jobId}), (413, {error}) for oversized batches, or
            (400, {error}) for any other rejection
        """
        files = list(files or [])
        if not files:
            return 400, {'error': 'No files provided'}

        admission = validate_batch(files, self.policy)
        if not admission.valid:
            logger.warning(f"Batch rejected: {admission.error}")
            return (413 if admission.too_large else 400), {'error': admission.error}

        batch_files = []
        for item in files:
            path = item.get('path')
            if not path:
                return 400, {'error': f"File {item.get('name')} has no path"}
            batch_files.append(
                BatchFile(filename=item.get('name') or Path(path).name, path=Path(path), size=item.get('size') or 0)
            )

        job = self.manager.submit(batch_files, continue_on_error)
        return 202, {'jobId': job.job_id}

    def batch_status(self, job_id: str) -> Response:
        """Current snapshot of a job: (200, snapshot) or (404, {error})."""
        snapshot = self.manager.get_job(job_id)
        if snapshot is None:
            return 404, {'error': f"Job not found: {job_id}"}
        return 200, snapshot
