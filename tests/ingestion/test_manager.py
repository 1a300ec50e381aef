import asyncio
import json
import threading

import pytest

from retrovault.errors import FatalPipelineError
from retrovault.ingestion.jobs import BatchFile, JobNotFoundError
from retrovault.ingestion.manager import BatchJobManager
from retrovault.pipeline.hashing import calculate_hash
from retrovault.pipeline.orchestrator import PipelineOrchestrator, PipelineResult


@pytest.fixture
def batch_files(make_nes, make_file):
    """good1.nes, a headerless corrupt.nes, then good2.nes."""
    return [
        BatchFile.from_path(make_nes("good1.nes", b"one")),
        BatchFile.from_path(make_file("corrupt.nes", b"\x00" * 64)),
        BatchFile.from_path(make_nes("good2.nes", b"two")),
    ]


@pytest.fixture
def manager(settings):
    return BatchJobManager(PipelineOrchestrator.from_settings(settings))


class FatalOrchestrator:
    def process(self, path):
        raise FatalPipelineError("platform table vanished")


class GatedOrchestrator:
    """Holds each file in process() until the test releases it."""

    def __init__(self):
        self.entered = threading.Semaphore(0)
        self.release = threading.Semaphore(0)

    def process(self, path):
        self.entered.release()
        if not self.release.acquire(timeout=5):
            return PipelineResult(success=False, phase="test", errors=["never released"])
        return PipelineResult(success=True)


class CountingOrchestrator:
    def __init__(self):
        self.paths = []

    def process(self, path):
        self.paths.append(path.name)
        return PipelineResult(success=True)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_continue_on_error_processes_every_file(manager, batch_files, settings):
    job = manager.submit(batch_files, continue_on_error=True)

    snapshot = await manager.run_job(job.job_id)

    assert snapshot["status"] == "completed"
    assert snapshot["progress"] == {"processed": 3, "total": 3}
    assert len(snapshot["errors"]) == 1
    assert snapshot["errors"][0].startswith("corrupt.nes: ")
    assert snapshot["errors"][0].endswith("(phase: validator)")

    manifest = json.loads((settings.manifests_dir / "nes.json").read_text())
    assert [item["filename"] for item in manifest] == ["good1.nes", "good2.nes"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stop_on_error_fails_at_first_bad_file(manager, batch_files, settings):
    job = manager.submit(batch_files, continue_on_error=False)

    snapshot = await manager.run_job(job.job_id)

    assert snapshot["status"] == "failed"
    assert snapshot["progress"] == {"processed": 1, "total": 3}
    assert len(snapshot["errors"]) == 1
    assert "corrupt.nes" in snapshot["errors"][0]
    assert "completedAt" in snapshot

    manifest = json.loads((settings.manifests_dir / "nes.json").read_text())
    assert [item["filename"] for item in manifest] == ["good1.nes"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_all_files_failing_still_completes(manager, make_file):
    bad = [BatchFile.from_path(make_file(f"bad{n}.nes", b"\x00" * 64)) for n in range(2)]
    job = manager.submit(bad)

    snapshot = await manager.run_job(job.job_id)

    assert snapshot["status"] == "completed"
    assert snapshot["progress"]["processed"] == 2
    assert len(snapshot["errors"]) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fatal_error_fails_job(make_nes):
    manager = BatchJobManager(FatalOrchestrator())
    job = manager.submit([BatchFile.from_path(make_nes())])

    snapshot = await manager.run_job(job.job_id)

    assert snapshot["status"] == "failed"
    assert snapshot["progress"]["processed"] == 0
    assert snapshot["errors"] == ["Fatal error: platform table vanished"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_files_processed_in_submission_order(make_nes):
    orchestrator = CountingOrchestrator()
    manager = BatchJobManager(orchestrator)
    names = ["c.nes", "a.nes", "b.nes"]
    job = manager.submit([BatchFile.from_path(make_nes(n, n.encode())) for n in names])

    await manager.run_job(job.job_id)

    assert orchestrator.paths == names


@pytest.mark.unit
@pytest.mark.asyncio
async def test_workers_drain_queue(manager, make_nes):
    await manager.start()
    try:
        first = manager.submit([BatchFile.from_path(make_nes("one.nes", b"1"))])
        second = manager.submit([BatchFile.from_path(make_nes("two.nes", b"2"))])

        one = await manager.wait_for(first.job_id, timeout=10)
        two = await manager.wait_for(second.job_id, timeout=10)
    finally:
        await manager.stop()

    assert one["status"] == "completed"
    assert two["status"] == "completed"
    assert manager.is_running is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stop_leaves_pending_jobs_queued(manager, make_nes):
    await manager.start()
    await manager.stop()

    job = manager.submit([BatchFile.from_path(make_nes())])
    await asyncio.sleep(0)

    assert manager.get_job(job.job_id)["status"] == "queued"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_job_is_queued_until_run(manager, make_nes):
    job = manager.submit([BatchFile.from_path(make_nes())])

    snapshot = manager.get_job(job.job_id)

    assert snapshot["status"] == "queued"
    assert snapshot["progress"] == {"processed": 0, "total": 1}
    assert manager.list_jobs() == [snapshot]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_wait_for_times_out_on_unstarted_job(manager, make_nes):
    job = manager.submit([BatchFile.from_path(make_nes())])

    with pytest.raises(asyncio.TimeoutError):
        await manager.wait_for(job.job_id, timeout=0.05)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_job(manager):
    assert manager.get_job("job-missing") is None

    with pytest.raises(JobNotFoundError):
        await manager.run_job("job-missing")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_clear_old_jobs_evicts_only_finished(manager, make_nes):
    finished = manager.submit([BatchFile.from_path(make_nes("one.nes", b"1"))])
    pending = manager.submit([BatchFile.from_path(make_nes("two.nes", b"2"))])
    await manager.run_job(finished.job_id)

    assert manager.clear_old_jobs() == 0
    assert manager.clear_old_jobs(max_age_hours=0) == 1

    assert manager.get_job(finished.job_id) is None
    assert manager.get_job(pending.job_id) is not None


@pytest.mark.unit
def test_from_config_reads_batch_section():
    manager = BatchJobManager.from_config(
        {"batch": {"workers": 3, "continue_on_error": False, "job_retention_hours": 2}},
        CountingOrchestrator(),
    )

    assert manager.workers == 3
    assert manager.continue_on_error is False
    assert manager.retention_hours == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_status_is_readable_while_job_runs(make_nes):
    orchestrator = GatedOrchestrator()
    manager = BatchJobManager(orchestrator)
    job = manager.submit([BatchFile.from_path(make_nes(f"{n}.nes", str(n).encode())) for n in range(3)])
    order = ["queued", "processing", "completed"]

    running = asyncio.create_task(manager.run_job(job.job_id))
    seen = [manager.get_job(job.job_id)]
    for _ in range(3):
        assert await asyncio.to_thread(orchestrator.entered.acquire, True, 5)
        seen.append(manager.get_job(job.job_id))
        orchestrator.release.release()
    seen.append(await asyncio.wait_for(running, 5))

    statuses = [snapshot["status"] for snapshot in seen]
    assert statuses == ["queued", "processing", "processing", "processing", "completed"]
    assert [order.index(s) for s in statuses] == sorted(order.index(s) for s in statuses)
    assert [snapshot["progress"]["processed"] for snapshot in seen] == [0, 0, 1, 2, 3]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_parallel_workers_archive_same_name_safely(settings, tmp_path, make_nes):
    manager = BatchJobManager(PipelineOrchestrator.from_settings(settings), workers=2)
    jobs = []
    for n, payload in enumerate([b"first", b"second", b"first"]):
        directory = tmp_path / f"upload{n}"
        directory.mkdir()
        source = directory / "Same.nes"
        source.write_bytes(make_nes(f"tmp{n}.nes", payload).read_bytes())
        jobs.append(manager.submit([BatchFile.from_path(source)]))

    await manager.start()
    try:
        finals = [await manager.wait_for(job.job_id, timeout=10) for job in jobs]
    finally:
        await manager.stop()

    assert all(final["status"] == "completed" for final in finals)
    assert sum(len(final["errors"]) for final in finals) == 1

    manifest = json.loads((settings.manifests_dir / "nes.json").read_text())
    assert len(manifest) == 2
    for item in manifest:
        archived = settings.archive_roms_dir / "nes" / item["filename"]
        assert calculate_hash(archived) == item["hash"]
