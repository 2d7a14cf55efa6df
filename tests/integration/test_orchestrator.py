import threading
from pathlib import Path
import pytest
from pbt.config.models import BatchOptions
from pbt.domain.models import BatchPhase, BatchStatus, ErrorType, ImageStatus
from pbt.infrastructure.record_store import SqliteRecordStore
from pbt.pipeline.orchestrator import Orchestrator
from tests.fakes import FakeCodec, FakeMetadata, FakeProvider, base_of


class GatedCodec(FakeCodec):
    """Blocks resizes of the listed bases until the gate opens."""

    def __init__(self, gated):
        super().__init__()
        self.gated = set(gated)
        self.gate = threading.Event()
        self.blocked = 0
        self._blocked_lock = threading.Lock()

    def dimensions(self, source):
        if base_of(source) in self.gated:
            with self._blocked_lock:
                self.blocked += 1
            self.gate.wait(timeout=10)
        return super().dimensions(source)


class GatedProvider(FakeProvider):
    """Blocks analysis of the listed bases until the gate opens."""

    def __init__(self, gated):
        super().__init__()
        self.gated = set(gated)
        self.gate = threading.Event()
        self.blocked = 0

    def analyze(self, image_path, prompt=None, metadata=None):
        if base_of(image_path) in self.gated:
            with self._lock:
                self.blocked += 1
            self.gate.wait(timeout=10)
        return super().analyze(image_path, prompt=prompt, metadata=metadata)


@pytest.fixture
def build(app_config, store):
    created = []

    def _build(provider=None, codec=None, metadata=None, record_store=None):
        orchestrator = Orchestrator(
            app_config,
            record_store=record_store or store,
            codec=codec or FakeCodec(),
            provider=provider or FakeProvider(),
            metadata_extractor=metadata or FakeMetadata(snapshot={"make": "Canon"}),
            sleep=lambda seconds: None,
        )
        created.append(orchestrator)
        return orchestrator

    yield _build
    for orchestrator in created:
        orchestrator.shutdown(wait=True)


def test_three_jpegs_complete(build, store, make_photos):
    """3 JPEGs, one ingestion worker, analysis always succeeds."""
    make_photos(["a.jpg", "b.jpg", "c.jpg"])
    orchestrator = build()

    batch_id = orchestrator.start_batch(make_photos.root, {"parallelConnections": 1, "skipDuplicates": True})
    result = orchestrator.wait(batch_id, timeout=10)

    assert result.status == BatchStatus.COMPLETED
    assert result.current_phase == BatchPhase.FINALIZING
    assert result.total_files == 3
    assert result.processed_files == 3
    assert result.successful_files == 3
    assert result.duplicate_files == 0
    assert result.completed_analysis == 3
    assert (result.pending_analysis, result.active_analysis, result.retrying_files) == (0, 0, 0)
    assert result.errors == []
    assert result.end_time is not None
    assert result.pause_requested is False
    for image in result.processed_images:
        assert image.status == ImageStatus.COMPLETED
        assert store.get_image(image.id).status == ImageStatus.COMPLETED
        assert store.get_analysis(image.id) is not None
        assert store.get_metadata(image.id) == {"make": "Canon"}


def test_rerun_detects_duplicates(build, store, make_photos):
    make_photos(["a.jpg", "b.jpg", "c.jpg"])
    orchestrator = build()
    first = orchestrator.wait(orchestrator.start_batch(make_photos.root), timeout=10)
    assert first.successful_files == 3

    second = orchestrator.wait(orchestrator.start_batch(make_photos.root), timeout=10)

    assert second.status == BatchStatus.COMPLETED
    assert second.duplicate_files == 3
    assert second.successful_files == 0
    assert second.processed_files == 3
    assert second.completed_analysis == 0
    assert [e.type for e in second.errors] == [ErrorType.DUPLICATE] * 3
    assert all(e.error == "File already exists in database" for e in second.errors)


def test_transient_analysis_failure_recovers(build, store, make_photos):
    make_photos(["a.jpg", "b.jpg"])
    provider = FakeProvider(failures={"a": 2})
    orchestrator = build(provider=provider)

    result = orchestrator.wait(orchestrator.start_batch(make_photos.root, {"max_retries": 3}), timeout=10)

    assert result.status == BatchStatus.COMPLETED
    assert result.completed_analysis == 2
    assert result.failed_analysis == 0
    assert provider.attempts("a") == 3
    assert not [e for e in result.errors if e.type == ErrorType.RETRY_EXHAUSTED]


def test_exhausted_analysis_marks_image_error(build, store, make_photos):
    make_photos(["a.jpg", "b.jpg"])
    provider = FakeProvider(always_fail={"b"})
    orchestrator = build(provider=provider)

    result = orchestrator.wait(orchestrator.start_batch(make_photos.root, {"max_retries": 3}), timeout=10)

    assert result.status == BatchStatus.COMPLETED
    assert result.completed_analysis == 1
    assert result.failed_analysis == 1
    exhausted = [e for e in result.errors if e.type == ErrorType.RETRY_EXHAUSTED]
    assert len(exhausted) == 1
    assert exhausted[0].retry_count == 3
    failed_image = next(i for i in result.processed_images if i.original_name == "b.jpg")
    assert failed_image.status == ImageStatus.ERROR
    assert store.get_image(failed_image.id).status == ImageStatus.ERROR


def test_pause_waits_for_in_flight_files_then_resume_finishes(build, store, make_photos, wait_for):
    names = [f"img{i:02d}.jpg" for i in range(1, 21)]
    make_photos(names)
    codec = GatedCodec(gated={"img15", "img16", "img17", "img18", "img19", "img20"})
    orchestrator = build(codec=codec)

    batch_id = orchestrator.start_batch(make_photos.root, {"parallel_connections": 2})

    # Both workers are now holding one claimed file each
    assert wait_for(lambda: codec.blocked == 2)
    assert orchestrator.get_status(batch_id).processed_files == 14

    assert orchestrator.pause_batch(batch_id) is True
    pending = orchestrator.get_status(batch_id)
    assert pending.status == BatchStatus.PROCESSING
    assert pending.pause_requested is True

    codec.gate.set()
    paused = orchestrator.wait(batch_id, timeout=10)

    assert paused.status == BatchStatus.PAUSED
    assert paused.processed_files == 16
    assert paused.end_time is None

    assert orchestrator.resume_batch(batch_id) is True
    done = orchestrator.wait(batch_id, timeout=10)

    assert done.status == BatchStatus.COMPLETED
    assert done.processed_files == 20
    assert done.successful_files == 20
    assert done.duplicate_files == 0
    assert done.completed_analysis == 20
    assert sorted(i.original_name for i in done.processed_images) == names
    assert done.pause_requested is False


def test_pause_waits_for_in_flight_analysis_then_resume_finishes(build, store, make_photos, wait_for):
    names = [f"img{i}.jpg" for i in range(1, 7)]
    make_photos(names)
    provider = GatedProvider(gated={"img1"})
    orchestrator = build(provider=provider)

    batch_id = orchestrator.start_batch(
        make_photos.root, {"parallel_connections": 1, "max_concurrent_analysis": 1}
    )
    assert wait_for(lambda: provider.blocked == 1)
    assert wait_for(lambda: orchestrator.get_status(batch_id).processed_files == 6)

    assert orchestrator.pause_batch(batch_id) is True
    in_flight = orchestrator.wait(batch_id, timeout=0.2)
    assert in_flight.status == BatchStatus.PROCESSING
    assert in_flight.pause_requested is True
    assert in_flight.active_analysis >= 1

    provider.gate.set()
    paused = orchestrator.wait(batch_id, timeout=10)

    assert paused.status == BatchStatus.PAUSED
    assert paused.active_analysis == 0
    assert paused.completed_analysis == 1
    assert paused.pending_analysis == 5

    assert orchestrator.resume_batch(batch_id) is True
    done = orchestrator.wait(batch_id, timeout=10)

    assert done.status == BatchStatus.COMPLETED
    assert done.completed_analysis == 6
    assert (done.pending_analysis, done.active_analysis) == (0, 0)
    assert sorted(provider.calls) == sorted(n[:-4] for n in names)


def test_empty_folder_completes_immediately(build, tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    (empty / "readme.txt").write_text("not a photo")
    orchestrator = build()

    result = orchestrator.wait(orchestrator.start_batch(empty), timeout=10)

    assert result.status == BatchStatus.COMPLETED
    assert result.total_files == 0
    assert result.processed_files == 0
    assert result.end_time is not None


def test_missing_folder_is_fatal(build, tmp_path):
    missing = tmp_path / "missing"
    orchestrator = build()

    result = orchestrator.wait(orchestrator.start_batch(missing), timeout=10)

    assert result.status == BatchStatus.ERROR
    assert result.current_phase == BatchPhase.DISCOVERY
    assert len(result.errors) == 1
    assert result.errors[0].type == ErrorType.PROCESSING
    assert result.errors[0].file == str(missing)
    assert result.errors[0].error == f'Directory not found: "{missing}"'
    assert result.end_time is not None


def test_per_file_failures_do_not_stop_batch(build, make_photos):
    make_photos(["a.jpg", "broken.jpg", "c.jpg"])
    orchestrator = build(codec=FakeCodec(fail_on={"broken"}))

    result = orchestrator.wait(orchestrator.start_batch(make_photos.root), timeout=10)

    assert result.status == BatchStatus.COMPLETED
    assert (result.successful_files, result.error_files, result.processed_files) == (2, 1, 3)
    assert result.completed_analysis == 2


def test_unknown_batch_operations(build):
    orchestrator = build()
    assert orchestrator.get_status("nope") is None
    assert orchestrator.pause_batch("nope") is False
    assert orchestrator.resume_batch("nope") is False
    assert orchestrator.delete_batch("nope") is False
    assert orchestrator.wait("nope") is None


def test_pause_and_resume_rejected_in_wrong_state(build, make_photos):
    make_photos(["a.jpg"])
    orchestrator = build()
    batch_id = orchestrator.start_batch(make_photos.root)
    orchestrator.wait(batch_id, timeout=10)

    assert orchestrator.pause_batch(batch_id) is False
    assert orchestrator.resume_batch(batch_id) is False
    assert orchestrator.get_status(batch_id).status == BatchStatus.COMPLETED


def test_resume_rejected_while_processing(build, make_photos, wait_for):
    make_photos(["a.jpg", "b.jpg"])
    codec = GatedCodec(gated={"a"})
    orchestrator = build(codec=codec)
    batch_id = orchestrator.start_batch(make_photos.root)
    assert wait_for(lambda: codec.blocked == 1)

    assert orchestrator.resume_batch(batch_id) is False
    codec.gate.set()
    assert orchestrator.wait(batch_id, timeout=10).status == BatchStatus.COMPLETED


def test_list_delete_and_clear(build, make_photos, tmp_path, wait_for):
    make_photos(["a.jpg"])
    orchestrator = build()
    done_id = orchestrator.start_batch(make_photos.root)
    orchestrator.wait(done_id, timeout=10)
    failed_id = orchestrator.start_batch(tmp_path / "missing")
    orchestrator.wait(failed_id, timeout=10)

    gated_dir = tmp_path / "gated"
    gated_dir.mkdir()
    (gated_dir / "slow.jpg").write_bytes(b"\xff\xd8slow")
    codec = GatedCodec(gated={"slow"})
    slow_orchestrator = build(codec=codec, record_store=SqliteRecordStore(":memory:"))
    running_id = slow_orchestrator.start_batch(gated_dir)
    assert wait_for(lambda: codec.blocked == 1)

    jobs = {job.id: job for job in orchestrator.list_batches()}
    assert set(jobs) == {done_id, failed_id}
    assert jobs[done_id].result.status == BatchStatus.COMPLETED
    assert jobs[failed_id].folder_path == tmp_path / "missing"

    assert orchestrator.clear_completed_batches() == 2
    assert orchestrator.list_batches() == []
    assert orchestrator.clear_completed_batches() == 0

    # Deleting a running batch stops it and purges it right away
    assert slow_orchestrator.delete_batch(running_id) is True
    assert slow_orchestrator.get_status(running_id) is None
    assert slow_orchestrator.list_batches() == []
    codec.gate.set()


def test_clear_keeps_running_and_paused_batches(build, make_photos, wait_for):
    make_photos(["a.jpg", "b.jpg", "c.jpg"])
    codec = GatedCodec(gated={"a"})
    orchestrator = build(codec=codec)
    batch_id = orchestrator.start_batch(make_photos.root)
    assert wait_for(lambda: codec.blocked == 1)

    assert orchestrator.clear_completed_batches() == 0
    orchestrator.pause_batch(batch_id)
    codec.gate.set()
    assert orchestrator.wait(batch_id, timeout=10).status == BatchStatus.PAUSED
    assert orchestrator.clear_completed_batches() == 0

    assert orchestrator.delete_batch(batch_id) is True
    assert orchestrator.get_status(batch_id) is None


def test_options_layer_over_config_defaults(build, app_config, make_photos):
    make_photos(["a.jpg"])
    orchestrator = build()

    batch_id = orchestrator.start_batch(make_photos.root, {"maxRetries": 7})
    orchestrator.wait(batch_id, timeout=10)
    (job,) = orchestrator.list_batches()

    assert job.options.max_retries == 7
    # Untouched fields keep the configured defaults, not the model defaults
    assert job.options.retry_delay == 0
    assert job.options.enable_rate_limit is False

    batch_id = orchestrator.start_batch(make_photos.root, BatchOptions(quality=50))
    orchestrator.wait(batch_id, timeout=10)
    job = next(j for j in orchestrator.list_batches() if j.id == batch_id)
    assert job.options.quality == 50
    assert job.options.retry_delay == 0


def test_concurrent_batches_are_isolated(build, tmp_path):
    folders = []
    for n in range(3):
        folder = tmp_path / f"set{n}"
        folder.mkdir()
        for i in range(5):
            (folder / f"set{n}_{i}.jpg").write_bytes(b"\xff\xd8" + bytes([n, i]) * 10)
        folders.append(folder)
    orchestrator = build()

    ids = [orchestrator.start_batch(folder, {"parallel_connections": 2}) for folder in folders]
    results = [orchestrator.wait(batch_id, timeout=20) for batch_id in ids]

    for n, result in enumerate(results):
        assert result.status == BatchStatus.COMPLETED
        assert result.successful_files == 5
        assert result.completed_analysis == 5
        assert {i.original_name.split("_")[0] for i in result.processed_images} == {f"set{n}"}


def test_shutdown_rejects_new_batches(build, make_photos):
    make_photos(["a.jpg"])
    orchestrator = build()
    orchestrator.shutdown()

    with pytest.raises(RuntimeError):
        orchestrator.start_batch(make_photos.root)


def test_storage_outputs_written(build, app_config, make_photos):
    make_photos(["a.jpg", "b.png"])
    orchestrator = build()

    result = orchestrator.wait(orchestrator.start_batch(make_photos.root), timeout=10)

    previews = sorted(p.name for p in Path(app_config.storage.preview_dir).iterdir())
    thumbs = sorted(p.name for p in Path(app_config.storage.thumbnail_dir).iterdir())
    assert len(previews) == 2 and all(n.endswith("_processed.jpg") for n in previews)
    assert len(thumbs) == 2 and all(n.endswith("_thumb.jpg") for n in thumbs)
    # Upload copies are dropped once previews exist
    uploads = [p for p in Path(app_config.storage.upload_dir).iterdir() if p.is_file()]
    assert uploads == []
    assert result.successful_files == 2
