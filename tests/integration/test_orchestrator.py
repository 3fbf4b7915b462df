import threading
import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch
from abrpub.domain.events import BatchFinished, JobCompleted, JobFailed, JobStageChanged
from abrpub.domain.models import AssetPathPolicy, JobStatus, SourceInfo
from abrpub.infrastructure.catalog import CatalogEntry, SqliteCatalog
from abrpub.infrastructure.event_bus import EventBus
from abrpub.infrastructure.ffmpeg import SegmentEncoder
from abrpub.infrastructure.playlist import compose_master
from abrpub.infrastructure.webhook import WebhookNotifier
from abrpub.infrastructure.workspace import WorkspaceManager
from abrpub.pipeline.ladder import LadderPlanner
from abrpub.pipeline.orchestrator import Orchestrator
from abrpub.pipeline.publisher import Publisher

SOURCE = SourceInfo(width=1920, height=1080, bitrate=5_000_000, duration=60.0, has_audio=True)
SOURCE_BODY = b"\x00\x00\x00\x18ftypmp42" * 64


class FakeFFmpeg:
    """Popen stand-in that writes a finished rendition, or fails when told to."""

    def __init__(self, segments=10, fail=False):
        self.segments = segments
        self.fail = fail
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, cmd, **kwargs):
        with self._lock:
            self.calls.append(cmd)
        out_dir = Path(cmd[-1]).parent
        if not self.fail:
            lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:6"]
            for i in range(self.segments):
                (out_dir / f"segment_{i:03d}.ts").write_bytes(b"\x47" * 188)
                lines += ["#EXTINF:6.000000,", f"segment_{i:03d}.ts"]
            lines.append("#EXT-X-ENDLIST")
            (out_dir / "playlist.m3u8").write_text("\n".join(lines) + "\n")
        process = MagicMock()
        process.stdout = ["time=00:01:00.00\n"]
        process.returncode = 1 if self.fail else 0
        process.wait.return_value = process.returncode
        return process


@pytest.fixture
def catalog(tmp_path):
    catalog = SqliteCatalog(tmp_path / "catalog.db")
    catalog.upsert(CatalogEntry(asset_id="42", title="Movie", source_path="api/movie/movies/42.mp4"))
    yield catalog
    catalog.close()


@pytest.fixture
def stocked_store(store):
    store.objects["movies/42.mp4"] = {"body": SOURCE_BODY, "content_type": "video/mp4", "cache_control": None}
    return store


@pytest.fixture
def session():
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=200)
    return session


@pytest.fixture
def events():
    return []


@pytest.fixture
def orchestrator(app_config, catalog, stocked_store, session, events):
    bus = EventBus()
    for event_type in (JobStageChanged, JobCompleted, JobFailed, BatchFinished):
        bus.subscribe(event_type, events.append)
    ffprobe = MagicMock()
    ffprobe.get_source_info.return_value = SOURCE
    policy = AssetPathPolicy(root="hls")
    return Orchestrator(
        config=app_config,
        event_bus=bus,
        catalog=catalog,
        store=stocked_store,
        ffprobe_adapter=ffprobe,
        encoder=SegmentEncoder(event_bus=bus, config=app_config.encoder),
        publisher=Publisher(stocked_store, app_config.publisher, event_bus=bus, policy=policy, sleep=MagicMock()),
        notifier=WebhookNotifier("https://hooks.example.com/done", session=session),
        workspaces=WorkspaceManager(app_config.general.workspace_dir),
        planner=LadderPlanner(app_config.ladder),
    )


def _posted(session):
    return [c.kwargs["json"] for c in session.post.call_args_list]


def test_convert_success(orchestrator, catalog, stocked_store, session, events):
    with patch("subprocess.Popen", side_effect=FakeFFmpeg()):
        job = orchestrator.convert("42", include_lower_rendition=True)

    assert job.status == JobStatus.COMPLETE
    assert job.output_path == "hls/42/playlist.m3u8"
    assert job.source_key == "movies/42.mp4"
    assert job.uploaded_objects == 1 + 2 + 20

    entry = catalog.get("42")
    assert entry.ready
    assert entry.status == JobStatus.COMPLETE
    assert entry.output_path == "hls/42/playlist.m3u8"

    master = stocked_store.objects["hls/42/playlist.m3u8"]["body"].decode()
    assert master.index("480p/playlist.m3u8") < master.index("original-1080p/playlist.m3u8")
    assert "BANDWIDTH=4942000,RESOLUTION=1920x1080" in master

    assert orchestrator.workspaces.list_for("42") == []
    assert not (orchestrator.workspaces.root / "42.lock").exists()
    assert "movies/42.mp4" in stocked_store.objects

    stages = [e.stage for e in events if isinstance(e, JobStageChanged)]
    assert stages == [JobStatus.DOWNLOADING, JobStatus.ENCODING, JobStatus.PUBLISHING]
    assert _posted(session) == [{
        "assetId": "42",
        "status": "completed",
        "outputPath": "hls/42/playlist.m3u8",
        "processingTimeMs": job.processing_time_ms,
    }]

def test_already_converted_is_skipped(orchestrator, catalog, stocked_store, session):
    catalog.mark_ready("42", "hls/42/playlist.m3u8")
    popen = FakeFFmpeg()
    with patch("subprocess.Popen", side_effect=popen):
        job = orchestrator.convert("42")

    assert job.status == JobStatus.COMPLETE
    assert job.skipped
    assert job.output_path == "hls/42/playlist.m3u8"
    assert popen.calls == []
    assert stocked_store.put_calls == []
    session.post.assert_not_called()

def test_force_reconverts_ready_asset(orchestrator, catalog):
    catalog.mark_ready("42", "hls/42/playlist.m3u8")
    popen = FakeFFmpeg()
    with patch("subprocess.Popen", side_effect=popen):
        job = orchestrator.convert("42", force=True)
    assert job.status == JobStatus.COMPLETE
    assert not job.skipped
    assert len(popen.calls) == 1

def test_force_replaces_published_tree(orchestrator, stocked_store):
    with patch("subprocess.Popen", side_effect=FakeFFmpeg(segments=10)):
        first = orchestrator.convert("42", include_lower_rendition=False)
    assert first.status == JobStatus.COMPLETE
    assert "480p/playlist.m3u8" not in stocked_store.objects["hls/42/playlist.m3u8"]["body"].decode()

    stocked_store.put_calls.clear()
    with patch("subprocess.Popen", side_effect=FakeFFmpeg(segments=10)):
        second = orchestrator.convert("42", force=True, include_lower_rendition=True)

    assert second.status == JobStatus.COMPLETE
    assert "480p/playlist.m3u8" in stocked_store.objects["hls/42/playlist.m3u8"]["body"].decode()
    assert "hls/42/original-1080p/segment_000.ts" in stocked_store.put_calls
    assert stocked_store.put_calls[-1] == "hls/42/playlist.m3u8"
    assert second.uploaded_objects == 1 + 2 + 20

def test_encode_failure_keeps_workspace(orchestrator, catalog, stocked_store, session, events):
    popen = FakeFFmpeg(fail=True)
    with patch("subprocess.Popen", side_effect=popen):
        job = orchestrator.convert("42")

    assert job.status == JobStatus.FAILED
    assert job.failed_stage == JobStatus.ENCODING
    assert "All encode strategies failed" in job.error_message
    assert len(popen.calls) == 3

    entry = catalog.get("42")
    assert entry.status == JobStatus.FAILED
    assert not entry.ready
    assert "All encode strategies failed" in entry.error

    workspaces = orchestrator.workspaces.list_for("42")
    assert len(workspaces) == 1
    assert (workspaces[0][1] / "source.mp4").read_bytes() == SOURCE_BODY
    assert not any(k.startswith("hls/") for k in stocked_store.objects)

    payload = _posted(session)[0]
    assert payload["status"] == "failed"
    assert "outputPath" not in payload
    assert any(isinstance(e, JobFailed) for e in events)

def test_missing_source_object_fails_download(orchestrator, catalog, stocked_store):
    del stocked_store.objects["movies/42.mp4"]
    job = orchestrator.convert("42")
    assert job.status == JobStatus.FAILED
    assert job.failed_stage == JobStatus.DOWNLOADING
    assert "not found" in job.error_message
    assert catalog.get("42").status == JobStatus.FAILED

def test_unknown_asset_fails(orchestrator, session):
    job = orchestrator.convert("nope")
    assert job.status == JobStatus.FAILED
    assert "no catalog row" in job.error_message
    assert _posted(session)[0]["assetId"] == "nope"

def test_download_is_retried(orchestrator, stocked_store):
    real = stocked_store.download_to
    attempts = []

    def flaky(key, destination, chunk_size=0):
        attempts.append(key)
        if len(attempts) == 1:
            raise OSError("connection reset")
        return real(key, destination, chunk_size)

    with patch.object(stocked_store, "download_to", side_effect=flaky):
        with patch("subprocess.Popen", side_effect=FakeFFmpeg()):
            job = orchestrator.convert("42")
    assert job.status == JobStatus.COMPLETE
    assert len(attempts) == 2

def test_intact_source_is_not_downloaded_again(orchestrator, stocked_store):
    workspace = orchestrator.workspaces.root / "hls_42_1000"
    (workspace / "output").mkdir(parents=True)
    (workspace / "source.mp4").write_bytes(SOURCE_BODY)

    with patch.object(stocked_store, "download_to") as download:
        with patch("subprocess.Popen", side_effect=FakeFFmpeg()):
            job = orchestrator.convert("42")
    assert job.status == JobStatus.COMPLETE
    download.assert_not_called()

def test_rerun_after_publish_failure_reuses_encodes(orchestrator, catalog, stocked_store):
    bad_key = "hls/42/original-1080p/segment_004.ts"
    stocked_store.fail(bad_key)
    popen = FakeFFmpeg()
    with patch("subprocess.Popen", side_effect=popen):
        first = orchestrator.convert("42")

    assert first.status == JobStatus.FAILED
    assert first.failed_stage == JobStatus.PUBLISHING
    assert bad_key in first.error_message
    assert catalog.get("42").status == JobStatus.FAILED
    assert len(orchestrator.workspaces.list_for("42")) == 1

    stocked_store.failures.clear()
    stocked_store.put_calls.clear()
    with patch("subprocess.Popen", side_effect=popen):
        second = orchestrator.convert("42")

    assert second.status == JobStatus.COMPLETE
    assert len(popen.calls) == 1
    assert stocked_store.put_calls == [bad_key, "hls/42/playlist.m3u8"]
    assert catalog.get("42").ready

def test_resume_publishes_existing_workspace(orchestrator, catalog, stocked_store, app_config,
                                            rendition_writer):
    output_dir = orchestrator.workspaces.root / "hls_42_1000" / "output"
    ladder = LadderPlanner(app_config.ladder).plan(SOURCE, include_lower_rendition=True)
    for level in ladder:
        rendition_writer(output_dir / level.name, 10)
    compose_master(ladder, output_dir)
    for i in range(4):
        key = f"hls/42/480p/segment_{i:03d}.ts"
        stocked_store.objects[key] = {"body": b"x", "content_type": None, "cache_control": None}

    job = orchestrator.resume("42")

    assert job.status == JobStatus.COMPLETE
    assert job.uploaded_objects == 3 + 6 + 10
    assert catalog.get("42").ready
    assert orchestrator.workspaces.list_for("42") == []

def test_resume_without_workspace_fails(orchestrator, session):
    job = orchestrator.resume("42")
    assert job.status == JobStatus.FAILED
    assert "No workspace" in job.error_message
    assert _posted(session)[0]["status"] == "failed"

def test_delete_original_after_publish(orchestrator, stocked_store):
    orchestrator.config.general.delete_original = True
    with patch("subprocess.Popen", side_effect=FakeFFmpeg()):
        job = orchestrator.convert("42")
    assert job.status == JobStatus.COMPLETE
    assert stocked_store.deleted == ["movies/42.mp4"]

def test_locked_asset_ends_in_failed_job(orchestrator, catalog, session, events):
    with orchestrator.workspaces.lock("42"):
        job = orchestrator.convert("42")

    assert job.status == JobStatus.FAILED
    assert "already being converted" in job.error_message
    assert catalog.get("42").status != JobStatus.FAILED
    assert any(isinstance(e, JobFailed) for e in events)
    assert _posted(session)[0]["status"] == "failed"

def test_locked_asset_cannot_be_resumed(orchestrator, session):
    with orchestrator.workspaces.lock("42"):
        job = orchestrator.resume("42")

    assert job.status == JobStatus.FAILED
    assert "already being converted" in job.error_message
    assert len(_posted(session)) == 1

def test_status_compares_local_and_remote(orchestrator, stocked_store):
    stocked_store.fail("hls/42/original-1080p/segment_009.ts")
    with patch("subprocess.Popen", side_effect=FakeFFmpeg()):
        orchestrator.convert("42")

    status = orchestrator.status("42")
    assert not status.master_present
    assert status.renditions[0].name == "original-1080p"
    assert status.renditions[0].local_segments == 10
    assert status.renditions[0].remote_segments == 9
    assert not status.complete

def test_run_batch(orchestrator, catalog, stocked_store, events):
    catalog.upsert(CatalogEntry(asset_id="43", source_path="movies/43.mp4"))
    stocked_store.objects["movies/43.mp4"] = {"body": SOURCE_BODY, "content_type": None, "cache_control": None}
    catalog.upsert(CatalogEntry(asset_id="44", source_path="movies/44.mp4", ready=True,
                                output_path="hls/44/playlist.m3u8"))
    catalog.upsert(CatalogEntry(asset_id="45", source_path="movies/45.mp4"))

    assert orchestrator.pending_assets() == ["42", "43", "45"]

    with patch("subprocess.Popen", side_effect=FakeFFmpeg()):
        jobs = orchestrator.run_batch(["42", "43", "44", "45"], batch_size=2)

    by_id = {j.asset_id: j for j in jobs}
    assert by_id["42"].status == JobStatus.COMPLETE
    assert by_id["43"].status == JobStatus.COMPLETE
    assert by_id["44"].skipped
    assert by_id["45"].status == JobStatus.FAILED
    finished = [e for e in events if isinstance(e, BatchFinished)][0]
    assert (finished.completed, finished.failed, finished.skipped) == (2, 1, 1)
    assert orchestrator.pending_assets() == ["45"]

def test_run_batch_reports_locked_asset_as_failed(orchestrator):
    with orchestrator.workspaces.lock("42"):
        jobs = orchestrator.run_batch(["42"], batch_size=1)
    assert jobs[0].status == JobStatus.FAILED
    assert "already being converted" in jobs[0].error_message
