import concurrent.futures
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from abrpub.config.models import AppConfig
from abrpub.domain.errors import (
    CatalogError,
    ConversionError,
    DownloadFailure,
    PublishIncomplete,
    WorkspaceLocked,
    WorkspaceNotFound,
)
from abrpub.domain.events import (
    BatchFinished,
    BatchStarted,
    JobCompleted,
    JobFailed,
    JobStageChanged,
    JobStarted,
)
from abrpub.domain.models import (
    ConversionJob,
    JobStatus,
    MASTER_PLAYLIST,
    QualityLevel,
    RENDITION_PLAYLIST,
    RenditionOutput,
)
from abrpub.infrastructure.catalog import SqliteCatalog
from abrpub.infrastructure.event_bus import EventBus
from abrpub.infrastructure.ffmpeg import SegmentEncoder
from abrpub.infrastructure.ffprobe import FFprobeAdapter
from abrpub.infrastructure.object_store import STORE_ERRORS
from abrpub.infrastructure.playlist import compose_master, parse_master_playlist, verify_rendition_dir
from abrpub.infrastructure.webhook import WebhookNotifier
from abrpub.infrastructure.workspace import WorkspaceManager
from abrpub.pipeline.ladder import LadderPlanner
from abrpub.pipeline.publisher import Publisher, RemoteStatus


class Orchestrator:
    """Runs conversion jobs: download, encode, publish, record, notify."""

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        catalog: SqliteCatalog,
        store,
        ffprobe_adapter: FFprobeAdapter,
        encoder: SegmentEncoder,
        publisher: Publisher,
        notifier: WebhookNotifier,
        workspaces: Optional[WorkspaceManager] = None,
        planner: Optional[LadderPlanner] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.catalog = catalog
        self.store = store
        self.ffprobe_adapter = ffprobe_adapter
        self.encoder = encoder
        self.publisher = publisher
        self.notifier = notifier
        self.workspaces = workspaces or WorkspaceManager(config.general.workspace_dir)
        self.planner = planner or LadderPlanner(config.ladder)
        self.policy = publisher.policy
        self.logger = logging.getLogger(__name__)

    def _advance(self, job: ConversionJob, stage: JobStatus, persist: bool = True):
        job.transition(stage)
        self.logger.info(f"{job.asset_id}: {stage.value}")
        if persist:
            self.catalog.set_status(job.asset_id, stage)
        self.event_bus.publish(JobStageChanged(job=job, stage=stage))

    def _download(self, source_key: str, destination: Path):
        """Streams the source object into the workspace unless an intact copy is already there."""
        cfg = self.config.download
        try:
            remote_size = self.store.head(source_key)
        except STORE_ERRORS as e:
            raise DownloadFailure(source_key, f"head failed: {e}") from e
        if remote_size is None:
            raise DownloadFailure(source_key, "source object not found")

        if destination.exists() and destination.stat().st_size == remote_size:
            self.logger.info(f"Source already in workspace ({remote_size} bytes), skipping download")
            return

        retrying = Retrying(
            stop=stop_after_attempt(cfg.max_attempts),
            wait=wait_exponential(multiplier=cfg.backoff_initial_seconds,
                                  min=cfg.backoff_initial_seconds, max=cfg.backoff_max_seconds),
            retry=retry_if_exception_type(STORE_ERRORS),
            reraise=True,
        )
        try:
            written = retrying(self.store.download_to, source_key, destination, cfg.chunk_size)
        except STORE_ERRORS as e:
            raise DownloadFailure(source_key, str(e)) from e
        if written != remote_size:
            raise DownloadFailure(source_key, f"got {written} bytes, expected {remote_size}")
        self.logger.info(f"Downloaded {source_key} ({written} bytes)")

    def _publish_and_finish(self, job: ConversionJob, outputs: List[RenditionOutput], master: Path,
                            source_key: Optional[str], overwrite: bool = False):
        report = self.publisher.publish(outputs, master, job.asset_id, overwrite=overwrite)
        job.uploaded_objects = len(report.uploaded)
        if not report.complete:
            raise PublishIncomplete(report.prefix, report.missing)

        job.output_path = self.policy.master_key(job.asset_id)
        self.catalog.mark_ready(job.asset_id, job.output_path)

        if self.config.general.delete_original and source_key:
            try:
                self.store.delete(source_key)
            except STORE_ERRORS as e:
                self.logger.warning(f"{job.asset_id}: could not delete original {source_key}: {e}")

        job.transition(JobStatus.COMPLETE)
        if job.workspace and not self.config.general.keep_workspace_on_success:
            self.workspaces.cleanup_stale(job.asset_id)

    def _run_pipeline(self, job: ConversionJob, source_key: str, include_lower_rendition: bool,
                      force: bool = False):
        workspace = job.workspace
        output_dir = self.workspaces.output_dir(workspace)

        self._advance(job, JobStatus.DOWNLOADING, persist=False)
        source_path = self.workspaces.source_path(workspace, source_key)
        job.source_path = source_path
        self._download(source_key, source_path)

        self._advance(job, JobStatus.ENCODING)
        source_info = self.ffprobe_adapter.get_source_info(source_path)
        ladder = self.planner.plan(source_info, include_lower_rendition)
        outputs = self.encoder.encode_ladder(
            source_path, ladder, self.config.general.segment_duration, output_dir, source_info, job.asset_id
        )
        master = compose_master(ladder, output_dir)

        self._advance(job, JobStatus.PUBLISHING)
        self._publish_and_finish(job, outputs, master, source_key, overwrite=force)

    def _handle_failure(self, job: ConversionJob, error: Exception):
        stage = job.status.value
        self.logger.error(
            f"{job.asset_id}: failed during {stage} "
            f"(workspace={job.workspace}, remote={self.policy.prefix_for(job.asset_id)}): {error}"
        )
        job.fail(str(error))
        try:
            self.catalog.mark_failed(job.asset_id, str(error))
        except CatalogError as e:
            self.logger.warning(f"{job.asset_id}: could not record failure in catalog: {e}")

    def _finish(self, job: ConversionJob):
        job.finish_clock()
        if job.status == JobStatus.COMPLETE:
            self.logger.info(f"{job.asset_id}: complete in {job.processing_time_ms} ms -> {job.output_path}")
            self.event_bus.publish(JobCompleted(job=job))
        else:
            self.event_bus.publish(JobFailed(job=job, error_message=job.error_message or "unknown error"))
        self.notifier.notify_job(job)

    def _locked_out(self, job: ConversionJob, error: WorkspaceLocked):
        # another invocation owns the asset, so its catalog row is left alone
        self.logger.warning(f"{job.asset_id}: {error}")
        job.fail(str(error))
        self._finish(job)

    def convert(self, asset_id: str, force: bool = False, include_lower_rendition: Optional[bool] = None) -> ConversionJob:
        """Converts one asset end to end. Failures end in a FAILED job, never an exception."""
        if include_lower_rendition is None:
            include_lower_rendition = self.config.general.include_lower_rendition
        job = ConversionJob(asset_id=asset_id)

        entry = self.catalog.get(asset_id)
        if entry is not None:
            job.title = entry.title
        if entry is not None and entry.ready and entry.has_output_path and not force:
            self.logger.info(f"{asset_id}: already converted at {entry.output_path}, skipping")
            job.output_path = entry.output_path
            job.skipped = True
            job.transition(JobStatus.COMPLETE)
            job.finish_clock()
            return job

        try:
            with self.workspaces.lock(asset_id):
                self.event_bus.publish(JobStarted(job=job))
                try:
                    if entry is None:
                        raise CatalogError(asset_id, "no catalog row")
                    if not entry.source_path:
                        raise CatalogError(asset_id, "catalog row has no source path")
                    source_key = self.policy.normalize_source_key(entry.source_path)
                    job.source_key = source_key

                    workspace = self.workspaces.find_latest(asset_id)
                    if workspace:
                        self.logger.info(f"{asset_id}: resuming from workspace {workspace}")
                    else:
                        workspace = self.workspaces.allocate(asset_id)
                    job.workspace = workspace

                    self._run_pipeline(job, source_key, include_lower_rendition, force=force)
                except Exception as e:
                    self._handle_failure(job, e)
                self._finish(job)
        except WorkspaceLocked as e:
            self._locked_out(job, e)
        return job

    def load_outputs(self, output_dir: Path) -> Tuple[List[RenditionOutput], Path]:
        """Rebuilds rendition outputs from an encoded workspace via its master playlist."""
        master = output_dir / MASTER_PLAYLIST
        if not master.exists():
            raise ConversionError(f"No master playlist in {output_dir}")
        outputs = []
        for entry in parse_master_playlist(master):
            directory = output_dir / entry.name
            check = verify_rendition_dir(directory, min_segments=1, require_endlist=True)
            if not check.valid:
                raise ConversionError(f"Rendition {entry.name} in {output_dir} is not complete: {check.reason}")
            kbps = max(1, entry.bandwidth // 1000)
            level = QualityLevel(
                name=entry.name, width=entry.width, height=entry.height,
                video_bitrate=kbps, max_bitrate=kbps, buffer_size=kbps, audio_bitrate=0,
                is_original=entry.name.startswith("original"), encode_audio=False,
            )
            outputs.append(RenditionOutput(
                level=level, directory=directory, playlist_path=directory / RENDITION_PLAYLIST,
                segments=check.segments, strategy="reused",
            ))
        if not outputs:
            raise ConversionError(f"Master playlist in {output_dir} lists no renditions")
        return outputs, master

    def resume(self, asset_id: str) -> ConversionJob:
        """Publishes an already-encoded workspace left behind by an earlier run."""
        job = ConversionJob(asset_id=asset_id)
        try:
            with self.workspaces.lock(asset_id):
                self.event_bus.publish(JobStarted(job=job))
                try:
                    workspace = self.workspaces.find_latest(asset_id, require_playlists=True)
                    if workspace is None:
                        raise WorkspaceNotFound(asset_id, str(self.workspaces.root))
                    job.workspace = workspace
                    entry = self.catalog.require(asset_id)
                    job.title = entry.title
                    source_key = self.policy.normalize_source_key(entry.source_path) if entry.source_path else None
                    job.source_key = source_key

                    outputs, master = self.load_outputs(self.workspaces.output_dir(workspace))
                    self._advance(job, JobStatus.PUBLISHING)
                    self._publish_and_finish(job, outputs, master, source_key)
                except Exception as e:
                    self._handle_failure(job, e)
                self._finish(job)
        except WorkspaceLocked as e:
            self._locked_out(job, e)
        return job

    def status(self, asset_id: str) -> RemoteStatus:
        outputs = None
        workspace = self.workspaces.find_latest(asset_id, require_playlists=True)
        if workspace is not None:
            try:
                outputs, _ = self.load_outputs(self.workspaces.output_dir(workspace))
            except ConversionError as e:
                self.logger.info(f"{asset_id}: local workspace not usable for comparison: {e}")
        return self.publisher.status(asset_id, outputs)

    def pending_assets(self) -> List[str]:
        return [entry.asset_id for entry in self.catalog.list_pending()]

    def run_batch(self, asset_ids: List[str], batch_size: Optional[int] = None, force: bool = False,
                  include_lower_rendition: Optional[bool] = None) -> List[ConversionJob]:
        """Converts assets with at most batch_size jobs in flight."""
        batch_size = batch_size or self.config.general.batch_size
        self.event_bus.publish(BatchStarted(asset_ids=list(asset_ids), batch_size=batch_size))
        jobs: List[ConversionJob] = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=batch_size) as executor:
            futures = {
                executor.submit(self.convert, asset_id, force, include_lower_rendition): asset_id
                for asset_id in asset_ids
            }
            for future in concurrent.futures.as_completed(futures):
                asset_id = futures[future]
                try:
                    jobs.append(future.result())
                except ConversionError as e:
                    self.logger.error(f"{asset_id}: {e}")
                    job = ConversionJob(asset_id=asset_id)
                    job.fail(str(e))
                    jobs.append(job)

        completed = sum(1 for j in jobs if j.status == JobStatus.COMPLETE and not j.skipped)
        skipped = sum(1 for j in jobs if j.skipped)
        failed = sum(1 for j in jobs if j.status == JobStatus.FAILED)
        self.event_bus.publish(BatchFinished(completed=completed, failed=failed, skipped=skipped))
        self.logger.info(f"Batch finished: {completed} complete, {failed} failed, {skipped} skipped")
        return jobs
