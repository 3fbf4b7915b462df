"""
Resumable publisher.

Every run starts from a fresh listing of the destination prefix and uploads
only what the listing lacks, so re-running publish on the same workspace is
the crash-recovery path. Nothing about earlier runs is remembered locally.
A forced re-encode publishes with overwrite and replaces every object.
"""
import concurrent.futures
import logging
import time
from collections import defaultdict
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from abrpub.config.models import PublisherConfig
from abrpub.domain.events import PublishProgress, UploadSkipped
from abrpub.domain.models import (
    AssetPathPolicy,
    PublishManifest,
    RENDITION_PLAYLIST,
    RenditionOutput,
    SEGMENT_RE,
)
from abrpub.infrastructure.event_bus import EventBus
from abrpub.infrastructure.object_store import STORE_ERRORS

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/mp2t"


class UploadTask(BaseModel):
    path: Path
    key: str
    content_type: str
    cache_control: Optional[str] = None
    rendition: Optional[str] = None


class PublishReport(BaseModel):
    asset_id: str
    prefix: str
    uploaded: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    already_present: int = 0
    bytes_uploaded: int = 0
    remote_segment_counts: Dict[str, int] = Field(default_factory=dict)
    missing: List[str] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing


class RenditionStatus(BaseModel):
    name: str
    local_segments: Optional[int] = None
    remote_segments: int = 0
    playlist_present: bool = False

    @property
    def complete(self) -> bool:
        if self.local_segments is None:
            return self.playlist_present and self.remote_segments > 0
        return self.playlist_present and self.remote_segments >= self.local_segments


class RemoteStatus(BaseModel):
    asset_id: str
    prefix: str
    master_present: bool = False
    renditions: List[RenditionStatus] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.master_present and bool(self.renditions) and all(r.complete for r in self.renditions)

    @property
    def remote_segments(self) -> int:
        return sum(r.remote_segments for r in self.renditions)


class Publisher:
    """Reconciles a local HLS tree with the object store."""

    def __init__(
        self,
        store,
        config: PublisherConfig,
        event_bus: Optional[EventBus] = None,
        policy: Optional[AssetPathPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.config = config
        self.event_bus = event_bus
        self.policy = policy or AssetPathPolicy()
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

    def _publish_event(self, event):
        if self.event_bus is not None:
            self.event_bus.publish(event)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(
                multiplier=self.config.backoff_initial_seconds,
                min=self.config.backoff_initial_seconds,
                max=self.config.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(STORE_ERRORS),
            sleep=self._sleep,
            reraise=True,
            before_sleep=self._log_retry,
        )

    def _log_retry(self, retry_state):
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.debug(f"Upload attempt {retry_state.attempt_number} failed ({exc}), retrying")

    def _upload_one(self, task: UploadTask) -> Tuple[UploadTask, Optional[int], Optional[str]]:
        """Returns (task, bytes sent, error). A task that exhausts retries is skipped, not raised."""
        try:
            sent = self._retrying()(self.store.put_file, task.path, task.key, task.content_type, task.cache_control)
        except STORE_ERRORS as e:
            return task, None, str(e)
        return task, sent, None

    def _upload_batched(self, tasks: List[UploadTask], report: PublishReport, label: str, already: int = 0):
        """Uploads tasks in fixed-size concurrent batches with a pause between batches."""
        if not tasks:
            return
        total = len(tasks) + already
        done = already
        batch_size = self.config.batch_size
        with concurrent.futures.ThreadPoolExecutor(max_workers=batch_size) as executor:
            for start in range(0, len(tasks), batch_size):
                if start:
                    self._sleep(self.config.batch_delay_seconds)
                batch = tasks[start:start + batch_size]
                futures = [executor.submit(self._upload_one, task) for task in batch]
                for future in futures:
                    task, sent, error = future.result()
                    if error is None:
                        report.uploaded.append(task.key)
                        report.bytes_uploaded += sent or 0
                        done += 1
                    else:
                        report.skipped.append(task.key)
                        self.logger.error(f"Skipping {task.key} after {self.config.max_attempts} attempts: {error}")
                        self._publish_event(UploadSkipped(asset_id=report.asset_id, key=task.key, reason=error))
                self._publish_event(PublishProgress(
                    asset_id=report.asset_id, rendition=label, uploaded=done, total=total
                ))
                self.logger.info(f"{label}: {done}/{total} objects present after batch {start // batch_size + 1}")

    def _list(self, prefix: str) -> Set[str]:
        return set(self._retrying()(self.store.list_keys, prefix))

    def _confirm_missing(self, keys: Iterable[str]) -> List[str]:
        """Listings can lag recent writes; head each key the listing did not show."""
        missing = []
        for key in keys:
            try:
                size = self._retrying()(self.store.head, key)
            except STORE_ERRORS as e:
                self.logger.warning(f"Could not confirm {key}: {e}")
                size = None
            if size is None:
                missing.append(key)
        return missing

    def publish(self, outputs: List[RenditionOutput], master_playlist: Path, asset_id: str,
                overwrite: bool = False) -> PublishReport:
        """
        Uploads whatever of the local tree the store does not already have.

        With overwrite every object is uploaded again regardless of the
        listing, which replaces the tree of an earlier, different encode.

        The master playlist goes up last, and only when every rendition
        playlist and segment is in the store, so a published master never
        points at a partial rendition. Returns a report; report.complete is
        False when any manifest key is still absent after the final re-list.
        Deciding whether that fails the job is up to the caller.
        """
        manifest = PublishManifest.from_outputs(asset_id, outputs, self.policy)
        report = PublishReport(asset_id=asset_id, prefix=manifest.prefix)

        remote = set() if overwrite else self._list(manifest.prefix)
        mode = "overwriting" if overwrite else f"{len(remote)} objects already"
        self.logger.info(f"PUBLISH_START: {asset_id} {mode} under {manifest.prefix}")

        playlist_tasks = []
        for output in outputs:
            key = manifest.playlist_keys[output.name]
            if key in remote:
                report.already_present += 1
                continue
            playlist_tasks.append(UploadTask(
                path=output.playlist_path, key=key, rendition=output.name,
                content_type=PLAYLIST_CONTENT_TYPE, cache_control=self.config.playlist_cache_control,
            ))
        self._upload_batched(playlist_tasks, report, "playlists")

        for output in outputs:
            keys = manifest.segment_keys[output.name]
            tasks = []
            for path, key in zip(output.segments, keys):
                if key in remote:
                    continue
                tasks.append(UploadTask(
                    path=path, key=key, rendition=output.name,
                    content_type=SEGMENT_CONTENT_TYPE, cache_control=self.config.segment_cache_control,
                ))
            present = len(keys) - len(tasks)
            report.already_present += present
            self.logger.info(f"{output.name}: {present}/{len(keys)} segments present, uploading {len(tasks)}")
            self._upload_batched(tasks, report, output.name, already=present)

        master_uploaded = False
        if report.skipped:
            self.logger.warning(
                f"{asset_id}: holding back master playlist, {len(report.skipped)} objects were not uploaded"
            )
        elif manifest.master_key in remote:
            report.already_present += 1
        else:
            self._upload_batched([UploadTask(
                path=master_playlist, key=manifest.master_key,
                content_type=PLAYLIST_CONTENT_TYPE, cache_control=self.config.master_cache_control,
            )], report, "master")
            master_uploaded = manifest.master_key in report.uploaded

        final = self._list(manifest.prefix)
        missing = set(self._confirm_missing(manifest.missing_from(final)))
        if overwrite:
            # stale copies from the earlier encode still list as present
            missing.update(report.skipped)
            if not master_uploaded:
                missing.add(manifest.master_key)
        report.missing = [key for key in manifest.all_keys() if key in missing]
        for output in outputs:
            report.remote_segment_counts[output.name] = sum(
                1 for key in manifest.segment_keys[output.name] if key not in missing
            )

        if report.complete:
            self.logger.info(
                f"PUBLISH_END: {asset_id} uploaded={len(report.uploaded)} already_present={report.already_present} "
                f"bytes={report.bytes_uploaded}"
            )
        else:
            self.logger.error(
                f"PUBLISH_INCOMPLETE: {asset_id} {len(report.missing)} objects missing under {manifest.prefix} "
                f"(skipped={len(report.skipped)})"
            )
        return report

    def status(self, asset_id: str, outputs: Optional[List[RenditionOutput]] = None) -> RemoteStatus:
        """Compares remote contents with local outputs, or summarises the remote tree alone."""
        prefix = self.policy.prefix_for(asset_id)
        remote = self._list(prefix)
        result = RemoteStatus(asset_id=asset_id, prefix=prefix,
                              master_present=self.policy.master_key(asset_id) in remote)

        remote_segments: Dict[str, int] = defaultdict(int)
        remote_playlists: Set[str] = set()
        for key in remote:
            relative = self.policy.relative(asset_id, key)
            if "/" not in relative:
                continue
            rendition, filename = relative.split("/", 1)
            if filename == RENDITION_PLAYLIST:
                remote_playlists.add(rendition)
            elif SEGMENT_RE.match(filename):
                remote_segments[rendition] += 1

        if outputs is not None:
            names = [o.name for o in outputs]
            local = {o.name: o.segment_count for o in outputs}
        else:
            names = sorted(set(remote_segments) | remote_playlists)
            local = {}

        for name in names:
            result.renditions.append(RenditionStatus(
                name=name,
                local_segments=local.get(name),
                remote_segments=remote_segments.get(name, 0),
                playlist_present=name in remote_playlists,
            ))
        return result
