import logging
from abrpub.infrastructure.event_bus import EventBus
from abrpub.ui.state import UIState
from abrpub.domain.events import (
    BatchStarted, BatchFinished,
    JobStarted, JobStageChanged, JobCompleted, JobFailed,
    EncodeStrategyFailed, PublishProgress, UploadSkipped,
)

logger = logging.getLogger(__name__)

class UIManager:
    """Subscribes to EventBus and updates UIState."""

    def __init__(self, bus: EventBus, state: UIState):
        self.bus = bus
        self.state = state
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(BatchStarted, self.on_batch_started)
        self.bus.subscribe(BatchFinished, self.on_batch_finished)
        self.bus.subscribe(JobStarted, self.on_job_started)
        self.bus.subscribe(JobStageChanged, self.on_stage_changed)
        self.bus.subscribe(JobCompleted, self.on_job_completed)
        self.bus.subscribe(JobFailed, self.on_job_failed)
        self.bus.subscribe(EncodeStrategyFailed, self.on_strategy_failed)
        self.bus.subscribe(PublishProgress, self.on_publish_progress)
        self.bus.subscribe(UploadSkipped, self.on_upload_skipped)

    def on_batch_started(self, event: BatchStarted):
        self.state.start_batch(len(event.asset_ids), event.batch_size)

    def on_batch_finished(self, event: BatchFinished):
        with self.state._lock:
            self.state.batch_finished = True
            self.state.skipped_count = event.skipped
            self.state.last_message = f"Batch done: {event.completed} ok, {event.failed} failed"

    def on_job_started(self, event: JobStarted):
        self.state.add_active_job(event.job)

    def on_stage_changed(self, event: JobStageChanged):
        self.state.set_stage(event.job.asset_id, event.stage)

    def on_job_completed(self, event: JobCompleted):
        self.state.add_completed_job(event.job)

    def on_job_failed(self, event: JobFailed):
        logger.debug(f"UI: {event.job.asset_id} failed: {event.error_message}")
        self.state.add_failed_job(event.job)

    def on_strategy_failed(self, event: EncodeStrategyFailed):
        with self.state._lock:
            self.state.strategy_fallbacks += 1
            self.state.last_message = f"{event.rendition}: {event.strategy} strategy failed"

    def on_publish_progress(self, event: PublishProgress):
        self.state.set_upload_progress(event.asset_id, f"{event.rendition} {event.uploaded}/{event.total}")

    def on_upload_skipped(self, event: UploadSkipped):
        with self.state._lock:
            self.state.uploads_skipped += 1
            self.state.last_message = f"Skipped {event.key}"
