import threading
from collections import deque
from datetime import datetime
from typing import Dict, List, Optional
from abrpub.domain.models import ConversionJob, JobStatus

class UIState:
    """Thread-safe state for the batch dashboard."""

    def __init__(self):
        self._lock = threading.RLock()

        # Counters
        self.completed_count = 0
        self.failed_count = 0
        self.skipped_count = 0
        self.strategy_fallbacks = 0
        self.uploads_skipped = 0

        # Jobs by asset id
        self.active_jobs: Dict[str, ConversionJob] = {}
        self.stages: Dict[str, JobStatus] = {}
        self.upload_progress: Dict[str, str] = {}
        self.recent_jobs = deque(maxlen=5)

        # Batch
        self.total_assets = 0
        self.batch_size = 0
        self.batch_start_time: Optional[datetime] = None
        self.batch_finished = False
        self.last_message = ""

    @property
    def finished_count(self) -> int:
        with self._lock:
            return self.completed_count + self.failed_count + self.skipped_count

    def start_batch(self, total: int, batch_size: int):
        with self._lock:
            self.total_assets = total
            self.batch_size = batch_size
            self.batch_start_time = datetime.now()
            self.batch_finished = False

    def add_active_job(self, job: ConversionJob):
        with self._lock:
            self.active_jobs[job.asset_id] = job
            self.stages[job.asset_id] = job.status

    def set_stage(self, asset_id: str, stage: JobStatus):
        with self._lock:
            self.stages[asset_id] = stage

    def set_upload_progress(self, asset_id: str, text: str):
        with self._lock:
            self.upload_progress[asset_id] = text

    def _finish(self, job: ConversionJob):
        self.active_jobs.pop(job.asset_id, None)
        self.stages.pop(job.asset_id, None)
        self.upload_progress.pop(job.asset_id, None)
        self.recent_jobs.appendleft(job)

    def add_completed_job(self, job: ConversionJob):
        with self._lock:
            self.completed_count += 1
            self._finish(job)

    def add_failed_job(self, job: ConversionJob):
        with self._lock:
            self.failed_count += 1
            self._finish(job)

    def active_snapshot(self) -> List[ConversionJob]:
        with self._lock:
            return list(self.active_jobs.values())
