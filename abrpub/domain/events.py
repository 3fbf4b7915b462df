from typing import List, Optional
from pydantic import BaseModel
from .models import ConversionJob, JobStatus, RenditionOutput

class Event(BaseModel):
    """Base class for all domain events."""
    pass

class JobEvent(Event):
    job: ConversionJob

class JobStarted(JobEvent):
    pass

class JobStageChanged(JobEvent):
    stage: JobStatus

class JobCompleted(JobEvent):
    pass

class JobFailed(JobEvent):
    error_message: str

class RenditionEncoded(Event):
    asset_id: str
    output: RenditionOutput

class EncodeStrategyFailed(Event):
    rendition: str
    strategy: str
    returncode: Optional[int] = None
    reason: str

class PublishProgress(Event):
    asset_id: str
    rendition: str
    uploaded: int
    total: int

class UploadSkipped(Event):
    asset_id: str
    key: str
    reason: str

class BatchStarted(Event):
    asset_ids: List[str]
    batch_size: int

class BatchFinished(Event):
    completed: int
    failed: int
    skipped: int = 0
