"""
Conversion error types.

All errors inherit from ConversionError so the job coordinator can catch
everything raised below it in one place.
"""
from typing import List, Optional


class ConversionError(Exception):
    """Base exception for all conversion pipeline failures."""
    pass


class ProbeFailure(ConversionError):
    """Hardware probing failed. Never fatal, the prober degrades to software."""
    pass


class SourceAnalysisFailure(ConversionError):
    """Source dimensions, bitrate or duration could not be determined."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Cannot analyse {source}: {reason}")


class EncodeError(ConversionError):
    """Raised once every encode strategy for a rendition has failed."""

    def __init__(self, rendition: str, attempts: List[str]):
        self.rendition = rendition
        self.attempts = attempts
        detail = "; ".join(attempts) if attempts else "no strategy attempted"
        super().__init__(f"All encode strategies failed for {rendition}: {detail}")


EncodeFailure = EncodeError


class UploadFailure(ConversionError):
    """A single object could not be uploaded after all retries."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Upload of {key} failed: {reason}")


class PublishIncomplete(UploadFailure):
    """Publish finished but required objects are missing from the store."""

    def __init__(self, prefix: str, missing: List[str]):
        self.prefix = prefix
        self.missing = missing
        preview = ", ".join(missing[:5])
        more = f" (+{len(missing) - 5} more)" if len(missing) > 5 else ""
        super().__init__(prefix, f"{len(missing)} objects missing: {preview}{more}")


class DownloadFailure(ConversionError):
    """Source download failed after exhausting retries."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Download of {key} failed: {reason}")


class NotificationFailure(ConversionError):
    """Webhook delivery failed. Logged only."""
    pass


class CatalogError(ConversionError):
    """The catalog has no usable row for an asset."""

    def __init__(self, asset_id: str, reason: str):
        self.asset_id = asset_id
        super().__init__(f"Catalog error for {asset_id}: {reason}")


class InvalidStateTransition(ConversionError):
    """Raised when a job is moved along an edge the lifecycle does not allow."""

    def __init__(self, asset_id: str, current: str, target: str):
        self.asset_id = asset_id
        self.current = current
        self.target = target
        super().__init__(f"Invalid job state transition for {asset_id}: {current} -> {target}")


class WorkspaceLocked(ConversionError):
    """Another local invocation holds the workspace lock for this asset."""

    def __init__(self, asset_id: str, lock_path: Optional[str] = None):
        self.asset_id = asset_id
        self.lock_path = lock_path
        super().__init__(f"Asset {asset_id} is already being converted (lock: {lock_path})")


class WorkspaceNotFound(ConversionError):
    """No local workspace with encoded output exists for the asset."""

    def __init__(self, asset_id: str, root: str):
        self.asset_id = asset_id
        super().__init__(f"No workspace with encoded output for {asset_id} under {root}")
