import logging
from typing import Any, Dict, Optional
import requests
from abrpub.domain.errors import NotificationFailure
from abrpub.domain.models import ConversionJob, JobStatus


def build_payload(job: ConversionJob) -> Dict[str, Any]:
    """Terminal-state notification body."""
    payload: Dict[str, Any] = {
        "assetId": job.asset_id,
        "status": "completed" if job.status == JobStatus.COMPLETE else "failed",
        "processingTimeMs": job.processing_time_ms or 0,
    }
    if job.output_path:
        payload["outputPath"] = job.output_path
    if job.error_message:
        payload["error"] = job.error_message
    return payload


class WebhookNotifier:
    """Best-effort POST of job outcomes. Never raises."""

    def __init__(self, url: Optional[str], timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logging.getLogger(__name__)

    def notify(self, payload: Dict[str, Any]) -> bool:
        if not self.url:
            self.logger.debug("No webhook configured, skipping notification")
            return False
        try:
            response = self.session.post(
                self.url,
                json=payload,
                headers={"content-type": "application/json"},
                timeout=self.timeout,
            )
            if not 200 <= response.status_code < 300:
                raise NotificationFailure(f"webhook returned HTTP {response.status_code}")
        except (requests.RequestException, NotificationFailure) as e:
            self.logger.warning(f"Webhook notification for {payload.get('assetId')} failed: {e}")
            return False
        self.logger.info(f"Webhook notified: {payload.get('assetId')} {payload.get('status')}")
        return True

    def notify_job(self, job: ConversionJob) -> bool:
        return self.notify(build_payload(job))
