"""sync.so lip-sync (slug `sync_labs`)."""

import logging

from ..errors import VendorRejected
from ..models import LipSyncRequest, LipSyncResult
from .base import VendorAdapter

logger = logging.getLogger(__name__)


class SyncLabsAdapter(VendorAdapter):
    vendor = "sync_labs"

    async def invoke(self, request: LipSyncRequest, api_key: str) -> LipSyncResult:
        cfg = self.config
        headers = {"x-api-key": api_key}
        payload = {
            "model": cfg.model,
            "input": [
                {"type": "video", "url": request.video_url},
                {"type": "audio", "url": request.audio_url},
            ],
            "options": {"output_format": "mp4", "active_speaker": True},
        }

        data = await self.http.submit_json(f"{cfg.api_base}/generate", headers=headers, json=payload)
        job_id = data.get("id")
        if not job_id:
            raise self.malformed("no job id in sync.so response", data)
        logger.info(f"sync.so job submitted: {job_id}")

        async def check(attempt: int):
            job = await self.http.request_json("GET", f"{cfg.api_base}/generate/{job_id}", headers=headers)
            status = job.get("status")
            if status == "COMPLETED":
                if not job.get("outputUrl") and not job.get("output_url"):
                    raise self.malformed("lip-sync completed without output URL", job)
                return job.get("outputUrl") or job.get("output_url")
            if status in ("FAILED", "REJECTED", "CANCELED"):
                raise VendorRejected(f"lip-sync job {job_id} {status.lower()}: {job.get('error') or ''}", vendor=self.vendor)
            return None

        video_url = await self.http.poll(
            check, interval=cfg.poll_interval, max_attempts=cfg.max_poll_attempts, what="lip-sync job"
        )
        return LipSyncResult(video_url=video_url)
