"""
Kie.ai Veo video generation (slugs `veo`, `kie`).

Submits to {api_base}/veo/generate and polls veo/record-info. Kie.ai reports
state in two ways that both have to be read:
  1. data.status      SUCCESS / GENERATING / PENDING / GENERATE_FAILED ...
  2. data.successFlag 0 (generating), 1 (success), 2 or 3 (failed)
"""

import logging
from typing import Optional

from ..errors import VendorRejected
from ..models import VideoRequest, VideoResult
from .base import VendorAdapter, dig

logger = logging.getLogger(__name__)

# Internal model IDs → Kie.ai API model names
MODEL_API_NAMES = {
    "veo-3.1-fast": "veo3_fast",
    "veo-3.1-quality": "veo3",
}

SUCCESS_STATES = ("SUCCESS", "success", "completed")
FAILED_STATES = ("GENERATE_FAILED", "CREATE_TASK_FAILED", "SENSITIVE_WORD_ERROR", "fail", "FAILED", "failed")


def normalize_status(record: dict) -> str:
    raw_status = record.get("status", "")
    success_flag = record.get("successFlag")
    if raw_status in SUCCESS_STATES or success_flag == 1:
        return "completed"
    if raw_status in FAILED_STATES or success_flag in (2, 3):
        return "failed"
    return "processing"


def extract_video_url(record: dict) -> Optional[str]:
    url = (
        record.get("video_url")
        or record.get("videoUrl")
        or record.get("resultUrl")
        or dig(record, "response", "resultUrls", 0)
    )
    if not url:
        works = record.get("works") or []
        if works and isinstance(works, list):
            url = dig(works[0], "resource", "resource")
    return url


class KieVideoAdapter(VendorAdapter):
    vendor = "kie"

    async def invoke(self, request: VideoRequest, api_key: str) -> VideoResult:
        cfg = self.config
        headers = {"Authorization": f"Bearer {api_key}"}
        payload = {
            "prompt": request.prompt,
            "aspectRatio": request.aspect_ratio,
        }
        if request.reference_image_url and request.reference_weight > 0:
            # REFERENCE_2_VIDEO only works with veo3_fast
            payload["mode"] = "REFERENCE_2_VIDEO"
            payload["model"] = "veo3_fast"
            payload["imageUrls"] = [request.reference_image_url]
        else:
            payload["model"] = MODEL_API_NAMES.get(cfg.model, cfg.model)

        logger.info(f"Kie.ai request: model={payload['model']}, mode={payload.get('mode', 'TEXT_2_VIDEO')}")
        data = await self.http.submit_json(f"{cfg.api_base}/veo/generate", headers=headers, json=payload)

        task_id = dig(data, "data", "taskId") or dig(data, "data", "task_id") or data.get("taskId")
        if not task_id:
            raise self.malformed("no taskId in Kie.ai response", data)

        async def check(attempt: int):
            status_data = await self.http.request_json(
                "GET", f"{cfg.api_base}/veo/record-info", headers=headers, params={"taskId": task_id}
            )
            record = status_data.get("data")
            if not isinstance(record, dict):
                record = {}
            status = normalize_status(record)
            logger.info(f"Veo poll #{attempt + 1}: task={task_id} status={status}")
            if status == "completed":
                url = extract_video_url(record)
                if not url:
                    raise self.malformed("Veo completed but no video URL", record)
                return url
            if status == "failed":
                raise VendorRejected(
                    f"Veo task {task_id} failed: {record.get('errorMessage') or record.get('message') or 'unknown'}",
                    vendor=self.vendor,
                )
            return None

        video_url = await self.http.poll(
            check, interval=cfg.poll_interval, max_attempts=cfg.max_poll_attempts, what="Veo task"
        )
        return VideoResult(
            video_url=video_url,
            duration_seconds=float(request.duration_seconds),
            task_id=task_id,
        )
