"""
Runway video generation (slug `runway`).

Submits image_to_video when a reference frame is attached, text_to_video
otherwise, then polls /tasks/{id} until SUCCEEDED or FAILED.
"""

import logging

from ..errors import VendorRejected
from ..models import VideoRequest, VideoResult
from .base import VendorAdapter, dig

logger = logging.getLogger(__name__)

RUNWAY_DURATIONS = (5, 10)


class RunwayVideoAdapter(VendorAdapter):
    vendor = "runway"

    def _headers(self, api_key: str) -> dict:
        return {
            "Authorization": f"Bearer {api_key}",
            "X-Runway-Version": self.config.api_version,
        }

    async def invoke(self, request: VideoRequest, api_key: str) -> VideoResult:
        cfg = self.config
        duration = min(RUNWAY_DURATIONS, key=lambda d: abs(d - request.duration_seconds))
        payload = {
            "model": cfg.model,
            "promptText": request.prompt[:cfg.max_prompt_length],
            "ratio": cfg.ratio,
            "duration": duration,
            "watermark": False,
        }

        if request.reference_image_url and request.reference_weight > 0:
            endpoint = "image_to_video"
            payload["promptImage"] = request.reference_image_url
        else:
            endpoint = "text_to_video"

        logger.info(f"Runway {endpoint}: model={cfg.model}, duration={duration}s")
        data = await self.http.submit_json(
            f"{cfg.api_base}/{endpoint}", headers=self._headers(api_key), json=payload
        )
        task_id = data.get("id")
        if not task_id:
            raise self.malformed("no task id in Runway response", data)

        async def check(attempt: int):
            task = await self.http.request_json(
                "GET", f"{cfg.api_base}/tasks/{task_id}", headers=self._headers(api_key)
            )
            status = task.get("status")
            logger.info(f"Runway poll #{attempt + 1}: task={task_id} status={status}")
            if status == "SUCCEEDED":
                url = dig(task, "output", 0)
                if not url:
                    raise self.malformed("task succeeded without output", task)
                return url
            if status in ("FAILED", "CANCELLED"):
                raise VendorRejected(
                    f"task {task_id} failed: {task.get('failure') or 'unknown error'}",
                    vendor=self.vendor,
                )
            return None

        video_url = await self.http.poll(
            check, interval=cfg.poll_interval, max_attempts=cfg.max_poll_attempts, what="Runway task"
        )
        return VideoResult(video_url=video_url, duration_seconds=float(duration), task_id=task_id)
