"""
fal.ai adapters.

  FalImageAdapter        Flux text-to-image, or flux-lora when an identity
                         model is attached to the request.
  FalLoraTrainingAdapter Flux LoRA fast training with request polling.
"""

import logging

from ..errors import VendorRejected
from ..models import (
    IdentityTrainingRequest,
    IdentityTrainingResult,
    ImageRequest,
    ImageResult,
)
from .base import VendorAdapter, dig

logger = logging.getLogger(__name__)

FAL_QUEUE_BASE = "https://queue.fal.run"


def _auth(api_key: str) -> dict:
    return {"Authorization": f"Key {api_key}"}


def _image_urls(data: dict) -> list[str]:
    urls = []
    for image in data.get("images") or []:
        if isinstance(image, dict) and image.get("url"):
            urls.append(image["url"])
        elif isinstance(image, str):
            urls.append(image)
    return urls


class FalImageAdapter(VendorAdapter):
    vendor = "fal"

    async def invoke(self, request: ImageRequest, api_key: str) -> ImageResult:
        cfg = self.config
        payload = {
            "prompt": request.prompt,
            "image_size": request.image_size or cfg.image_size,
            "num_images": request.num_images,
            "num_inference_steps": cfg.num_inference_steps,
            "guidance_scale": cfg.guidance_scale,
        }
        if request.negative_prompt:
            payload["negative_prompt"] = request.negative_prompt

        url = cfg.api_url
        if request.identity:
            url = cfg.lora_api_url
            payload["loras"] = [{"path": request.identity.lora_url, "scale": request.identity.scale}]

        logger.info(f"fal image request: url={url}, num_images={request.num_images}, lora={bool(request.identity)}")
        data = await self.http.submit_json(url, headers=_auth(api_key), json=payload)

        urls = _image_urls(data)
        if not urls and data.get("request_id"):
            data = await self._wait_for_request(url, data["request_id"], api_key)
            urls = _image_urls(data)
        if not urls:
            raise self.malformed("no images in fal response", data)

        return ImageResult(urls=urls)

    async def _wait_for_request(self, model_url: str, request_id: str, api_key: str) -> dict:
        model_path = model_url.split("fal.run/", 1)[-1]
        status_url = f"{FAL_QUEUE_BASE}/{model_path}/requests/{request_id}/status"
        result_url = f"{FAL_QUEUE_BASE}/{model_path}/requests/{request_id}"

        async def check(attempt: int):
            status = await self.http.request_json("GET", status_url, headers=_auth(api_key))
            state = status.get("status")
            logger.info(f"fal image poll #{attempt + 1}: status={state}")
            if state == "COMPLETED":
                return await self.http.request_json("GET", result_url, headers=_auth(api_key))
            if state in ("FAILED", "ERROR"):
                raise VendorRejected(f"image request {request_id} failed", vendor=self.vendor)
            return None

        return await self.http.poll(check, interval=2.0, max_attempts=60, what="fal image request")


class FalLoraTrainingAdapter(VendorAdapter):
    vendor = "fal_lora"

    async def invoke(self, request: IdentityTrainingRequest, api_key: str) -> IdentityTrainingResult:
        cfg = self.config
        if not request.image_urls:
            raise VendorRejected("identity training needs at least one reference image", vendor=self.vendor)

        payload = {
            "images_data_url": request.image_urls,
            "trigger_word": request.trigger_word,
            "steps": request.steps or cfg.steps,
        }
        logger.info(
            f"fal LoRA training for character {request.character_id}: "
            f"{len(request.image_urls)} image(s), trigger={request.trigger_word}"
        )
        data = await self.http.submit_json(cfg.api_url, headers=_auth(api_key), json=payload)

        lora_url = self._lora_url(data)
        if lora_url:
            return IdentityTrainingResult(lora_url=lora_url, trigger_word=request.trigger_word)

        request_id = data.get("request_id")
        if not request_id:
            raise self.malformed("training response has neither weights nor request_id", data)

        status_url = f"{cfg.api_url}/requests/{request_id}"

        async def check(attempt: int):
            status = await self.http.request_json("GET", status_url, headers=_auth(api_key))
            state = status.get("status")
            logger.info(f"fal LoRA poll #{attempt + 1}: status={state}")
            if state == "COMPLETED":
                url = self._lora_url(status)
                if not url:
                    raise self.malformed("training completed without weights URL", status)
                return url
            if state == "FAILED":
                raise VendorRejected(
                    f"training failed: {status.get('error') or 'unknown error'}", vendor=self.vendor
                )
            return None

        lora_url = await self.http.poll(
            check, interval=cfg.poll_interval, max_attempts=cfg.max_poll_attempts, what="LoRA training"
        )
        return IdentityTrainingResult(lora_url=lora_url, trigger_word=request.trigger_word)

    @staticmethod
    def _lora_url(data: dict):
        return (
            dig(data, "diffusers_lora_file", "url")
            or dig(data, "output", "diffusers_lora_file", "url")
            or data.get("lora_url")
        )
