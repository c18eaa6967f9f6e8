"""OpenAI chat completions (slugs `openai`, `openai-gpt4`)."""

import logging

from ..models import ChatRequest, ChatResult
from .base import VendorAdapter, dig

logger = logging.getLogger(__name__)


class OpenAIChatAdapter(VendorAdapter):
    vendor = "openai"

    async def invoke(self, request: ChatRequest, api_key: str) -> ChatResult:
        payload = {
            "model": self.config.model,
            "messages": [m.model_dump() for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.json_output:
            payload["response_format"] = {"type": "json_object"}

        logger.info(f"OpenAI request: model={self.config.model}, purpose={request.purpose}")
        data = await self.http.request_json(
            "POST",
            self.config.api_url,
            headers={"Authorization": f"Bearer {api_key}"},
            json=payload,
        )

        content = dig(data, "choices", 0, "message", "content")
        if not isinstance(content, str) or not content.strip():
            raise self.malformed("no message content in completion", data)

        return ChatResult(content=content, model=data.get("model") or self.config.model)
