"""Google Gemini generateContent over REST (slug `gemini`)."""

import logging

from ..models import ChatRequest, ChatResult
from .base import VendorAdapter, dig

logger = logging.getLogger(__name__)


class GeminiChatAdapter(VendorAdapter):
    vendor = "gemini"

    def _api_url(self) -> str:
        return f"{self.config.api_base}/models/{self.config.model}:generateContent"

    async def invoke(self, request: ChatRequest, api_key: str) -> ChatResult:
        system_parts = [{"text": m.content} for m in request.messages if m.role == "system"]
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in request.messages
            if m.role != "system"
        ]

        generation_config = {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_tokens,
        }
        if request.json_output:
            generation_config["responseMimeType"] = "application/json"

        body: dict = {"contents": contents, "generationConfig": generation_config}
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}

        data = await self.http.request_json(
            "POST",
            self._api_url(),
            headers={"x-goog-api-key": api_key},
            json=body,
        )

        parts = dig(data, "candidates", 0, "content", "parts", default=[])
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        if not text.strip():
            raise self.malformed("no text in Gemini candidates", data)

        return ChatResult(content=text, model=self.config.model)
