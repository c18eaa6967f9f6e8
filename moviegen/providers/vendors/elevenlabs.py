"""
ElevenLabs text-to-speech (slug `elevenlabs`).

The vendor answers with raw audio bytes; they are uploaded to R2 through the
artifact store and the public URL is returned.
"""

import hashlib
import logging

from ..errors import ProviderConfigurationError
from ..models import AudioRequest, AudioResult
from .base import VendorAdapter

logger = logging.getLogger(__name__)

# ~128 kbps MP3
MP3_BYTES_PER_SECOND = 16000


class ElevenLabsAudioAdapter(VendorAdapter):
    vendor = "elevenlabs"

    async def invoke(self, request: AudioRequest, api_key: str) -> AudioResult:
        cfg = self.config
        if self.artifacts is None:
            raise ProviderConfigurationError("ElevenLabs needs an artifact store to publish audio")

        voice_id = request.voice_id or cfg.default_voice_id
        url = f"{cfg.api_base}/{cfg.api_version}/text-to-speech/{voice_id}"
        payload = {
            "text": request.text,
            "model_id": cfg.model_id,
            "voice_settings": {
                "stability": cfg.stability,
                "similarity_boost": cfg.similarity_boost,
            },
        }

        logger.info(f"ElevenLabs TTS: voice={voice_id}, {len(request.text)} chars")
        audio = await self.http.request_bytes(
            "POST",
            url,
            headers={"xi-api-key": api_key, "Accept": "audio/mpeg"},
            json=payload,
        )

        digest = hashlib.sha256(audio).hexdigest()[:16]
        public_url = await self.artifacts.upload(f"audio/voice/{voice_id}/{digest}.mp3", audio, "audio/mpeg")
        return AudioResult(audio_url=public_url, duration_seconds=round(len(audio) / MP3_BYTES_PER_SECOND, 2))
