"""Beatoven soundtrack generation (slug `beatoven`)."""

from ..models import MusicRequest, MusicResult
from .base import VendorAdapter, dig


class BeatovenMusicAdapter(VendorAdapter):
    vendor = "beatoven"

    async def invoke(self, request: MusicRequest, api_key: str) -> MusicResult:
        data = await self.http.submit_json(
            self.config.api_url,
            headers={"Authorization": f"Bearer {api_key}"},
            json={
                "genre": request.genre,
                "duration": request.duration_seconds,
                "mood": request.mood,
            },
        )
        url = data.get("audio_url") or data.get("url") or dig(data, "track", "url")
        if not url:
            raise self.malformed("no audio URL in Beatoven response", data)
        return MusicResult(audio_url=url)
