"""
Assembly Resolver.

Turns the ordered set of completed scene clips into one playable
representation. Render backends are tried in order; each attempt returns a
typed AssemblyAttempt instead of raising, so choosing the fallback is a
decision over data:

  1. RenderServerBackend  FFmpeg render server  (ASSEMBLY_SERVER_URL)
  2. ShotstackBackend     Shotstack cloud edit  (SHOTSTACK_API_KEY)
  3. fallback             sequential playback manifest of per-scene clips

All backends share one bounded wait (`assembly_timeout_seconds`).
When it runs out the resolver degrades to the manifest; it never blocks job
completion indefinitely.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from ..providers.errors import AssemblyUnavailable, VendorError, VendorRejected
from ..providers.http import VendorHttpClient
from ..settings import AssemblyConfig
from .models import AssemblyStatus, Scene, SceneStatus

logger = logging.getLogger(__name__)

SECONDS_PER_SCENE = 10


class ClipRef(BaseModel):
    scene_number: int
    video_url: str
    is_continuation: bool = False
    # Dialogue lines to lay under the clip.
    audio_urls: list[str] = Field(default_factory=list)


class AttemptOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    NOT_CONFIGURED = "not_configured"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class AssemblyAttempt(BaseModel):
    backend: str
    outcome: AttemptOutcome
    video_url: Optional[str] = None
    detail: str = ""
    elapsed_seconds: float = 0.0


class AssemblyResult(BaseModel):
    real: bool
    status: AssemblyStatus
    video_url: Optional[str] = None
    manifest: list[ClipRef]
    attempts: list[AssemblyAttempt] = Field(default_factory=list)
    soundtrack_url: Optional[str] = None

    def metadata(self) -> dict:
        return {
            "assembly_status": self.status.value,
            "real_assembly": self.real,
            "scene_videos": [c.model_dump() for c in self.manifest],
            "soundtrack_url": self.soundtrack_url,
            "estimated_duration_seconds": len(self.manifest) * SECONDS_PER_SCENE,
            "assembly_attempts": [a.model_dump(mode="json") for a in self.attempts],
        }


def playable_clips(scenes: list[Scene]) -> list[ClipRef]:
    """Completed scenes with a usable URL, in scene order. Lip-synced cut wins."""
    clips = []
    for scene in sorted(scenes, key=lambda s: s.scene_number):
        url = scene.lip_synced_url or scene.video_url
        if scene.status != SceneStatus.COMPLETED or not url or not url.startswith(("http://", "https://")):
            continue
        clips.append(ClipRef(
            scene_number=scene.scene_number,
            video_url=url,
            is_continuation=scene.is_continuation,
            # A lip-synced cut already carries the first line.
            audio_urls=list(scene.audio_urls[1:] if scene.lip_synced_url else scene.audio_urls),
        ))
    return clips


# ── Backends ─────────────────────────────────────────────────────────────────

class RenderBackend:
    name = ""

    def is_configured(self) -> bool:
        raise NotImplementedError

    async def render(self, movie_id: str, clips: list[ClipRef], soundtrack_url: Optional[str] = None) -> str:
        """Return the URL of the rendered movie, or raise."""
        raise NotImplementedError

    async def attempt(
        self, movie_id: str, clips: list[ClipRef], budget: float, soundtrack_url: Optional[str] = None
    ) -> AssemblyAttempt:
        if not self.is_configured():
            return AssemblyAttempt(backend=self.name, outcome=AttemptOutcome.NOT_CONFIGURED)
        if budget <= 0:
            return AssemblyAttempt(backend=self.name, outcome=AttemptOutcome.TIMED_OUT, detail="no time left")

        started = time.monotonic()
        try:
            url = await asyncio.wait_for(self.render(movie_id, clips, soundtrack_url), timeout=budget)
        except asyncio.TimeoutError:
            outcome, url, detail = AttemptOutcome.TIMED_OUT, None, f"exceeded {budget:.0f}s"
        except (VendorError, AssemblyUnavailable) as e:
            outcome, url, detail = AttemptOutcome.FAILED, None, str(e)[:300]
        else:
            outcome, detail = AttemptOutcome.SUCCEEDED, ""
        return AssemblyAttempt(
            backend=self.name,
            outcome=outcome,
            video_url=url,
            detail=detail,
            elapsed_seconds=round(time.monotonic() - started, 2),
        )


class RenderServerBackend(RenderBackend):
    """
    FFmpeg render server.

      POST {base}/assemble        → {"success", "video_url"}
      POST {base}/extract-frames  → {"first", "last"}
    """

    name = "render_server"

    def __init__(self, config: AssemblyConfig, http: VendorHttpClient):
        self.config = config
        self.http = http

    def is_configured(self) -> bool:
        return bool(self.config.render_server_url)

    async def render(self, movie_id: str, clips: list[ClipRef], soundtrack_url: Optional[str] = None) -> str:
        base = self.config.render_server_url.rstrip("/")
        data = await self.http.request_json(
            "POST",
            f"{base}/assemble",
            json={
                "movie_id": movie_id,
                "videos": [
                    {"scene_number": c.scene_number, "video_url": c.video_url, "audio_urls": c.audio_urls}
                    for c in clips
                ],
                "music_url": soundtrack_url,
                "api_key": self.config.render_server_api_key or "",
            },
        )
        if not data.get("success") or not data.get("video_url"):
            raise AssemblyUnavailable(f"render server answered without a video: {data.get('error') or 'no url'}")
        return data["video_url"]

    async def extract_last_frame(self, video_url: str) -> str:
        base = self.config.render_server_url.rstrip("/")
        data = await self.http.request_json(
            "POST",
            f"{base}/extract-frames",
            json={"video_url": video_url, "api_key": self.config.render_server_api_key or ""},
        )
        frame = data.get("last")
        if not frame:
            raise AssemblyUnavailable(f"render server returned no last frame: {data.get('error') or 'no url'}")
        return frame


class ShotstackBackend(RenderBackend):
    """Shotstack edit API: submit a timeline, poll /render/{id} until done."""

    name = "shotstack"

    def __init__(self, config: AssemblyConfig, http: VendorHttpClient):
        self.config = config
        self.http = http

    def is_configured(self) -> bool:
        return bool(self.config.shotstack_api_key)

    def _timeline(self, clips: list[ClipRef], soundtrack_url: Optional[str] = None) -> dict:
        video, voices = [], []
        for index, clip in enumerate(clips):
            start = index * SECONDS_PER_SCENE
            entry = {
                "asset": {"type": "video", "src": clip.video_url},
                "start": start,
                "length": SECONDS_PER_SCENE,
            }
            if index > 0:
                entry["transition"] = {"in": "fade"}
            video.append(entry)

            # Lines share the scene's slot evenly, in script order.
            if clip.audio_urls:
                slot = SECONDS_PER_SCENE / len(clip.audio_urls)
                for position, url in enumerate(clip.audio_urls):
                    voices.append({
                        "asset": {"type": "audio", "src": url},
                        "start": round(start + position * slot, 2),
                        "length": round(slot, 2),
                    })

        # Shotstack draws the first track on top.
        timeline = {"tracks": [{"clips": video}] + ([{"clips": voices}] if voices else [])}
        if soundtrack_url:
            timeline["soundtrack"] = {"src": soundtrack_url, "effect": "fadeOut"}
        return timeline

    async def render(self, movie_id: str, clips: list[ClipRef], soundtrack_url: Optional[str] = None) -> str:
        headers = {"x-api-key": self.config.shotstack_api_key}
        base = self.config.shotstack_api_base.rstrip("/")
        data = await self.http.submit_json(
            f"{base}/render",
            headers=headers,
            json={
                "timeline": self._timeline(clips, soundtrack_url),
                "output": {"format": "mp4", "resolution": "hd", "fps": 30, "quality": "high"},
            },
        )
        render_id = (data.get("response") or {}).get("id")
        if not render_id:
            raise AssemblyUnavailable("Shotstack did not return a render id")
        logger.info(f"[{movie_id}] Shotstack render submitted: {render_id}")

        async def check(attempt: int):
            status = await self.http.request_json("GET", f"{base}/render/{render_id}", headers=headers)
            response = status.get("response") or {}
            state = response.get("status")
            if state == "done" and response.get("url"):
                return response["url"]
            if state == "failed":
                raise VendorRejected(f"render {render_id} failed: {response.get('error') or ''}", vendor="shotstack")
            return None

        max_polls = max(1, int(self.config.assembly_timeout_seconds / max(self.config.poll_interval, 0.1)))
        return await self.http.poll(check, interval=self.config.poll_interval, max_attempts=max_polls, what="Shotstack render")


# ── Resolver ─────────────────────────────────────────────────────────────────

class AssemblyResolver:
    def __init__(
        self,
        config: AssemblyConfig,
        backends: Optional[list[RenderBackend]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._owned_client: Optional[httpx.AsyncClient] = None
        if backends is None:
            if client is None:
                client = self._owned_client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
            backends = [
                RenderServerBackend(config, VendorHttpClient("render_server", client, max_retries=1)),
                ShotstackBackend(config, VendorHttpClient("shotstack", client, max_retries=2)),
            ]
        self.backends = backends

    async def aclose(self):
        if self._owned_client is not None:
            await self._owned_client.aclose()
            self._owned_client = None

    @property
    def can_extract_frames(self) -> bool:
        return any(isinstance(b, RenderServerBackend) and b.is_configured() for b in self.backends)

    async def extract_last_frame(self, video_url: str) -> Optional[str]:
        """Terminal frame of `video_url` via the render server; None when no server is configured."""
        for backend in self.backends:
            if isinstance(backend, RenderServerBackend) and backend.is_configured():
                return await backend.extract_last_frame(video_url)
        return None

    async def resolve(
        self, movie_id: str, scenes: list[Scene], soundtrack_url: Optional[str] = None
    ) -> AssemblyResult:
        clips = playable_clips(scenes)
        if not clips:
            raise AssemblyUnavailable("No completed scene has a playable URL")

        deadline = time.monotonic() + self.config.assembly_timeout_seconds
        attempts = []
        for backend in self.backends:
            attempt = await backend.attempt(
                movie_id, clips, budget=deadline - time.monotonic(), soundtrack_url=soundtrack_url
            )
            attempts.append(attempt)
            logger.info(f"[{movie_id}] Assembly via {attempt.backend}: {attempt.outcome.value} {attempt.detail}")
            if attempt.outcome == AttemptOutcome.SUCCEEDED:
                return AssemblyResult(
                    real=True,
                    status=AssemblyStatus.REAL,
                    video_url=attempt.video_url,
                    manifest=clips,
                    attempts=attempts,
                    soundtrack_url=soundtrack_url,
                )

        logger.info(f"[{movie_id}] No render backend succeeded; using sequential playback of {len(clips)} clip(s)")
        return AssemblyResult(
            real=False,
            status=AssemblyStatus.FALLBACK_SEQUENTIAL,
            manifest=clips,
            attempts=attempts,
            soundtrack_url=soundtrack_url,
        )
