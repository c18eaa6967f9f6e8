"""
Deterministic mock substitute for every capability.

Results are a pure function of the request: each URL is derived from a
SHA-256 of the request's canonical JSON, so the same input always yields the
same artifact names. Nothing here touches the network or the clock.

URL scheme:  https://mock.invalid/{kind}/{digest}.{ext}
"""

import hashlib
import json
import logging
import re

from pydantic import BaseModel

from .models import (
    AudioRequest,
    AudioResult,
    Capability,
    ChatRequest,
    ChatResult,
    IdentityTrainingRequest,
    IdentityTrainingResult,
    ImageRequest,
    ImageResult,
    LipSyncRequest,
    LipSyncResult,
    MusicRequest,
    MusicResult,
    VideoRequest,
    VideoResult,
)

logger = logging.getLogger(__name__)

MOCK_BASE_URL = "https://mock.invalid"
MOCK_PROVIDER = "mock"
MOCK_URL_PATTERN = re.compile(
    r"^https://mock\.invalid/(video|frame|image|lora|audio|lipsync|music)/[0-9a-f]{16}(-\d+)?\.[a-z0-9]+$"
)

_MOCK_LOCATIONS = [
    "sunlit coastal highway",
    "roadside diner at dusk",
    "desert motel parking lot",
    "mountain overlook",
    "neon-lit city street",
]
_MOCK_TIMES = ["morning", "afternoon", "golden hour", "dusk", "night"]


def request_digest(request: BaseModel) -> str:
    canonical = json.dumps(request.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def mock_url(kind: str, digest: str, ext: str) -> str:
    return f"{MOCK_BASE_URL}/{kind}/{digest}.{ext}"


def is_mock_url(url: str) -> bool:
    return bool(url and MOCK_URL_PATTERN.match(url))


def is_mock_slug(slug: str) -> bool:
    """Rows like `runway-mock` or `mock_video` name the built-in substitute."""
    return slug.endswith("-mock") or slug.startswith("mock_")


# ── Language model ───────────────────────────────────────────────────────────

def _mock_script(hints: dict) -> dict:
    scene_count = max(1, int(hints.get("scene_count", 3)))
    cast = list(hints.get("characters") or ["Alex", "Sam"])
    premise = hints.get("premise", "an untold story")
    title = hints.get("title") or f"Untitled: {premise[:40]}"

    scenes = []
    for i in range(scene_count):
        # Two consecutive scenes share a location so continuations are exercised.
        location = _MOCK_LOCATIONS[(i // 2) % len(_MOCK_LOCATIONS)]
        speaker = cast[i % len(cast)]
        scenes.append({
            "scene_number": i + 1,
            "location": location,
            "time_of_day": _MOCK_TIMES[(i // 2) % len(_MOCK_TIMES)],
            "lighting": "natural",
            "description": f"Scene {i + 1} of {premise}: {speaker} leads the moment at the {location}.",
            "camera": "medium shot, slow push-in",
            "mood": "light-hearted",
            "characters": cast,
            "dialogue": [{"character": speaker, "line": f"Line {i + 1} for {speaker}."}],
            "wardrobe_changes": {},
            "forbidden_elements": [],
        })
    return {"title": title, "scenes": scenes}


def _mock_visual_bible(hints: dict) -> dict:
    return {
        "logline": hints.get("premise", "an untold story"),
        "tone": "light-hearted",
        "era": "contemporary",
        "visual_style": "warm cinematic realism",
        "palette": {
            "primary": {"name": "sunbaked amber", "hex": "#E0A040"},
            "secondary": {"name": "desert teal", "hex": "#2F7F7A"},
            "accent": {"name": "neon pink", "hex": "#FF4FA0"},
        },
        "lighting_rules": {"day_exterior": "soft natural daylight", "night_exterior": "neon practicals"},
        "locations": [
            {
                "name": location,
                "description": f"the {location}, wide and lived-in",
                "key_elements": [],
                "lighting_default": "natural",
                "atmosphere": "easygoing",
            }
            for location in _MOCK_LOCATIONS
        ],
        "continuity_rules": ["wardrobe only changes when the script says so"],
        "forbidden_elements": [],
    }


def _chat(request: ChatRequest) -> ChatResult:
    if request.purpose == "script":
        content = json.dumps(_mock_script(request.hints), sort_keys=True)
    elif request.purpose == "visual_bible":
        content = json.dumps(_mock_visual_bible(request.hints), sort_keys=True)
    else:
        content = f"mock completion {request_digest(request)}"
    return ChatResult(content=content, model="mock-llm", provider=MOCK_PROVIDER, mock=True)


# ── Media capabilities ───────────────────────────────────────────────────────

def _image(request: ImageRequest) -> ImageResult:
    digest = request_digest(request)
    count = max(1, request.num_images)
    if count == 1:
        urls = [mock_url("image", digest, "png")]
    else:
        urls = [f"{MOCK_BASE_URL}/image/{digest}-{i}.png" for i in range(count)]
    return ImageResult(urls=urls, provider=MOCK_PROVIDER, mock=True)


def _training(request: IdentityTrainingRequest) -> IdentityTrainingResult:
    return IdentityTrainingResult(
        lora_url=mock_url("lora", request_digest(request), "safetensors"),
        trigger_word=request.trigger_word,
        provider=MOCK_PROVIDER,
        mock=True,
    )


def _video(request: VideoRequest) -> VideoResult:
    digest = request_digest(request)
    return VideoResult(
        video_url=mock_url("video", digest, "mp4"),
        last_frame_url=mock_url("frame", digest, "jpg"),
        duration_seconds=float(request.duration_seconds),
        task_id=f"mock-{digest}",
        provider=MOCK_PROVIDER,
        mock=True,
    )


def _audio(request: AudioRequest) -> AudioResult:
    # Rough speech rate: 15 characters per second.
    return AudioResult(
        audio_url=mock_url("audio", request_digest(request), "mp3"),
        duration_seconds=round(len(request.text) / 15.0, 2),
        provider=MOCK_PROVIDER,
        mock=True,
    )


def _lip_sync(request: LipSyncRequest) -> LipSyncResult:
    return LipSyncResult(
        video_url=mock_url("lipsync", request_digest(request), "mp4"),
        provider=MOCK_PROVIDER,
        mock=True,
    )


def _music(request: MusicRequest) -> MusicResult:
    return MusicResult(
        audio_url=mock_url("music", request_digest(request), "mp3"),
        provider=MOCK_PROVIDER,
        mock=True,
    )


_HANDLERS = {
    Capability.LLM: _chat,
    Capability.IMAGE: _image,
    Capability.IDENTITY_TRAINING: _training,
    Capability.VIDEO: _video,
    Capability.AUDIO: _audio,
    Capability.LIP_SYNC: _lip_sync,
    Capability.MUSIC: _music,
}


async def invoke_mock(capability: Capability, request: BaseModel):
    """Return the synthetic result for `capability`. Cost is always zero."""
    result = _HANDLERS[capability](request)
    logger.info(f"Mock {capability.value} invocation → {getattr(result, 'video_url', None) or type(result).__name__}")
    return result
