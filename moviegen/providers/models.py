"""
Pydantic models for the provider gateway.

Capabilities, provider descriptors with their per-vendor config blocks, and
the request/result payload for each capability.
"""

from enum import Enum
from typing import Annotated, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


# ── Capabilities ─────────────────────────────────────────────────────────────

class Capability(str, Enum):
    LLM = "llm"
    IMAGE = "image"
    IDENTITY_TRAINING = "lora_training"
    VIDEO = "video"
    AUDIO = "audio"
    LIP_SYNC = "lip_sync"
    MUSIC = "music"


# ── Vendor config blocks (tagged by slug) ────────────────────────────────────

class _VendorConfig(BaseModel):
    capability: ClassVar[Capability]

    model_config = {"extra": "ignore"}


class OpenAIConfig(_VendorConfig):
    capability: ClassVar[Capability] = Capability.LLM
    vendor: Literal["openai", "openai-gpt4"]
    api_url: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-4-turbo-preview"


class GeminiConfig(_VendorConfig):
    capability: ClassVar[Capability] = Capability.LLM
    vendor: Literal["gemini"]
    api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.0-flash"


class FalImageConfig(_VendorConfig):
    capability: ClassVar[Capability] = Capability.IMAGE
    vendor: Literal["flux_pro_ultra", "fal-image", "flux_replicate"]
    api_url: str = "https://fal.run/fal-ai/flux/dev"
    lora_api_url: str = "https://fal.run/fal-ai/flux-lora"
    image_size: str = "landscape_16_9"
    num_inference_steps: int = 28
    guidance_scale: float = 3.5


class FalLoraConfig(_VendorConfig):
    capability: ClassVar[Capability] = Capability.IDENTITY_TRAINING
    vendor: Literal["fal_lora"]
    api_url: str = "https://fal.run/fal-ai/flux-lora-fast-training"
    steps: int = 1000
    poll_interval: float = 10.0
    max_poll_attempts: int = 180


class RunwayConfig(_VendorConfig):
    capability: ClassVar[Capability] = Capability.VIDEO
    vendor: Literal["runway"]
    api_base: str = "https://api.dev.runwayml.com/v1"
    api_version: str = "2024-11-06"
    model: str = "gen3a_turbo"
    ratio: str = "1280:768"
    max_prompt_length: int = 1000
    poll_interval: float = 5.0
    max_poll_attempts: int = 120


class KieConfig(_VendorConfig):
    capability: ClassVar[Capability] = Capability.VIDEO
    vendor: Literal["veo", "kie"]
    api_base: str = "https://api.kie.ai/api/v1"
    model: str = "veo-3.1-fast"
    poll_interval: float = 10.0
    max_poll_attempts: int = 90


class ElevenLabsConfig(_VendorConfig):
    capability: ClassVar[Capability] = Capability.AUDIO
    vendor: Literal["elevenlabs"]
    api_base: str = "https://api.elevenlabs.io"
    api_version: Literal["v1", "v2"] = "v1"
    model_id: str = "eleven_multilingual_v2"
    default_voice_id: str = "EXAVITQu4vr4xnSDxMaL"
    stability: float = 0.5
    similarity_boost: float = 0.75


class SyncLabsConfig(_VendorConfig):
    capability: ClassVar[Capability] = Capability.LIP_SYNC
    vendor: Literal["sync_labs"]
    api_base: str = "https://api.sync.so/v2"
    model: str = "sync-1.6.0"
    poll_interval: float = 5.0
    max_poll_attempts: int = 60


class BeatovenConfig(_VendorConfig):
    capability: ClassVar[Capability] = Capability.MUSIC
    vendor: Literal["beatoven"]
    api_url: str = "https://www.beatoven.ai/api/v1/music/generate"


VendorConfig = Annotated[
    Union[
        OpenAIConfig,
        GeminiConfig,
        FalImageConfig,
        FalLoraConfig,
        RunwayConfig,
        KieConfig,
        ElevenLabsConfig,
        SyncLabsConfig,
        BeatovenConfig,
    ],
    Field(discriminator="vendor"),
]

vendor_config_adapter = TypeAdapter(VendorConfig)


# ── Provider descriptor ──────────────────────────────────────────────────────

class ProviderDescriptor(BaseModel):
    """One configured vendor for one capability. Read-only to the pipeline."""

    id: str
    name: str = ""
    slug: str
    capability: Capability
    api_key_encrypted: Optional[str] = None
    config: VendorConfig
    is_active: bool = True
    is_default: bool = False
    priority: int = 100  # lower number wins
    cost_per_request: Optional[float] = None
    cost_per_second: Optional[float] = None
    total_requests: int = 0
    total_cost: float = 0.0

    def estimate_cost(self, seconds: Optional[float] = None) -> float:
        cost = self.cost_per_request or 0.0
        if self.cost_per_second and seconds:
            cost += self.cost_per_second * seconds
        return round(cost, 6)


# ── Capability payloads ──────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage]
    temperature: float = 0.7
    max_tokens: int = 4000
    json_output: bool = False
    purpose: str = "general"
    # Hints only the mock substitute reads (e.g. scene_count, cast names).
    hints: dict = Field(default_factory=dict)


class IdentityRef(BaseModel):
    lora_url: str
    trigger_word: str
    scale: float = 1.0


class ImageRequest(BaseModel):
    prompt: str
    negative_prompt: str = ""
    image_size: Optional[str] = None
    num_images: int = 1
    identity: Optional[IdentityRef] = None


class IdentityTrainingRequest(BaseModel):
    character_id: str
    image_urls: list[str]
    trigger_word: str
    steps: Optional[int] = None


class VideoRequest(BaseModel):
    prompt: str
    negative_prompt: str = ""
    duration_seconds: int = 10
    aspect_ratio: str = "16:9"
    reference_image_url: Optional[str] = None
    reference_weight: float = 0.0


class AudioRequest(BaseModel):
    text: str
    voice_id: Optional[str] = None


class LipSyncRequest(BaseModel):
    video_url: str
    audio_url: str


class MusicRequest(BaseModel):
    genre: str
    mood: str = "epic"
    duration_seconds: int = 60


class CapabilityResult(BaseModel):
    provider: str = ""
    cost: float = 0.0
    mock: bool = False


class ChatResult(CapabilityResult):
    content: str
    model: str = ""


class ImageResult(CapabilityResult):
    urls: list[str]


class IdentityTrainingResult(CapabilityResult):
    lora_url: str
    trigger_word: str


class VideoResult(CapabilityResult):
    video_url: str
    last_frame_url: Optional[str] = None
    duration_seconds: float = 0.0
    task_id: Optional[str] = None


class AudioResult(CapabilityResult):
    audio_url: str
    duration_seconds: float = 0.0


class LipSyncResult(CapabilityResult):
    video_url: str


class MusicResult(CapabilityResult):
    audio_url: str


REQUEST_TYPES: dict[Capability, type[BaseModel]] = {
    Capability.LLM: ChatRequest,
    Capability.IMAGE: ImageRequest,
    Capability.IDENTITY_TRAINING: IdentityTrainingRequest,
    Capability.VIDEO: VideoRequest,
    Capability.AUDIO: AudioRequest,
    Capability.LIP_SYNC: LipSyncRequest,
    Capability.MUSIC: MusicRequest,
}
