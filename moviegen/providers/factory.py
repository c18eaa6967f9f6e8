from typing import Optional

import httpx

from .http import VendorHttpClient
from .models import (
    BeatovenConfig,
    ElevenLabsConfig,
    FalImageConfig,
    FalLoraConfig,
    GeminiConfig,
    KieConfig,
    OpenAIConfig,
    ProviderDescriptor,
    RunwayConfig,
    SyncLabsConfig,
)
from .vendors.base import VendorAdapter
from .vendors.beatoven import BeatovenMusicAdapter
from .vendors.elevenlabs import ElevenLabsAudioAdapter
from .vendors.fal import FalImageAdapter, FalLoraTrainingAdapter
from .vendors.gemini import GeminiChatAdapter
from .vendors.kie import KieVideoAdapter
from .vendors.openai import OpenAIChatAdapter
from .vendors.runway import RunwayVideoAdapter
from .vendors.synclabs import SyncLabsAdapter

ADAPTERS: dict[type, type[VendorAdapter]] = {
    OpenAIConfig: OpenAIChatAdapter,
    GeminiConfig: GeminiChatAdapter,
    FalImageConfig: FalImageAdapter,
    FalLoraConfig: FalLoraTrainingAdapter,
    RunwayConfig: RunwayVideoAdapter,
    KieConfig: KieVideoAdapter,
    ElevenLabsConfig: ElevenLabsAudioAdapter,
    SyncLabsConfig: SyncLabsAdapter,
    BeatovenConfig: BeatovenMusicAdapter,
}


class ProviderFactory:
    """Builds the adapter for a descriptor. The config variant picks the class."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_retries: int,
        backoff_base: float,
        artifacts=None,
    ):
        self.client = client
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.artifacts = artifacts

    def get_adapter(self, provider: ProviderDescriptor) -> VendorAdapter:
        adapter_cls: Optional[type[VendorAdapter]] = ADAPTERS.get(type(provider.config))
        if adapter_cls is None:
            raise KeyError(f"No adapter for vendor '{provider.slug}'")
        http = VendorHttpClient(
            provider.slug,
            self.client,
            max_retries=self.max_retries,
            base_delay=self.backoff_base,
        )
        return adapter_cls(provider.config, http, artifacts=self.artifacts)
