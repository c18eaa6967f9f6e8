"""
Pytest Configuration and Fixtures

Shared fixtures: in-memory stores, a mock-mode gateway, a scripted gateway
for failure injection, and a sample cast.
"""

import uuid
from typing import Awaitable, Callable, Optional

import pytest

from moviegen import job_slots, metrics
from moviegen.pipeline.assembly import AssemblyResolver
from moviegen.pipeline.models import Character, Movie
from moviegen.pipeline.orchestrator import Orchestrator
from moviegen.pipeline.store import InMemoryJobStore
from moviegen.providers.errors import NoProviderConfigured
from moviegen.providers.gateway import ProviderGateway
from moviegen.providers.mock import invoke_mock
from moviegen.providers.models import Capability, ChatResult
from moviegen.providers.registry import InMemoryProviderRepository
from moviegen.settings import AssemblyConfig, GatewayConfig, PipelineConfig

ENCRYPTION_SECRET = "test-service-role-secret-0123456789abcdef"


@pytest.fixture(autouse=True)
def clean_globals():
    """Process-wide metrics and job slots start empty for every test."""
    metrics.reset()
    job_slots.reset()
    yield
    metrics.reset()
    job_slots.reset()


class ScriptedGateway:
    """
    Stands in for ProviderGateway. Answers like mock mode, except where a
    test scripts otherwise:

      no_provider_for  capabilities that behave as unconfigured
      llm_content      raw text returned for every LLM call
      failures         callable(capability, request) -> exception or None
      on_invoke        async hook run before every call
      video_frames     False: video results carry no last frame, like most vendors
    """

    def __init__(
        self,
        no_provider_for: tuple = (),
        llm_content: Optional[str] = None,
        failures: Optional[Callable] = None,
        on_invoke: Optional[Callable[..., Awaitable[None]]] = None,
        video_frames: bool = True,
    ):
        self.config = GatewayConfig(mock_mode=not no_provider_for)
        self.no_provider_for = set(no_provider_for)
        self.llm_content = llm_content
        self.failures = failures
        self.on_invoke = on_invoke
        self.video_frames = video_frames
        self.calls: list[tuple[Capability, object]] = []

    def calls_for(self, capability: Capability) -> list:
        return [request for cap, request in self.calls if cap == capability]

    async def resolve(self, capability: Capability):
        if capability in self.no_provider_for:
            raise NoProviderConfigured(capability.value)
        return None

    async def is_available(self, capability: Capability, mock=None) -> bool:
        return capability not in self.no_provider_for

    async def invoke(self, capability: Capability, request, mock=None):
        if self.on_invoke is not None:
            await self.on_invoke(capability, request)
        if capability in self.no_provider_for:
            raise NoProviderConfigured(capability.value)
        self.calls.append((capability, request))
        if self.failures is not None:
            error = self.failures(capability, request)
            if error is not None:
                raise error
        if capability == Capability.LLM and self.llm_content is not None:
            return ChatResult(content=self.llm_content, provider="scripted")
        result = await invoke_mock(capability, request)
        if capability == Capability.VIDEO and not self.video_frames:
            result = result.model_copy(update={"last_frame_url": None})
        return result

    async def aclose(self):
        pass


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def provider_repository() -> InMemoryProviderRepository:
    return InMemoryProviderRepository()


@pytest.fixture
def mock_gateway(provider_repository) -> ProviderGateway:
    return ProviderGateway(
        GatewayConfig(mock_mode=True, encryption_secret=ENCRYPTION_SECRET),
        provider_repository,
    )


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """No retry sleeps; lip-sync on so the mock path exercises it."""
    return PipelineConfig(retry_backoff_base=0.0, enable_lip_sync=True)


@pytest.fixture
def fallback_resolver() -> AssemblyResolver:
    """Resolver with no render backend: always the sequential manifest."""
    return AssemblyResolver(AssemblyConfig(), backends=[])


@pytest.fixture
def cast() -> list[Character]:
    return [
        Character(
            id="char-alex",
            name="Alex",
            gender="male",
            physical_traits={"hair": "curly black hair", "build": "tall"},
            wardrobe={"default": "denim jacket"},
            personality="impulsive optimist",
            voice_id="voice-alex",
        ),
        Character(
            id="char-sam",
            name="Sam",
            gender="female",
            physical_traits={"hair": "short red hair"},
            wardrobe={"default": "yellow raincoat"},
            personality="dry wit",
            voice_id="voice-sam",
        ),
    ]


@pytest.fixture
def make_movie(store, cast):
    """Create a draft movie (and its cast) in the store."""

    def _make(scene_count: int = 3, **overrides) -> Movie:
        for character in cast:
            store.add_character(character)
        movie = Movie(
            id=overrides.pop("id", str(uuid.uuid4())),
            title=overrides.pop("title", "Two Friends"),
            genre=overrides.pop("genre", "comedy"),
            premise=overrides.pop("premise", "two friends road trip"),
            character_ids=[c.id for c in cast],
            target_scene_count=scene_count,
            **overrides,
        )
        store.add_movie(movie)
        return movie

    return _make


@pytest.fixture
def make_orchestrator(store, pipeline_config, fallback_resolver):
    def _make(gateway, resolver: Optional[AssemblyResolver] = None, config: Optional[PipelineConfig] = None):
        return Orchestrator(store, gateway, resolver or fallback_resolver, config or pipeline_config)

    return _make
