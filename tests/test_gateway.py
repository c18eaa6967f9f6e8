"""
Tests for the ProviderGateway and vendor adapters, over httpx.MockTransport.
"""

import json

import httpx
import pytest

from moviegen import metrics
from moviegen.providers.credentials import encrypt_api_key
from moviegen.providers.errors import (
    MalformedVendorResponse,
    NoProviderConfigured,
    ProviderConfigurationError,
    VendorAuthError,
    VendorRejected,
    VendorUnavailable,
)
from moviegen.providers.gateway import ProviderGateway
from moviegen.providers.http import VendorHttpClient
from moviegen.providers.models import (
    AudioRequest,
    Capability,
    ChatMessage,
    ChatRequest,
    ElevenLabsConfig,
    OpenAIConfig,
    VideoRequest,
)
from moviegen.providers.registry import InMemoryProviderRepository
from moviegen.providers.vendors.elevenlabs import ElevenLabsAudioAdapter
from moviegen.providers.vendors.openai import OpenAIChatAdapter
from moviegen.settings import GatewayConfig

from .conftest import ENCRYPTION_SECRET

RUNWAY_KEY = "rw-secret-key-0123456789"


class FakeArtifacts:
    def __init__(self):
        self.uploads = []

    async def upload(self, key, data, content_type):
        self.uploads.append((key, data, content_type))
        return f"https://assets.example.com/{key}"


def runway_handler(seen, task_status="SUCCEEDED"):
    def handler(request):
        seen.append(request)
        if request.method == "POST":
            return httpx.Response(200, json={"id": "task-1"})
        if task_status == "SUCCEEDED":
            return httpx.Response(200, json={"status": "SUCCEEDED", "output": ["https://runway.example.com/out.mp4"]})
        return httpx.Response(200, json={"status": task_status, "failure": "content policy"})

    return handler


def runway_gateway(handler, repository=None, **provider_overrides):
    if repository is None:
        repository = InMemoryProviderRepository()
        row = {
            "id": "prov-runway",
            "slug": "runway",
            "type": "video",
            "config": {"poll_interval": 0, "max_poll_attempts": 3},
            "api_key_encrypted": encrypt_api_key(RUNWAY_KEY, ENCRYPTION_SECRET),
            "cost_per_second": 0.05,
        }
        row.update(provider_overrides)
        repository.add_row(row)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    config = GatewayConfig(mock_mode=False, max_retries=0, backoff_base=0, encryption_secret=ENCRYPTION_SECRET)
    return ProviderGateway(config, repository, client=client), repository


class TestMockPath:
    @pytest.mark.asyncio
    async def test_mock_mode_never_touches_the_network(self):
        def handler(request):
            raise AssertionError("network used in mock mode")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        gateway = ProviderGateway(GatewayConfig(mock_mode=True), InMemoryProviderRepository(), client=client)

        result = await gateway.invoke(Capability.VIDEO, VideoRequest(prompt="x"))
        assert result.mock
        assert metrics.get_snapshot()["counters"]["gateway.video.mock"] == 1

    @pytest.mark.asyncio
    async def test_per_call_override(self, mock_gateway):
        with pytest.raises(NoProviderConfigured):
            await mock_gateway.invoke(Capability.VIDEO, VideoRequest(prompt="x"), mock=False)

    @pytest.mark.asyncio
    async def test_wrong_request_type(self, mock_gateway):
        with pytest.raises(TypeError):
            await mock_gateway.invoke(Capability.VIDEO, AudioRequest(text="hello"))

    @pytest.mark.asyncio
    async def test_availability(self, mock_gateway):
        assert await mock_gateway.is_available(Capability.MUSIC)
        assert not await mock_gateway.is_available(Capability.MUSIC, mock=False)


class TestRealPath:
    @pytest.mark.asyncio
    async def test_runway_text_to_video(self):
        seen = []
        gateway, repository = runway_gateway(runway_handler(seen))

        result = await gateway.invoke(Capability.VIDEO, VideoRequest(prompt="a diner at dusk", duration_seconds=10))

        assert result.video_url == "https://runway.example.com/out.mp4"
        assert result.last_frame_url is None
        assert result.provider == "runway"
        assert result.cost == pytest.approx(0.5)
        assert seen[0].url.path.endswith("/text_to_video")
        assert seen[0].headers["Authorization"] == f"Bearer {RUNWAY_KEY}"
        assert seen[1].url.path.endswith("/tasks/task-1")

        provider = repository.get("prov-runway")
        assert provider.total_requests == 1
        assert provider.total_cost == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_reference_frame_uses_image_to_video(self):
        seen = []
        gateway, _ = runway_gateway(runway_handler(seen))

        await gateway.invoke(
            Capability.VIDEO,
            VideoRequest(prompt="x", reference_image_url="https://cdn.example.com/f.jpg", reference_weight=0.85),
        )

        assert seen[0].url.path.endswith("/image_to_video")
        assert json.loads(seen[0].content)["promptImage"] == "https://cdn.example.com/f.jpg"

    @pytest.mark.asyncio
    async def test_failed_task_is_rejected_and_not_counted(self):
        gateway, repository = runway_gateway(runway_handler([], task_status="FAILED"))

        with pytest.raises(VendorRejected):
            await gateway.invoke(Capability.VIDEO, VideoRequest(prompt="x"))

        assert repository.get("prov-runway").total_requests == 0
        assert metrics.get_snapshot()["counters"]["errors.gateway.video"] == 1

    @pytest.mark.asyncio
    async def test_missing_credential(self):
        gateway, _ = runway_gateway(runway_handler([]), api_key_encrypted=None)
        with pytest.raises(VendorAuthError):
            await gateway.invoke(Capability.VIDEO, VideoRequest(prompt="x"))

    @pytest.mark.asyncio
    async def test_undecryptable_credential(self):
        gateway, _ = runway_gateway(runway_handler([]), api_key_encrypted="bm90LXNhbHRlZA==")
        with pytest.raises(ProviderConfigurationError):
            await gateway.invoke(Capability.VIDEO, VideoRequest(prompt="x"))

    @pytest.mark.asyncio
    async def test_no_provider(self):
        gateway, _ = runway_gateway(runway_handler([]), repository=InMemoryProviderRepository())
        with pytest.raises(NoProviderConfigured):
            await gateway.invoke(Capability.VIDEO, VideoRequest(prompt="x"))


    @pytest.mark.asyncio
    async def test_task_creation_not_retried(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.method == "POST":
                return httpx.Response(503, text="overloaded")
            raise AssertionError("polled a task that was never created")

        gateway, repository = runway_gateway(handler)
        gateway.config = gateway.config.model_copy(update={"max_retries": 3})

        with pytest.raises(VendorUnavailable):
            await gateway.invoke(Capability.VIDEO, VideoRequest(prompt="x"))

        assert [r.method for r in seen] == ["POST"]
        assert repository.get("prov-runway").total_requests == 0


class TestOpenAIAdapter:
    def adapter(self, handler):
        http = VendorHttpClient("openai", httpx.AsyncClient(transport=httpx.MockTransport(handler)), base_delay=0)
        return OpenAIChatAdapter(OpenAIConfig(vendor="openai"), http)

    @pytest.mark.asyncio
    async def test_reads_first_choice(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"model": "gpt-4o", "choices": [{"message": {"content": "{\"title\": \"x\"}"}}]})

        request = ChatRequest(messages=[ChatMessage(role="user", content="hi")], json_output=True)
        result = await self.adapter(handler).invoke(request, "sk-test")

        assert result.content == '{"title": "x"}'
        assert result.model == "gpt-4o"
        assert seen[0]["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_empty_choices(self):
        request = ChatRequest(messages=[ChatMessage(role="user", content="hi")])
        with pytest.raises(MalformedVendorResponse):
            await self.adapter(lambda r: httpx.Response(200, json={"choices": []})).invoke(request, "sk-test")


class TestElevenLabsAdapter:
    def adapter(self, handler, artifacts):
        http = VendorHttpClient("elevenlabs", httpx.AsyncClient(transport=httpx.MockTransport(handler)), base_delay=0)
        return ElevenLabsAudioAdapter(ElevenLabsConfig(vendor="elevenlabs"), http, artifacts=artifacts)

    @pytest.mark.asyncio
    async def test_audio_bytes_uploaded(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=b"\xff\xfb" * 16000)

        artifacts = FakeArtifacts()
        result = await self.adapter(handler, artifacts).invoke(AudioRequest(text="Hello there", voice_id="v1"), "xi-key")

        assert seen[0].url.path == "/v1/text-to-speech/v1"
        assert seen[0].headers["xi-api-key"] == "xi-key"
        key, data, content_type = artifacts.uploads[0]
        assert key.startswith("audio/voice/v1/") and key.endswith(".mp3")
        assert content_type == "audio/mpeg"
        assert result.audio_url == f"https://assets.example.com/{key}"
        assert result.duration_seconds == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_needs_artifact_store(self):
        with pytest.raises(ProviderConfigurationError):
            await self.adapter(lambda r: httpx.Response(200, content=b"x"), None).invoke(AudioRequest(text="hi"), "k")
