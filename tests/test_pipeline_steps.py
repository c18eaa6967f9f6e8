"""
Tests for the individual pipeline steps: script parsing, character
preparation, the audio stage and the Assembly Resolver.
"""

import asyncio
import json

import httpx
import pytest

from moviegen.pipeline.assembly import (
    AssemblyResolver,
    AttemptOutcome,
    RenderBackend,
    playable_clips,
)
from moviegen.pipeline.audio import AudioStage
from moviegen.pipeline.characters import CharacterPreparer, trigger_word_for
from moviegen.pipeline.models import AssemblyStatus, DialogueLine, Movie, Scene, SceneDirective, SceneStatus
from moviegen.pipeline.script import build_script_request, parse_script
from moviegen.providers.errors import (
    AssemblyUnavailable,
    MalformedVendorResponse,
    VendorAuthError,
    VendorRejected,
    VendorUnavailable,
)
from moviegen.providers.mock import is_mock_url
from moviegen.providers.models import Capability
from moviegen.settings import AssemblyConfig

from .conftest import ScriptedGateway


def scene(number, status=SceneStatus.COMPLETED, video_url=None, **kwargs) -> Scene:
    return Scene(
        id=f"scene-{number}",
        movie_id="movie-1",
        scene_number=number,
        status=status,
        video_url=video_url if video_url is not None else f"https://cdn.example.com/{number}.mp4",
        directive=SceneDirective(
            scene_number=number,
            description=f"Beat {number}",
            dialogue=kwargs.pop("dialogue", []),
        ),
        **kwargs,
    )


# ── Script ───────────────────────────────────────────────────────────────────

class TestParseScript:
    def test_scenes_renumbered_in_written_order(self):
        text = json.dumps({
            "title": "Road Trip",
            "scenes": [
                {"scene_number": 7, "description": "They leave town.", "location": "driveway"},
                {"scene_number": 3, "description": "The car breaks down.", "location": "highway"},
            ],
        })
        script = parse_script(text)

        assert script.title == "Road Trip"
        assert [s.scene_number for s in script.scenes] == [1, 2]
        assert script.scenes[1].description == "The car breaks down."
        assert script.raw_text == text

    def test_markdown_fences_stripped(self):
        text = '```json\n{"scenes": [{"description": "Opening shot."}]}\n```'
        assert parse_script(text).scenes[0].description == "Opening shot."

    def test_not_json_keeps_raw_text(self):
        with pytest.raises(MalformedVendorResponse) as exc:
            parse_script("Here is your script! Scene one...")
        assert exc.value.raw_text == "Here is your script! Scene one..."

    def test_zero_scenes(self):
        with pytest.raises(MalformedVendorResponse):
            parse_script('{"title": "Empty", "scenes": []}')

    def test_scene_without_description(self):
        with pytest.raises(MalformedVendorResponse) as exc:
            parse_script('{"scenes": [{"location": "beach"}]}')
        assert "scene 1 is invalid" in str(exc.value)

    def test_request_carries_mock_hints(self, cast):
        movie = Movie(id="m", title="Two Friends", premise="two friends road trip", genre="comedy")
        request = build_script_request(movie, cast, scene_count=4)

        assert request.purpose == "script"
        assert request.json_output
        assert request.hints == {
            "scene_count": 4,
            "characters": ["Alex", "Sam"],
            "premise": "two friends road trip",
            "title": "Two Friends",
        }
        assert "Number of scenes: 4" in request.messages[1].content


# ── Characters ───────────────────────────────────────────────────────────────

class TestCharacterPreparer:
    @pytest.mark.asyncio
    async def test_unlocked_character_trained_and_locked(self, store, cast, pipeline_config):
        store.add_character(cast[0])
        gateway = ScriptedGateway()

        prepared, warnings = await CharacterPreparer(gateway, store, pipeline_config).prepare("job", [cast[0]])

        alex = prepared[0]
        assert warnings == []
        assert alex.is_locked
        assert alex.lora_trigger_word == "MOVIEGEN_ALEX"
        assert len(alex.reference_images) == 4
        assert is_mock_url(alex.thumbnail_url)
        assert (await store.get_character(alex.id)).is_locked
        assert len(gateway.calls_for(Capability.IDENTITY_TRAINING)) == 1

    @pytest.mark.asyncio
    async def test_locked_character_reused(self, store, cast, pipeline_config):
        locked = cast[0].model_copy(update={
            "lora_locked": True,
            "lora_model_url": "https://cdn.example.com/alex.safetensors",
            "thumbnail_url": "https://cdn.example.com/alex.png",
        })
        gateway = ScriptedGateway()

        prepared, _ = await CharacterPreparer(gateway, store, pipeline_config).prepare("job", [locked])

        assert prepared == [locked]
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_training_unavailable_degrades(self, store, cast, pipeline_config):
        gateway = ScriptedGateway(no_provider_for=(Capability.IDENTITY_TRAINING,))

        prepared, warnings = await CharacterPreparer(gateway, store, pipeline_config).prepare("job", cast)

        assert not any(c.is_locked for c in prepared)
        assert [w["character"] for w in warnings] == ["Alex", "Sam"]
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_training_failure_keeps_finished_steps(self, store, cast, pipeline_config):
        store.add_character(cast[0])

        def failures(capability, request):
            if capability == Capability.IDENTITY_TRAINING:
                return VendorUnavailable("training queue full", vendor="fal_lora")
            return None

        prepared, warnings = await CharacterPreparer(
            ScriptedGateway(failures=failures), store, pipeline_config
        ).prepare("job", [cast[0]])

        alex = prepared[0]
        assert not alex.is_locked
        assert len(alex.reference_images) == 4
        assert "training queue full" in warnings[0]["reason"]

    @pytest.mark.asyncio
    async def test_auth_failure_propagates(self, store, cast, pipeline_config):
        def failures(capability, request):
            return VendorAuthError("credential rejected", vendor="fal")

        with pytest.raises(VendorAuthError):
            await CharacterPreparer(ScriptedGateway(failures=failures), store, pipeline_config).prepare("job", cast)

    def test_trigger_word(self, cast):
        assert trigger_word_for(cast[0]) == "MOVIEGEN_ALEX"
        assert trigger_word_for(cast[0].model_copy(update={"name": "Dr. Mae-Li"})) == "MOVIEGEN_DR_MAE_LI"


# ── Audio ────────────────────────────────────────────────────────────────────

class TestAudioStage:
    def movie(self):
        return Movie(id="movie-1", genre="comedy")

    @pytest.mark.asyncio
    async def test_voices_lines_and_lip_syncs(self, store, cast, pipeline_config):
        scenes = [
            scene(1, dialogue=[DialogueLine(character="Alex", line="Hi."), DialogueLine(character="Sam", line="Hey.")]),
            scene(2),
        ]
        gateway = ScriptedGateway()

        report = await AudioStage(gateway, store, pipeline_config).run(self.movie(), scenes, cast)

        assert report["voiced_lines"] == 2
        assert report["lip_synced_scenes"] == [1]
        assert is_mock_url(report["music_url"])
        assert [r.voice_id for r in gateway.calls_for(Capability.AUDIO)] == ["voice-alex", "voice-sam"]
        assert gateway.calls_for(Capability.MUSIC)[0].duration_seconds == 20

    @pytest.mark.asyncio
    async def test_no_providers_is_not_an_error(self, store, cast, pipeline_config):
        gateway = ScriptedGateway(no_provider_for=(Capability.AUDIO, Capability.LIP_SYNC, Capability.MUSIC))
        scenes = [scene(1, dialogue=[DialogueLine(character="Alex", line="Hi.")])]

        report = await AudioStage(gateway, store, pipeline_config).run(self.movie(), scenes, cast)

        assert report == {"voiced_lines": 0, "lip_synced_scenes": [], "music_url": None, "errors": []}

    @pytest.mark.asyncio
    async def test_failures_collected(self, store, cast, pipeline_config):
        def failures(capability, request):
            if capability == Capability.AUDIO:
                return VendorRejected("voice not found", vendor="elevenlabs")
            return None

        scenes = [scene(1, dialogue=[DialogueLine(character="Alex", line="Hi.")])]
        report = await AudioStage(ScriptedGateway(failures=failures), store, pipeline_config).run(
            self.movie(), scenes, cast
        )

        assert report["voiced_lines"] == 0
        assert report["errors"][0]["step"] == "voice"
        assert report["music_url"] is not None


# ── Assembly ─────────────────────────────────────────────────────────────────

class StaticBackend(RenderBackend):
    def __init__(self, name, url=None, error=None, delay=0.0):
        self.name = name
        self.url = url
        self.error = error
        self.delay = delay

    def is_configured(self) -> bool:
        return True

    async def render(self, movie_id, clips, soundtrack_url=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.url


class TestPlayableClips:
    def test_filters_and_orders(self):
        scenes = [
            scene(3),
            scene(1, lip_synced_url="https://cdn.example.com/1-synced.mp4"),
            scene(2, status=SceneStatus.FAILED),
            scene(4, video_url="s3://bucket/4.mp4"),
        ]
        clips = playable_clips(scenes)
        assert [(c.scene_number, c.video_url) for c in clips] == [
            (1, "https://cdn.example.com/1-synced.mp4"),
            (3, "https://cdn.example.com/3.mp4"),
        ]


class TestAssemblyResolver:
    @pytest.mark.asyncio
    async def test_first_successful_backend_wins(self):
        resolver = AssemblyResolver(AssemblyConfig(), backends=[
            StaticBackend("broken", error=VendorRejected("bad timeline", vendor="broken")),
            StaticBackend("working", url="https://cdn.example.com/final.mp4"),
        ])
        result = await resolver.resolve("movie-1", [scene(1), scene(2)])

        assert result.real
        assert result.status == AssemblyStatus.REAL
        assert result.video_url == "https://cdn.example.com/final.mp4"
        assert [a.outcome for a in result.attempts] == [AttemptOutcome.FAILED, AttemptOutcome.SUCCEEDED]

    @pytest.mark.asyncio
    async def test_slow_backend_falls_back(self):
        resolver = AssemblyResolver(
            AssemblyConfig(assembly_timeout_seconds=0.05),
            backends=[StaticBackend("slow", url="https://cdn.example.com/never.mp4", delay=5)],
        )
        result = await resolver.resolve("movie-1", [scene(1), scene(2)])

        assert not result.real
        assert result.status == AssemblyStatus.FALLBACK_SEQUENTIAL
        assert result.attempts[0].outcome == AttemptOutcome.TIMED_OUT
        assert [c.scene_number for c in result.manifest] == [1, 2]
        assert result.metadata()["estimated_duration_seconds"] == 20

    @pytest.mark.asyncio
    async def test_nothing_configured(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        resolver = AssemblyResolver(AssemblyConfig(), client=client)
        result = await resolver.resolve("movie-1", [scene(1)])

        assert result.status == AssemblyStatus.FALLBACK_SEQUENTIAL
        assert [a.outcome for a in result.attempts] == [AttemptOutcome.NOT_CONFIGURED] * 2

    @pytest.mark.asyncio
    async def test_render_server(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "video_url": "https://render.example.com/m.mp4"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        resolver = AssemblyResolver(AssemblyConfig(render_server_url="https://render.example.com"), client=client)
        result = await resolver.resolve("movie-1", [scene(2), scene(1)])

        assert result.real
        assert result.video_url == "https://render.example.com/m.mp4"
        assert [v["scene_number"] for v in seen[0]["videos"]] == [1, 2]

    @pytest.mark.asyncio
    async def test_no_playable_clip(self):
        resolver = AssemblyResolver(AssemblyConfig(), backends=[])
        with pytest.raises(AssemblyUnavailable):
            await resolver.resolve("movie-1", [scene(1, status=SceneStatus.FAILED)])

    @pytest.mark.asyncio
    async def test_render_server_receives_soundtrack_and_lines(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "video_url": "https://render.example.com/m.mp4"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        resolver = AssemblyResolver(AssemblyConfig(render_server_url="https://render.example.com"), client=client)
        scenes = [
            scene(1, audio_urls=["https://cdn.example.com/1a.mp3", "https://cdn.example.com/1b.mp3"]),
            scene(
                2,
                audio_urls=["https://cdn.example.com/2a.mp3", "https://cdn.example.com/2b.mp3"],
                lip_synced_url="https://cdn.example.com/2-synced.mp4",
            ),
        ]
        result = await resolver.resolve("movie-1", scenes, soundtrack_url="https://cdn.example.com/score.mp3")

        body = seen[0]
        assert body["music_url"] == "https://cdn.example.com/score.mp3"
        assert body["videos"][0]["audio_urls"] == ["https://cdn.example.com/1a.mp3", "https://cdn.example.com/1b.mp3"]
        assert body["videos"][1]["video_url"] == "https://cdn.example.com/2-synced.mp4"
        assert body["videos"][1]["audio_urls"] == ["https://cdn.example.com/2b.mp3"]
        assert result.metadata()["soundtrack_url"] == "https://cdn.example.com/score.mp3"

    @pytest.mark.asyncio
    async def test_shotstack_timeline_carries_audio(self):
        submitted = []

        def handler(request):
            if request.method == "POST":
                submitted.append(json.loads(request.content))
                return httpx.Response(200, json={"response": {"id": "render-1"}})
            return httpx.Response(200, json={"response": {"status": "done", "url": "https://shotstack.example.com/m.mp4"}})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        resolver = AssemblyResolver(AssemblyConfig(shotstack_api_key="ss-key", poll_interval=0), client=client)
        scenes = [
            scene(1),
            scene(2, audio_urls=["https://cdn.example.com/2a.mp3", "https://cdn.example.com/2b.mp3"]),
        ]
        result = await resolver.resolve("movie-1", scenes, soundtrack_url="https://cdn.example.com/score.mp3")

        assert result.video_url == "https://shotstack.example.com/m.mp4"
        timeline = submitted[0]["timeline"]
        assert timeline["soundtrack"] == {"src": "https://cdn.example.com/score.mp3", "effect": "fadeOut"}
        video, voices = timeline["tracks"]
        assert [c["start"] for c in video["clips"]] == [0, 10]
        assert [(c["asset"]["src"], c["start"], c["length"]) for c in voices["clips"]] == [
            ("https://cdn.example.com/2a.mp3", 10, 5),
            ("https://cdn.example.com/2b.mp3", 15, 5),
        ]

    @pytest.mark.asyncio
    async def test_shotstack_without_audio_has_one_track(self):
        submitted = []

        def handler(request):
            if request.method == "POST":
                submitted.append(json.loads(request.content))
                return httpx.Response(200, json={"response": {"id": "render-1"}})
            return httpx.Response(200, json={"response": {"status": "done", "url": "https://shotstack.example.com/m.mp4"}})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        resolver = AssemblyResolver(AssemblyConfig(shotstack_api_key="ss-key", poll_interval=0), client=client)
        await resolver.resolve("movie-1", [scene(1)])

        timeline = submitted[0]["timeline"]
        assert len(timeline["tracks"]) == 1
        assert "soundtrack" not in timeline


class TestFrameExtraction:
    @pytest.mark.asyncio
    async def test_render_server_last_frame(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={
                "first": "https://render.example.com/first.jpg",
                "last": "https://render.example.com/last.jpg",
            })

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        resolver = AssemblyResolver(
            AssemblyConfig(render_server_url="https://render.example.com", render_server_api_key="rs-key"),
            client=client,
        )

        assert resolver.can_extract_frames
        frame = await resolver.extract_last_frame("https://cdn.example.com/1.mp4")

        assert frame == "https://render.example.com/last.jpg"
        assert seen == [("/extract-frames", {"video_url": "https://cdn.example.com/1.mp4", "api_key": "rs-key"})]

    @pytest.mark.asyncio
    async def test_missing_last_frame(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"error": "ffmpeg"})))
        resolver = AssemblyResolver(AssemblyConfig(render_server_url="https://render.example.com"), client=client)

        with pytest.raises(AssemblyUnavailable):
            await resolver.extract_last_frame("https://cdn.example.com/1.mp4")

    @pytest.mark.asyncio
    async def test_no_render_server(self):
        resolver = AssemblyResolver(AssemblyConfig(shotstack_api_key="ss-key"))

        assert not resolver.can_extract_frames
        assert await resolver.extract_last_frame("https://cdn.example.com/1.mp4") is None
        await resolver.aclose()
