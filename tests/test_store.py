"""
Tests for job / scene / character persistence: row mapping and both stores.
"""

from unittest.mock import MagicMock

import pytest

from moviegen.pipeline.continuity import describe_appearance, describe_wardrobe
from moviegen.pipeline.models import Character, DialogueLine, JobStatus, Movie, Scene, SceneDirective, SceneStatus
from moviegen.pipeline.store import (
    InMemoryJobStore,
    SupabaseJobStore,
    character_from_row,
    character_to_row,
    movie_from_row,
    movie_to_row,
    scene_from_row,
    scene_to_row,
)


def supabase_client(rows=None) -> MagicMock:
    """MagicMock of the supabase client; every query chain answers `rows`."""
    client = MagicMock()
    table = client.table.return_value
    for name in ("select", "update", "insert", "eq", "in_", "limit", "order"):
        getattr(table, name).return_value = table
    table.execute.return_value = MagicMock(data=rows if rows is not None else [])
    return client


def character_row(**overrides) -> dict:
    row = {
        "id": "char-1",
        "name": "Rosa",
        "slug": "rosa",
        "category": "drama",
        "gender": "female",
        "description": "retired boxer",
        "physical_traits": None,
        "wardrobe": None,
        "tags": None,
        "reference_images": None,
        "thumbnail_url": None,
        "voice_provider_id": None,
        "voice_id": "voice-rosa",
        "voice_name": "Rosa",
        "lora_model_url": None,
        "lora_trigger_word": None,
        "visual_prompt_base": None,
        "usage_count": 3,
        "is_active": True,
        "is_premium": False,
        "created_at": "2026-01-01T00:00:00Z",
        "updated_at": "2026-01-01T00:00:00Z",
    }
    row.update(overrides)
    return row


# ── Characters ───────────────────────────────────────────────────────────────

class TestCharacterRows:
    def test_null_json_columns(self):
        character = character_from_row(character_row())

        assert character.physical_traits == {}
        assert character.wardrobe == {}
        assert character.reference_images == []
        assert character.tags == []
        assert character.lora_locked is False
        assert not character.is_locked

    def test_mannerisms_and_personality_from_metadata(self):
        row = character_row(metadata={
            "mannerisms": ["cracks knuckles"],
            "personality": {"primary_traits": ["stubborn", "warm"], "flaws": ["proud"]},
        })
        character = character_from_row(row)

        assert character.mannerisms == ["cracks knuckles"]
        assert character.personality_summary == "primary traits: stubborn, warm; flaws: proud"

    def test_nested_traits_and_outfit_describe(self):
        character = character_from_row(character_row(
            physical_traits={"hair": {"color": "grey", "style": "cropped"}, "build": "stocky"},
            wardrobe={"default_outfit": {"top": "red hoodie", "footwear": "boots"}},
        ))

        assert describe_appearance(character) == "female, build: stocky, hair: grey, cropped"
        assert describe_wardrobe(character.wardrobe) == "red hoodie, boots"

    def test_written_columns_are_pipeline_owned(self):
        character = Character(
            id="char-1",
            name="Rosa",
            personality={"primary_traits": ["stubborn"]},
            mannerisms=["cracks knuckles"],
            reference_images=["https://cdn.example.com/r1.png"],
            lora_model_url="https://cdn.example.com/rosa.safetensors",
            lora_trigger_word="MOVIEGEN_ROSA",
            thumbnail_url="https://cdn.example.com/rosa.png",
            lora_locked=True,
        )
        row = character_to_row(character)

        assert set(row) == {
            "reference_images",
            "thumbnail_url",
            "lora_model_url",
            "lora_trigger_word",
            "lora_locked",
            "lora_locked_at",
            "updated_at",
        }
        assert row["lora_locked"] is True

    @pytest.mark.asyncio
    async def test_supabase_get_characters_with_null_columns(self):
        client = supabase_client([character_row(), character_row(id="char-2", name="Ike", wardrobe={"default": "suit"})])
        store = SupabaseJobStore(client)

        characters = await store.get_characters(["char-2", "char-1", "missing"])

        assert [c.name for c in characters] == ["Ike", "Rosa"]
        assert characters[0].wardrobe == {"default": "suit"}
        client.table.return_value.in_.assert_called_once_with("id", ["char-2", "char-1", "missing"])

    @pytest.mark.asyncio
    async def test_supabase_save_character_writes_only_known_columns(self):
        client = supabase_client()
        store = SupabaseJobStore(client)

        await store.save_character(Character(id="char-1", name="Rosa", mannerisms=["hums"]))

        written = client.table.return_value.update.call_args[0][0]
        assert "mannerisms" not in written
        assert "personality" not in written
        assert "lora_locked_at" not in written


# ── Movies and scenes ────────────────────────────────────────────────────────

class TestRowRoundTrip:
    def test_movie(self):
        movie = Movie(
            id="movie-1",
            title="Diner Night",
            status=JobStatus.GENERATING_SCENES,
            progress=45,
            target_scene_count=4,
            video_url_720p="https://cdn.example.com/m.mp4",
            error_message=None,
            metadata={"scene_count": 4, "visual_bible": {"visual_style": "noir"}},
        )
        row = {
            **movie_to_row(movie),
            "id": movie.id,
            "genre": "noir",
            "user_prompt": "a long night",
            "character_ids": ["char-1"],
        }
        restored = movie_from_row(row)

        assert restored.status == JobStatus.GENERATING_SCENES
        assert restored.progress == 45
        assert restored.target_scene_count == 4
        assert restored.video_url_720p == movie.video_url_720p
        assert restored.metadata == movie.metadata
        assert restored.premise == "a long night"
        assert restored.character_ids == ["char-1"]

    def test_scene_keeps_directive_and_snapshot(self):
        snapshot = {
            "cursor": 2,
            "last_committed_scene": 2,
            "location": "roadside diner",
            "last_frame_url": "https://cdn.example.com/2.jpg",
            "location_references": {"roadside diner": "https://cdn.example.com/diner.png"},
        }
        scene = Scene(
            id="scene-2",
            movie_id="movie-1",
            scene_number=2,
            status=SceneStatus.COMPLETED,
            directive=SceneDirective(
                scene_number=2,
                description="Sam pours the coffee.",
                location="roadside diner",
                dialogue=[DialogueLine(character="Sam", line="Refill?")],
                wardrobe_changes={"Sam": "apron"},
            ),
            prompt="Cinematic film scene",
            video_url="https://cdn.example.com/2.mp4",
            last_frame_url="https://cdn.example.com/2.jpg",
            is_continuation=True,
            attempts=2,
            continuity_snapshot=snapshot,
            audio_urls=["https://cdn.example.com/line.mp3"],
            reference_image_url=None,
            last_frame_source="generated",
        )

        assert scene_from_row(scene_to_row(scene)) == scene

    def test_scene_row_without_metadata(self):
        scene = scene_from_row({"id": "s", "movie_id": "m", "scene_number": 3, "description": "Beat 3"})
        assert scene.directive.description == "Beat 3"
        assert scene.continuity_snapshot is None
        assert scene.status == SceneStatus.PENDING


# ── Conditional movie writes ─────────────────────────────────────────────────

class TestConditionalSave:
    @pytest.mark.asyncio
    async def test_in_memory_expected_status(self):
        store = InMemoryJobStore()
        movie = Movie(id="movie-1", status=JobStatus.GENERATING_SCENES)
        store.add_movie(movie)
        cancelled = movie.model_copy(update={"status": JobStatus.FAILED, "metadata": {"cancelled": True}})
        await store.save_movie(cancelled)

        stale = movie.model_copy(update={"progress": 40})
        assert await store.save_movie(stale, expected_status=JobStatus.GENERATING_SCENES) is False
        assert (await store.get_movie("movie-1")).metadata == {"cancelled": True}

        assert await store.save_movie(stale, expected_status=JobStatus.FAILED) is True
        assert (await store.get_movie("movie-1")).progress == 40

    @pytest.mark.asyncio
    async def test_supabase_filters_on_status(self):
        client = supabase_client(rows=[])
        store = SupabaseJobStore(client)
        movie = Movie(id="movie-1", status=JobStatus.ASSEMBLING)

        saved = await store.save_movie(movie, expected_status=JobStatus.GENERATING_SCENES)

        assert saved is False
        table = client.table.return_value
        table.eq.assert_any_call("id", "movie-1")
        table.eq.assert_any_call("status", "generating_scenes")

    @pytest.mark.asyncio
    async def test_supabase_unconditional(self):
        client = supabase_client(rows=[])
        store = SupabaseJobStore(client)

        assert await store.save_movie(Movie(id="movie-1")) is True
        client.table.return_value.eq.assert_called_once_with("id", "movie-1")
