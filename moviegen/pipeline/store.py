"""
Job / scene / character persistence.

SupabaseJobStore is the production store (service-role client, RLS bypassed).
InMemoryJobStore has the same async interface and backs tests and local runs.

Tables:
  movies        one row per job; pipeline-owned columns + `metadata` jsonb
  movie_scenes  one row per scene; directive and bookkeeping in `metadata`
  characters    cast members, including identity-model fields
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

from supabase import Client

from .models import Character, JobStatus, Movie, Scene, SceneDirective

logger = logging.getLogger(__name__)

MOVIES_TABLE = "movies"
SCENES_TABLE = "movie_scenes"
CHARACTERS_TABLE = "characters"

_SCENE_META_FIELDS = (
    "directive",
    "attempts",
    "error",
    "continuity_snapshot",
    "audio_urls",
    "lip_synced_url",
    "reference_image_url",
    "reference_source",
    "last_frame_source",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Row mapping ──────────────────────────────────────────────────────────────

def movie_from_row(row: dict) -> Movie:
    return Movie(
        id=str(row["id"]),
        title=row.get("title") or "",
        genre=row.get("genre") or "",
        premise=row.get("user_prompt") or row.get("description") or "",
        plot=row.get("user_plot"),
        status=row.get("status") or "draft",
        progress=row.get("progress") or 0,
        character_ids=[str(c) for c in row.get("character_ids") or []],
        target_scene_count=row.get("target_scene_count"),
        video_url_720p=row.get("video_url_720p"),
        video_url_1080p=row.get("video_url_1080p"),
        video_url_4k=row.get("video_url_4k"),
        error_message=row.get("error_message"),
        metadata=row.get("metadata") or {},
    )


def movie_to_row(movie: Movie) -> dict:
    return {
        "title": movie.title,
        "status": movie.status.value,
        "progress": movie.progress,
        "video_url_720p": movie.video_url_720p,
        "video_url_1080p": movie.video_url_1080p,
        "video_url_4k": movie.video_url_4k,
        "error_message": movie.error_message,
        "target_scene_count": movie.target_scene_count,
        "metadata": movie.metadata,
        "updated_at": _now_iso(),
    }


def scene_from_row(row: dict) -> Scene:
    meta = row.get("metadata") or {}
    directive = meta.get("directive") or {
        "scene_number": row["scene_number"],
        "description": row.get("description") or "",
    }
    return Scene(
        id=str(row["id"]),
        movie_id=str(row["movie_id"]),
        scene_number=row["scene_number"],
        status=row.get("status") or "pending",
        directive=SceneDirective.model_validate(directive),
        prompt=row.get("prompt"),
        negative_prompt=row.get("negative_prompt"),
        video_url=row.get("video_url"),
        last_frame_url=row.get("last_frame_url"),
        is_continuation=bool(row.get("is_continuation")),
        attempts=meta.get("attempts") or 0,
        error=meta.get("error"),
        continuity_snapshot=meta.get("continuity_snapshot"),
        audio_urls=meta.get("audio_urls") or [],
        lip_synced_url=meta.get("lip_synced_url"),
        reference_image_url=meta.get("reference_image_url"),
        reference_source=meta.get("reference_source"),
        last_frame_source=meta.get("last_frame_source"),
    )


def scene_to_row(scene: Scene) -> dict:
    dumped = scene.model_dump(mode="json")
    return {
        "id": scene.id,
        "movie_id": scene.movie_id,
        "scene_number": scene.scene_number,
        "status": scene.status.value,
        "description": scene.directive.description,
        "prompt": scene.prompt,
        "negative_prompt": scene.negative_prompt,
        "video_url": scene.video_url,
        "last_frame_url": scene.last_frame_url,
        "is_continuation": scene.is_continuation,
        "metadata": {k: dumped[k] for k in _SCENE_META_FIELDS},
    }


CHARACTER_COLUMNS = (
    "name", "gender", "description", "physical_traits", "wardrobe", "reference_images",
    "thumbnail_url", "lora_model_url", "lora_trigger_word", "visual_prompt_base",
    "lora_locked", "voice_id", "voice_name", "tags",
)

# The pipeline only ever writes identity assets back to a character row.
_CHARACTER_WRITE_FIELDS = (
    "reference_images", "thumbnail_url", "lora_model_url", "lora_trigger_word", "lora_locked",
)


def character_from_row(row: dict) -> Character:
    meta = row.get("metadata") or {}
    data = {k: row.get(k) for k in CHARACTER_COLUMNS if k in row}
    data["id"] = str(row["id"])
    data["personality"] = row.get("personality") or meta.get("personality")
    data["mannerisms"] = row.get("mannerisms") or meta.get("mannerisms")
    return Character.model_validate(data)


def character_to_row(character: Character) -> dict:
    dumped = character.model_dump(mode="json")
    row = {k: dumped[k] for k in _CHARACTER_WRITE_FIELDS}
    if character.lora_locked:
        row["lora_locked_at"] = _now_iso()
    row["updated_at"] = _now_iso()
    return row


def new_scenes(movie_id: str, directives: list[SceneDirective]) -> list[Scene]:
    return [
        Scene(id=str(uuid.uuid4()), movie_id=movie_id, scene_number=d.scene_number, directive=d)
        for d in directives
    ]


# ── Supabase ─────────────────────────────────────────────────────────────────

class SupabaseJobStore:
    def __init__(self, client: Client):
        self.client = client

    async def get_movie(self, movie_id: str) -> Optional[Movie]:
        result = self.client.table(MOVIES_TABLE).select("*").eq("id", movie_id).limit(1).execute()
        if not result.data:
            return None
        return movie_from_row(result.data[0])

    async def save_movie(self, movie: Movie, expected_status: Optional[JobStatus] = None) -> bool:
        """
        Write the pipeline-owned columns of `movie`.

        With `expected_status` the update only applies while the stored row still
        has that status; returns False when another writer got there first.
        """
        query = self.client.table(MOVIES_TABLE).update(movie_to_row(movie)).eq("id", movie.id)
        if expected_status is not None:
            query = query.eq("status", JobStatus(expected_status).value)
        result = query.execute()
        if expected_status is None:
            return True
        return bool(result.data)

    async def list_scenes(self, movie_id: str) -> list[Scene]:
        result = (
            self.client.table(SCENES_TABLE)
            .select("*")
            .eq("movie_id", movie_id)
            .order("scene_number")
            .execute()
        )
        return [scene_from_row(r) for r in result.data or []]

    async def create_scenes(self, movie_id: str, directives: list[SceneDirective]) -> list[Scene]:
        scenes = new_scenes(movie_id, directives)
        self.client.table(SCENES_TABLE).insert([scene_to_row(s) for s in scenes]).execute()
        return scenes

    async def save_scene(self, scene: Scene):
        row = scene_to_row(scene)
        row["updated_at"] = _now_iso()
        self.client.table(SCENES_TABLE).update(row).eq("id", scene.id).execute()

    async def get_character(self, character_id: str) -> Optional[Character]:
        result = self.client.table(CHARACTERS_TABLE).select("*").eq("id", character_id).limit(1).execute()
        if not result.data:
            return None
        return character_from_row(result.data[0])

    async def get_characters(self, character_ids: list[str]) -> list[Character]:
        if not character_ids:
            return []
        result = self.client.table(CHARACTERS_TABLE).select("*").in_("id", character_ids).execute()
        by_id = {str(r["id"]): character_from_row(r) for r in result.data or []}
        return [by_id[cid] for cid in character_ids if cid in by_id]

    async def save_character(self, character: Character):
        self.client.table(CHARACTERS_TABLE).update(character_to_row(character)).eq("id", character.id).execute()


# ── In-memory ────────────────────────────────────────────────────────────────

class InMemoryJobStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._movies: dict[str, Movie] = {}
        self._scenes: dict[str, dict[int, Scene]] = {}
        self._characters: dict[str, Character] = {}
        # every saved scene version, in save order; tests use it to check ordering
        self.scene_log: list[Scene] = []

    def add_movie(self, movie: Movie):
        with self._lock:
            self._movies[movie.id] = movie

    def add_character(self, character: Character):
        with self._lock:
            self._characters[character.id] = character

    async def get_movie(self, movie_id: str) -> Optional[Movie]:
        with self._lock:
            movie = self._movies.get(movie_id)
            return movie.model_copy(deep=True) if movie else None

    async def save_movie(self, movie: Movie, expected_status: Optional[JobStatus] = None) -> bool:
        with self._lock:
            current = self._movies.get(movie.id)
            if expected_status is not None and (current is None or current.status != expected_status):
                return False
            self._movies[movie.id] = movie.model_copy(deep=True)
            return True

    async def list_scenes(self, movie_id: str) -> list[Scene]:
        with self._lock:
            scenes = self._scenes.get(movie_id, {})
            return [scenes[n].model_copy(deep=True) for n in sorted(scenes)]

    async def create_scenes(self, movie_id: str, directives: list[SceneDirective]) -> list[Scene]:
        scenes = new_scenes(movie_id, directives)
        with self._lock:
            self._scenes[movie_id] = {s.scene_number: s for s in scenes}
        return [s.model_copy(deep=True) for s in scenes]

    async def save_scene(self, scene: Scene):
        with self._lock:
            self._scenes.setdefault(scene.movie_id, {})[scene.scene_number] = scene.model_copy(deep=True)
            self.scene_log.append(scene.model_copy(deep=True))

    async def get_character(self, character_id: str) -> Optional[Character]:
        with self._lock:
            character = self._characters.get(character_id)
            return character.model_copy(deep=True) if character else None

    async def get_characters(self, character_ids: list[str]) -> list[Character]:
        with self._lock:
            return [self._characters[c].model_copy(deep=True) for c in character_ids if c in self._characters]

    async def save_character(self, character: Character):
        with self._lock:
            self._characters[character.id] = character.model_copy(deep=True)
