"""
Pydantic models and enums for the movie generation pipeline.
"""

import math
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from ..providers.errors import CharacterLocked


# ── Job Status ───────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    DRAFT = "draft"
    GENERATING_SCRIPT = "generating_script"
    GENERATING_CHARACTERS = "generating_characters"
    GENERATING_SCENES = "generating_scenes"
    ASSEMBLING = "assembling"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.REJECTED}

# Forward-only, plus `failed` from anywhere non-terminal. A failed job re-enters
# a generating_* phase on manual retry. `rejected` is set by moderation only.
ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.DRAFT: {JobStatus.GENERATING_SCRIPT, JobStatus.FAILED, JobStatus.REJECTED},
    JobStatus.GENERATING_SCRIPT: {JobStatus.GENERATING_CHARACTERS, JobStatus.FAILED, JobStatus.REJECTED},
    JobStatus.GENERATING_CHARACTERS: {JobStatus.GENERATING_SCENES, JobStatus.FAILED, JobStatus.REJECTED},
    JobStatus.GENERATING_SCENES: {JobStatus.ASSEMBLING, JobStatus.FAILED, JobStatus.REJECTED},
    JobStatus.ASSEMBLING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.REJECTED},
    JobStatus.COMPLETED: {JobStatus.REJECTED},
    JobStatus.FAILED: {
        JobStatus.GENERATING_SCRIPT,
        JobStatus.GENERATING_CHARACTERS,
        JobStatus.GENERATING_SCENES,
        JobStatus.REJECTED,
    },
    JobStatus.REJECTED: set(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class SceneStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_SCENE_STATUSES = {SceneStatus.COMPLETED, SceneStatus.FAILED}


class AssemblyStatus(str, Enum):
    PENDING_REAL_ASSEMBLY = "pending_real_assembly"
    REAL = "real"
    FALLBACK_SEQUENTIAL = "fallback_sequential"


# ── Script ───────────────────────────────────────────────────────────────────

class DialogueLine(BaseModel):
    character: str
    line: str


class SceneDirective(BaseModel):
    """What the script says about one scene."""
    scene_number: int
    description: str
    location: str = ""
    time_of_day: str = ""
    lighting: str = ""
    camera: str = ""
    mood: str = ""
    characters: list[str] = Field(default_factory=list)
    dialogue: list[DialogueLine] = Field(default_factory=list)
    # character name → new outfit, only when the script calls for a change
    wardrobe_changes: dict[str, str] = Field(default_factory=dict)
    forbidden_elements: list[str] = Field(default_factory=list)


class ParsedScript(BaseModel):
    title: str = ""
    scenes: list[SceneDirective]
    raw_text: str = ""


# ── Characters ───────────────────────────────────────────────────────────────

# Frozen once the identity model is trained and the canonical portrait exists.
VISUAL_FIELDS = frozenset({
    "gender",
    "description",
    "physical_traits",
    "wardrobe",
    "reference_images",
    "thumbnail_url",
    "lora_model_url",
    "lora_trigger_word",
    "visual_prompt_base",
})

# Always editable.
BEHAVIORAL_FIELDS = frozenset({
    "personality",
    "mannerisms",
    "voice_id",
    "voice_name",
    "tags",
})

# Managed by the pipeline, never by an edit.
SYSTEM_FIELDS = frozenset({"id", "name", "lora_locked"})


class Character(BaseModel):
    id: str
    name: str
    gender: Optional[str] = None
    description: Optional[str] = None
    physical_traits: dict = Field(default_factory=dict)
    wardrobe: dict = Field(default_factory=dict)
    reference_images: list[str] = Field(default_factory=list)
    thumbnail_url: Optional[str] = None
    lora_model_url: Optional[str] = None
    lora_trigger_word: Optional[str] = None
    visual_prompt_base: Optional[str] = None
    lora_locked: bool = False
    # Free text, or the structured form {"primary_traits": [...], "flaws": [...]}
    personality: Optional[Union[str, dict]] = None
    mannerisms: list[str] = Field(default_factory=list)
    voice_id: Optional[str] = None
    voice_name: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    # JSON columns are nullable in the characters table.
    @field_validator("physical_traits", "wardrobe", mode="before")
    @classmethod
    def _null_object(cls, value):
        return {} if value is None else value

    @field_validator("reference_images", "mannerisms", "tags", mode="before")
    @classmethod
    def _null_list(cls, value):
        return [] if value is None else value

    @field_validator("lora_locked", mode="before")
    @classmethod
    def _null_flag(cls, value):
        return bool(value)

    @property
    def personality_summary(self) -> str:
        if not self.personality:
            return ""
        if isinstance(self.personality, str):
            return self.personality.strip()
        parts = []
        for key, value in self.personality.items():
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value if v)
            if value:
                parts.append(f"{key.replace('_', ' ')}: {value}")
        return "; ".join(parts)

    @property
    def is_locked(self) -> bool:
        return bool(self.lora_locked and self.lora_model_url and self.thumbnail_url)

    def apply_update(self, changes: dict) -> "Character":
        """
        Return a copy with `changes` applied.

        Raises:
            ValueError:      unknown or pipeline-managed field.
            CharacterLocked: visual field on a locked character.
        """
        unknown = set(changes) - VISUAL_FIELDS - BEHAVIORAL_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
        visual = set(changes) & VISUAL_FIELDS
        if visual and self.is_locked:
            raise CharacterLocked(
                f"Character '{self.name}' is locked; cannot change {', '.join(sorted(visual))}"
            )
        return self.model_validate({**self.model_dump(), **changes})


# ── Jobs and scenes ──────────────────────────────────────────────────────────

class Movie(BaseModel):
    id: str
    title: str = ""
    genre: str = ""
    premise: str = ""
    plot: Optional[str] = None
    status: JobStatus = JobStatus.DRAFT
    progress: int = 0
    character_ids: list[str] = Field(default_factory=list)
    target_scene_count: Optional[int] = None
    video_url_720p: Optional[str] = None
    video_url_1080p: Optional[str] = None
    video_url_4k: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class Scene(BaseModel):
    id: str
    movie_id: str
    scene_number: int
    status: SceneStatus = SceneStatus.PENDING
    directive: SceneDirective
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    video_url: Optional[str] = None
    last_frame_url: Optional[str] = None
    is_continuation: bool = False
    attempts: int = 0
    error: Optional[str] = None
    # Continuity state right after this scene committed; lets a resumed job
    # continue from the last completed scene.
    continuity_snapshot: Optional[dict] = None
    audio_urls: list[str] = Field(default_factory=list)
    lip_synced_url: Optional[str] = None
    # Still that steered a fresh scene, and where each still came from.
    reference_image_url: Optional[str] = None
    reference_source: Optional[str] = None
    last_frame_source: Optional[str] = None


# ── API models ───────────────────────────────────────────────────────────────

class StartRequest(BaseModel):
    scene_count: Optional[int] = Field(None, ge=1, le=30)


class CancelRequest(BaseModel):
    reason: str = "Cancelled"


class SceneProgress(BaseModel):
    scene_number: int
    status: SceneStatus
    video_url: Optional[str] = None
    is_continuation: bool = False
    error: Optional[str] = None


class ProgressResponse(BaseModel):
    job_id: str
    status: JobStatus
    progress_pct: int
    scenes: list[SceneProgress] = Field(default_factory=list)
    partial_urls: list[str] = Field(default_factory=list)
    assembly_status: Optional[AssemblyStatus] = None
    video_urls: dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None


STATUS_PROGRESS = {
    JobStatus.DRAFT: 0,
    JobStatus.GENERATING_SCRIPT: 5,
    JobStatus.GENERATING_CHARACTERS: 12,
    JobStatus.GENERATING_SCENES: 20,
    JobStatus.ASSEMBLING: 75,
    JobStatus.COMPLETED: 100,
}


def estimate_progress(status: JobStatus, scenes: list[Scene], stored: int = 0) -> int:
    """20% + 50% x terminal/total while scenes render; fixed marks otherwise."""
    if status == JobStatus.GENERATING_SCENES and scenes:
        done = sum(1 for s in scenes if s.status in TERMINAL_SCENE_STATUSES)
        return 20 + math.floor(done / len(scenes) * 50)
    if status in STATUS_PROGRESS:
        return STATUS_PROGRESS[status]
    return stored
