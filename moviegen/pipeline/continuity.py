"""
Continuity Context Manager.

Owns the per-job ContinuityState: who looks like what, what they wear, where
we are, the time of day and light, and the terminal frame of the last scene.

Scenes move through it strictly in order:

    ctx = manager.context_for(n, directive)   # read-only snapshot
    ... generate scene n with ctx, retrying with the same ctx ...
    manager.commit(ctx, last_frame_url)       # scene n completed
      or
    manager.skip(n)                           # scene n failed

State only changes on commit. A skipped scene leaves appearance and location
untouched but drops the frame anchor, so the scene after a gap never claims
to continue a frame it does not follow.
"""

import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..providers.errors import ContinuityInconsistent
from .models import Character, SceneDirective
from .visual_bible import VisualBible

logger = logging.getLogger(__name__)

CONTINUATION_WEIGHT = 0.85
# A location still image steers a fresh scene less than a continued frame does.
LOCATION_REFERENCE_WEIGHT = 0.6


class CharacterAppearance(BaseModel):
    model_config = ConfigDict(frozen=True)

    character_id: str
    name: str
    appearance: str = ""
    wardrobe: str = ""
    lora_url: Optional[str] = None
    trigger_word: Optional[str] = None
    portrait_url: Optional[str] = None

    @classmethod
    def from_character(cls, character: Character) -> "CharacterAppearance":
        return cls(
            character_id=character.id,
            name=character.name,
            appearance=describe_appearance(character),
            wardrobe=describe_wardrobe(character.wardrobe),
            lora_url=character.lora_model_url,
            trigger_word=character.lora_trigger_word,
            portrait_url=character.thumbnail_url,
        )


class LocationLook(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str = ""
    lighting: str = ""
    atmosphere: str = ""


class ContinuityState(BaseModel):
    """Serializable; `model_dump(mode="json")` round-trips through model_validate."""

    cursor: int = 0
    last_committed_scene: int = 0
    characters: dict[str, CharacterAppearance] = Field(default_factory=dict)
    location: str = ""
    time_of_day: str = ""
    lighting: str = ""
    last_frame_url: Optional[str] = None
    # From the visual bible; empty when the job has none.
    style: list[str] = Field(default_factory=list)
    locations: dict[str, LocationLook] = Field(default_factory=dict)
    # location key -> establishing still generated for it
    location_references: dict[str, str] = Field(default_factory=dict)


class SceneContext(BaseModel):
    """Fully resolved inputs for one scene. Immutable."""

    model_config = ConfigDict(frozen=True)

    scene_number: int
    directive: SceneDirective
    characters: tuple[CharacterAppearance, ...]
    location: str
    time_of_day: str
    lighting: str
    previous_location: str = ""
    reference_frame_url: Optional[str] = None
    reference_frame_weight: float = 0.0
    style: tuple[str, ...] = ()
    location_description: str = ""
    location_reference_url: Optional[str] = None

    @property
    def is_continuation(self) -> bool:
        return self.reference_frame_weight > 0 and self.reference_frame_url is not None


# ── Descriptions ─────────────────────────────────────────────────────────────

def _flatten(value) -> str:
    if isinstance(value, dict):
        return ", ".join(_flatten(v) for v in value.values() if v not in (None, "", [], {}))
    if isinstance(value, list):
        return ", ".join(_flatten(v) for v in value if v not in (None, "", [], {}))
    return str(value)


def describe_appearance(character: Character) -> str:
    if character.visual_prompt_base:
        return character.visual_prompt_base.strip()
    traits = character.physical_traits
    parts = []
    if character.gender:
        parts.append(character.gender)
    for key in sorted(traits):
        value = traits[key]
        if value in (None, "", [], {}):
            continue
        parts.append(f"{key.replace('_', ' ')}: {_flatten(value)}")
    if not parts and character.description:
        return character.description.strip()
    return ", ".join(parts)


def describe_wardrobe(wardrobe: dict) -> str:
    if not wardrobe:
        return ""
    for key in ("default", "default_outfit"):
        outfit = wardrobe.get(key)
        if isinstance(outfit, str) and outfit:
            return outfit
        if isinstance(outfit, dict) and outfit:
            return _flatten(outfit)
    return ", ".join(f"{k.replace('_', ' ')}: {_flatten(wardrobe[k])}" for k in sorted(wardrobe) if wardrobe[k])


def _key(name: str) -> str:
    return name.strip().lower()


# ── Manager ──────────────────────────────────────────────────────────────────

class ContinuityManager:
    def __init__(self, state: Optional[ContinuityState] = None):
        self._state = state or ContinuityState()

    @classmethod
    def for_cast(cls, characters: list[Character], bible: Optional[VisualBible] = None) -> "ContinuityManager":
        """Initial state for a job. The bible, when given, seeds style and location defaults."""
        state = ContinuityState(
            characters={_key(c.name): CharacterAppearance.from_character(c) for c in characters}
        )
        if bible is None:
            return cls(state)
        profiles = [p for p in bible.locations if p.name.strip()]
        locations = {
            _key(p.name): LocationLook(
                description=p.description, lighting=p.lighting_default, atmosphere=p.atmosphere
            )
            for p in profiles
        }
        state = state.model_copy(update={
            "style": bible.style_lines(),
            "locations": locations,
            "location": profiles[0].name if profiles else "",
            "lighting": profiles[0].lighting_default if profiles else "",
        })
        return cls(state)

    @classmethod
    def from_snapshot(cls, snapshot: dict) -> "ContinuityManager":
        return cls(ContinuityState.model_validate(snapshot))

    @property
    def state(self) -> ContinuityState:
        return self._state.model_copy(deep=True)

    def snapshot(self) -> dict:
        return self._state.model_dump(mode="json")

    def _expect_next(self, scene_number: int):
        expected = self._state.cursor + 1
        if scene_number != expected:
            raise ContinuityInconsistent(
                f"Scene {scene_number} out of order: continuity is waiting for scene {expected}"
            )

    def context_for(self, scene_number: int, directive: SceneDirective) -> SceneContext:
        """Resolve the inputs for `scene_number`. Does not change state."""
        self._expect_next(scene_number)
        if directive.scene_number != scene_number:
            raise ContinuityInconsistent(
                f"Directive for scene {directive.scene_number} passed as scene {scene_number}"
            )
        state = self._state

        location = directive.location or state.location
        look = state.locations.get(_key(location)) or LocationLook()
        time_of_day = directive.time_of_day or state.time_of_day
        lighting = directive.lighting or look.lighting or state.lighting

        if directive.characters:
            wanted = [_key(n) for n in directive.characters]
        else:
            wanted = list(state.characters)
        wardrobe_changes = {_key(k): v for k, v in directive.wardrobe_changes.items()}

        cast = []
        for key in dict.fromkeys(wanted):
            appearance = state.characters.get(key)
            if appearance is None:
                logger.warning(f"Scene {scene_number} names unknown character '{key}'")
                continue
            if key in wardrobe_changes:
                appearance = appearance.model_copy(update={"wardrobe": wardrobe_changes[key]})
            cast.append(appearance)

        same_place = bool(state.location) and _key(location) == _key(state.location)
        if state.last_frame_url and same_place:
            reference_url, weight = state.last_frame_url, CONTINUATION_WEIGHT
        else:
            reference_url, weight = None, 0.0

        return SceneContext(
            scene_number=scene_number,
            directive=directive,
            characters=tuple(cast),
            location=location,
            time_of_day=time_of_day,
            lighting=lighting,
            previous_location=state.location,
            reference_frame_url=reference_url,
            reference_frame_weight=weight,
            style=tuple(state.style),
            location_description=look.description,
            location_reference_url=state.location_references.get(_key(location)),
        )

    def commit(self, context: SceneContext, last_frame_url: Optional[str]):
        """Scene `context.scene_number` completed: fold its result into the state."""
        self._expect_next(context.scene_number)
        state = self._state

        characters = dict(state.characters)
        for name, outfit in context.directive.wardrobe_changes.items():
            key = _key(name)
            if key in characters:
                characters[key] = characters[key].model_copy(update={"wardrobe": outfit})

        references = dict(state.location_references)
        if context.location_reference_url and context.location:
            references[_key(context.location)] = context.location_reference_url

        self._state = state.model_copy(update={
            "cursor": context.scene_number,
            "last_committed_scene": context.scene_number,
            "characters": characters,
            "location": context.location,
            "time_of_day": context.time_of_day,
            "lighting": context.lighting,
            "last_frame_url": last_frame_url,
            "location_references": references,
        })

    def skip(self, scene_number: int):
        """Scene failed: advance past it without taking anything from it."""
        self._expect_next(scene_number)
        self._state = self._state.model_copy(update={"cursor": scene_number, "last_frame_url": None})

    def update_character(self, character: Character):
        """Refresh a cast member after identity training or portrait generation."""
        if self._state.cursor:
            raise ContinuityInconsistent("Cast changed after scene generation started")
        key = _key(character.name)
        characters = {**self._state.characters, key: CharacterAppearance.from_character(character)}
        self._state = self._state.model_copy(update={"characters": characters})
