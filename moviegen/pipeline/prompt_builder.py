"""
Scene Prompt Builder.

Compiles a SceneContext into the vendor-ready positive / negative prompt pair.
Pure and deterministic: the same context always yields the same text.

The positive prompt is assembled from prioritized sections. When the result
exceeds the video vendor's limit, the lowest-priority sections are dropped
first; the style header, setting and cast are kept as long as possible.
"""

from typing import Optional

from pydantic import BaseModel

from .continuity import CharacterAppearance, SceneContext

DEFAULT_MAX_PROMPT_LENGTH = 1000

STYLE_HEADER = "Cinematic film scene, photorealistic, 8K quality"
CONTINUITY_LINE = "Maintain perfect visual continuity with the previous frame."
QUALITY_FOOTER = "Professional cinematography, film grain, color graded."

CONTINUITY_NEGATIVES = [
    "inconsistent lighting",
    "wrong time of day",
    "different location",
    "mismatched colors",
    "broken continuity",
    "jarring transition",
    "character appearance change",
    "different face",
    "different outfit",
]
QUALITY_NEGATIVES = [
    "cartoon",
    "anime",
    "illustration",
    "painting",
    "3d render",
    "CGI",
    "fake",
    "artificial",
    "low quality",
    "blurry",
    "deformed",
]

# Higher number = kept longer.
PRIORITY_STYLE = 100
PRIORITY_SETTING = 90
PRIORITY_CAST = 80
PRIORITY_ACTION = 70
PRIORITY_CONTINUITY = 60
PRIORITY_LOOK = 50
PRIORITY_CAMERA = 40
PRIORITY_MOOD = 30
PRIORITY_DIALOGUE = 20
PRIORITY_QUALITY = 10


class ScenePrompt(BaseModel):
    positive: str
    negative: str
    reference_frame_url: Optional[str] = None
    reference_frame_weight: float = 0.0
    dropped_sections: list[str] = []


def character_prompt(appearance: CharacterAppearance) -> str:
    if appearance.trigger_word:
        text = f"{appearance.trigger_word} as {appearance.name}"
    elif appearance.appearance:
        text = f"{appearance.name}, {appearance.appearance}"
    else:
        text = appearance.name
    if appearance.wardrobe:
        text += f", wearing {appearance.wardrobe}"
    return text


def style_lines(context: SceneContext) -> str:
    """The movie-wide look plus what this location always shows."""
    lines = [line.rstrip(".") + "." for line in context.style if line.strip()]
    if context.location_description:
        lines.append(f"Setting details: {context.location_description.rstrip('.')}.")
    return " ".join(lines)


def build_negative_prompt(forbidden_elements: list[str]) -> str:
    seen = []
    for item in [*forbidden_elements, *CONTINUITY_NEGATIVES, *QUALITY_NEGATIVES]:
        item = item.strip()
        if item and item.lower() not in (s.lower() for s in seen):
            seen.append(item)
    return ", ".join(seen)


def _sections(context: SceneContext) -> list[tuple[int, str, str]]:
    d = context.directive
    sections = [(PRIORITY_STYLE, "style", STYLE_HEADER)]

    setting = [s for s in (
        f"Location: {context.location}" if context.location else "",
        f"Time: {context.time_of_day}" if context.time_of_day else "",
        f"Lighting: {context.lighting}" if context.lighting else "",
    ) if s]
    if setting:
        sections.append((PRIORITY_SETTING, "setting", ". ".join(setting) + "."))

    if context.characters:
        cast = "; ".join(character_prompt(c) for c in context.characters)
        sections.append((PRIORITY_CAST, "cast", f"Characters: {cast}."))

    sections.append((PRIORITY_ACTION, "action", f"Action: {d.description.strip()}"))

    if context.is_continuation:
        sections.append((PRIORITY_CONTINUITY, "continuity", CONTINUITY_LINE))
    look = style_lines(context)
    if look:
        sections.append((PRIORITY_LOOK, "look", look))
    if d.camera:
        sections.append((PRIORITY_CAMERA, "camera", f"Camera: {d.camera}."))
    if d.mood:
        sections.append((PRIORITY_MOOD, "mood", f"Mood: {d.mood}."))
    if d.dialogue:
        speaking = " ".join(f'{line.character} says "{line.line}"' for line in d.dialogue)
        sections.append((PRIORITY_DIALOGUE, "dialogue", speaking))
    sections.append((PRIORITY_QUALITY, "quality", QUALITY_FOOTER))
    return sections


def _truncate_words(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(" ", 1)[0]
    return cut.rstrip(" ,.;:")


def build_scene_prompt(context: SceneContext, max_length: int = DEFAULT_MAX_PROMPT_LENGTH) -> ScenePrompt:
    sections = _sections(context)
    dropped = []

    def render(parts):
        return "\n".join(text for _, _, text in parts)

    kept = list(sections)
    while len(render(kept)) > max_length and len(kept) > 1:
        lowest = min(kept, key=lambda s: s[0])
        kept.remove(lowest)
        dropped.append(lowest[1])

    positive = _truncate_words(render(kept), max_length)

    return ScenePrompt(
        positive=positive,
        negative=build_negative_prompt(context.directive.forbidden_elements),
        reference_frame_url=context.reference_frame_url,
        reference_frame_weight=context.reference_frame_weight,
        dropped_sections=dropped,
    )
