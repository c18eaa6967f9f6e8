"""
Visual bible: the look of the whole movie, fixed before the script is written.

One language-model call produces the palette, lighting rules and a profile
per location. The bible is stored in the job's metadata, fed to the script
prompt, and seeds the continuity state so every scene prompt carries the
same style lines and per-location defaults.

A bible that cannot be generated or parsed is replaced by a neutral fallback;
it never fails the job.
"""

import json
import logging
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..providers.errors import MalformedVendorResponse, VendorRejected, VendorUnavailable
from ..providers.models import Capability, ChatMessage, ChatRequest, ChatResult
from .models import Movie

logger = logging.getLogger(__name__)

BIBLE_ERRORS = (VendorUnavailable, VendorRejected, MalformedVendorResponse)

VISUAL_BIBLE_SYSTEM_PROMPT = """You are the creative director of a film studio.
Write the VISUAL BIBLE of a short film: the rules every shot must follow.
Answer with a single JSON object, no markdown, with this EXACT structure:
{
  "logline": "one sentence summary",
  "tone": "e.g. tense, romantic, light-hearted",
  "era": "e.g. contemporary, 1980s, near future",
  "visual_style": "e.g. cinematic realism, noir, saturated",
  "palette": {
    "primary": {"name": "string", "hex": "#XXXXXX"},
    "secondary": {"name": "string", "hex": "#XXXXXX"},
    "accent": {"name": "string", "hex": "#XXXXXX"}
  },
  "lighting_rules": {
    "day_exterior": "how daylight exteriors are lit",
    "night_exterior": "string",
    "interior": "string",
    "golden_hour": "string"
  },
  "locations": [
    {
      "name": "short location name",
      "description": "what the place looks like",
      "key_elements": ["elements that always appear here"],
      "lighting_default": "default lighting for this place",
      "atmosphere": "string"
    }
  ],
  "continuity_rules": ["rules that must never be broken"],
  "forbidden_elements": ["things that must never appear"]
}"""


class PaletteColor(BaseModel):
    name: str = ""
    hex: str = ""


class LocationProfile(BaseModel):
    name: str
    description: str = ""
    key_elements: list[str] = Field(default_factory=list)
    lighting_default: str = ""
    atmosphere: str = ""

    @field_validator("key_elements", mode="before")
    @classmethod
    def _null_list(cls, value):
        return [] if value is None else value


class VisualBible(BaseModel):
    logline: str = ""
    tone: str = ""
    era: str = ""
    visual_style: str = ""
    palette: dict[str, PaletteColor] = Field(default_factory=dict)
    lighting_rules: dict[str, str] = Field(default_factory=dict)
    locations: list[LocationProfile] = Field(default_factory=list)
    continuity_rules: list[str] = Field(default_factory=list)
    forbidden_elements: list[str] = Field(default_factory=list)
    fallback: bool = False

    @field_validator("lighting_rules", mode="before")
    @classmethod
    def _flatten_rules(cls, value):
        # Models often answer each rule as an object of type/direction/intensity.
        if not isinstance(value, dict):
            return {}
        rules = {}
        for key, rule in value.items():
            if isinstance(rule, dict):
                rule = ", ".join(str(v) for v in rule.values() if v)
            if rule:
                rules[key] = str(rule)
        return rules

    @field_validator("palette", mode="before")
    @classmethod
    def _null_object(cls, value):
        return {} if value is None else value

    @field_validator("locations", "continuity_rules", "forbidden_elements", mode="before")
    @classmethod
    def _null_list(cls, value):
        return [] if value is None else value

    def location(self, name: str) -> Optional[LocationProfile]:
        key = name.strip().lower()
        for profile in self.locations:
            if profile.name.strip().lower() == key:
                return profile
        return None

    def style_lines(self) -> list[str]:
        """Short, prompt-ready statements of the movie's look."""
        lines = []
        if self.visual_style:
            lines.append(f"Visual style: {self.visual_style}")
        colors = [c.name or c.hex for c in self.palette.values() if c.name or c.hex]
        if colors:
            lines.append(f"Palette: {', '.join(colors)}")
        if self.era:
            lines.append(f"Era: {self.era}")
        return lines

    def summary(self) -> str:
        """Plain-text digest for the script prompt."""
        lines = self.style_lines()
        if self.tone:
            lines.append(f"Tone: {self.tone}")
        for profile in self.locations:
            text = f"Location '{profile.name}'"
            if profile.description:
                text += f": {profile.description}"
            lines.append(text)
        lines.extend(f"Rule: {rule}" for rule in self.continuity_rules)
        return "\n".join(lines)


def fallback_bible(movie: Movie) -> VisualBible:
    return VisualBible(
        logline=movie.premise[:200],
        tone=movie.genre or "drama",
        visual_style="cinematic realism",
        lighting_rules={
            "day_exterior": "soft natural daylight",
            "night_exterior": "practical lights, deep shadows",
            "interior": "motivated warm key light",
        },
        continuity_rules=[
            "characters never change clothes without an explicit change",
            "time of day progresses logically",
        ],
        fallback=True,
    )


def build_visual_bible_request(movie: Movie) -> ChatRequest:
    user_prompt = (
        f"Title: {movie.title or 'untitled'}\n"
        f"Genre: {movie.genre or 'drama'}\n"
        f"Premise: {movie.premise}\n"
        + (f"Plot: {movie.plot}\n" if movie.plot else "")
    )
    return ChatRequest(
        messages=[
            ChatMessage(role="system", content=VISUAL_BIBLE_SYSTEM_PROMPT),
            ChatMessage(role="user", content=user_prompt),
        ],
        temperature=0.7,
        max_tokens=3000,
        json_output=True,
        purpose="visual_bible",
        hints={"premise": movie.premise, "genre": movie.genre},
    )


def parse_visual_bible(text: str) -> VisualBible:
    """
    Raises:
        MalformedVendorResponse: not a JSON object, or fields of the wrong shape.
    """
    body = text.strip()
    if body.startswith("```"):
        body = body.strip("`")
        if body.startswith("json"):
            body = body[4:]
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise MalformedVendorResponse("visual bible is not valid JSON", vendor="llm", raw_text=text)
    if not isinstance(data, dict):
        raise MalformedVendorResponse("visual bible is not an object", vendor="llm", raw_text=text)
    try:
        return VisualBible.model_validate({**data, "fallback": False})
    except ValidationError as e:
        raise MalformedVendorResponse(
            f"visual bible is invalid: {e.error_count()} error(s)", vendor="llm", raw_text=text
        )


async def generate_visual_bible(gateway, movie: Movie) -> tuple[VisualBible, Optional[str]]:
    """
    Returns:
        (bible, warning). `warning` is set when the fallback bible was used.
    """
    try:
        result: ChatResult = await gateway.invoke(Capability.LLM, build_visual_bible_request(movie))
        bible = parse_visual_bible(result.content)
    except BIBLE_ERRORS as e:
        logger.warning(f"[{movie.id}] Visual bible unavailable, using fallback: {e}")
        return fallback_bible(movie), f"{type(e).__name__}: {e}"[:300]
    logger.info(f"[{movie.id}] Visual bible ready: {len(bible.locations)} location(s) via {result.provider}")
    return bible, None
