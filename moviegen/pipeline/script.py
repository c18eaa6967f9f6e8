"""
Script generation: premise + cast → ParsedScript via the language model.

Parse failures raise MalformedVendorResponse carrying the raw model output so
the job can be failed with the text preserved. The prompt is never mutated
and retried.
"""

import json
import logging
from typing import Optional

from pydantic import ValidationError

from ..providers.errors import MalformedVendorResponse
from ..providers.models import Capability, ChatMessage, ChatRequest, ChatResult
from .models import Character, Movie, ParsedScript, SceneDirective
from .visual_bible import VisualBible

logger = logging.getLogger(__name__)

SCRIPT_SYSTEM_PROMPT = """You are a screenwriter for short AI-generated films.
Write a script as a single JSON object, no markdown, with this EXACT structure:
{
  "title": "string",
  "scenes": [
    {
      "scene_number": 1,
      "location": "where the scene happens",
      "time_of_day": "morning / afternoon / dusk / night ...",
      "lighting": "lighting description",
      "description": "what happens visually, one or two sentences",
      "camera": "shot type and movement",
      "mood": "emotional tone",
      "characters": ["names of characters on screen"],
      "dialogue": [{"character": "name", "line": "spoken line"}],
      "wardrobe_changes": {"name": "new outfit, only if it changes in this scene"},
      "forbidden_elements": ["things that must not appear"]
    }
  ]
}
Each scene is about 10 seconds of video. Reuse the exact location text when
consecutive scenes happen in the same place. Only use the listed characters."""


def _cast_line(character: Character) -> str:
    parts = [character.name]
    if character.description:
        parts.append(character.description)
    if character.personality_summary:
        parts.append(f"personality: {character.personality_summary}")
    return " - ".join(parts)


def build_script_request(
    movie: Movie, characters: list[Character], scene_count: int, bible: Optional[VisualBible] = None
) -> ChatRequest:
    cast = "\n".join(f"- {_cast_line(c)}" for c in characters) or "- (no fixed cast)"
    user_prompt = (
        f"Title: {movie.title or 'untitled'}\n"
        f"Genre: {movie.genre or 'drama'}\n"
        f"Premise: {movie.premise}\n"
        + (f"Plot: {movie.plot}\n" if movie.plot else "")
        + f"Number of scenes: {scene_count}\n"
        f"Characters:\n{cast}"
    )
    if bible is not None and bible.summary():
        user_prompt += f"\nVisual bible (follow it; reuse these location names):\n{bible.summary()}"
    return ChatRequest(
        messages=[
            ChatMessage(role="system", content=SCRIPT_SYSTEM_PROMPT),
            ChatMessage(role="user", content=user_prompt),
        ],
        temperature=0.7,
        max_tokens=4000,
        json_output=True,
        purpose="script",
        hints={
            "scene_count": scene_count,
            "characters": [c.name for c in characters],
            "premise": movie.premise,
            "title": movie.title,
        },
    )


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        body = text.split("```")[1]
        if body.startswith("json"):
            body = body[4:]
        return body.strip()
    return text


def parse_script(text: str) -> ParsedScript:
    """
    Parse the model's script output.

    Scenes keep the order the model wrote them in and are renumbered 1..N.

    Raises:
        MalformedVendorResponse: not JSON, no scenes, or an invalid scene.
    """
    try:
        data = json.loads(_strip_fences(text))
    except (json.JSONDecodeError, IndexError):
        raise MalformedVendorResponse("script is not valid JSON", vendor="llm", raw_text=text)

    if not isinstance(data, dict) or not isinstance(data.get("scenes"), list):
        raise MalformedVendorResponse("script has no scene list", vendor="llm", raw_text=text)

    scenes = []
    for position, raw in enumerate(data["scenes"], start=1):
        if not isinstance(raw, dict):
            raise MalformedVendorResponse(f"scene {position} is not an object", vendor="llm", raw_text=text)
        try:
            scenes.append(SceneDirective.model_validate({**raw, "scene_number": position}))
        except ValidationError as e:
            raise MalformedVendorResponse(
                f"scene {position} is invalid: {e.error_count()} error(s)", vendor="llm", raw_text=text
            )

    if not scenes:
        raise MalformedVendorResponse("script contains zero scenes", vendor="llm", raw_text=text)

    return ParsedScript(title=str(data.get("title") or ""), scenes=scenes, raw_text=text)


async def generate_script(
    gateway, movie: Movie, characters: list[Character], scene_count: int, bible: Optional[VisualBible] = None
) -> ParsedScript:
    request = build_script_request(movie, characters, scene_count, bible)
    result: ChatResult = await gateway.invoke(Capability.LLM, request)
    script = parse_script(result.content)
    logger.info(f"[{movie.id}] Script parsed: {len(script.scenes)} scene(s) via {result.provider}")
    return script
