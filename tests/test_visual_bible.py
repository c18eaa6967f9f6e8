"""
Tests for the visual bible and how it reaches scene prompts and reference stills.
"""

import json

import pytest

from moviegen.pipeline.continuity import ContinuityManager
from moviegen.pipeline.frames import end_frame_prompt, location_prompt
from moviegen.pipeline.models import Movie, SceneDirective
from moviegen.pipeline.prompt_builder import build_scene_prompt
from moviegen.pipeline.script import build_script_request
from moviegen.pipeline.visual_bible import (
    VisualBible,
    fallback_bible,
    generate_visual_bible,
    parse_visual_bible,
)
from moviegen.providers.errors import MalformedVendorResponse, VendorUnavailable
from moviegen.providers.models import Capability

from .conftest import ScriptedGateway

BIBLE = {
    "logline": "Two friends chase one last sunset.",
    "tone": "bittersweet",
    "era": "1970s",
    "visual_style": "sun-faded Kodachrome",
    "palette": {
        "primary": {"name": "burnt orange", "hex": "#CC5500"},
        "secondary": {"name": "dusty teal", "hex": "#5F9EA0"},
    },
    "lighting_rules": {
        "day_exterior": {"type": "hard sun", "direction": "overhead"},
        "interior": "tungsten practicals",
        "golden_hour": None,
    },
    "locations": [
        {
            "name": "Roadside Diner",
            "description": "chrome counter, red vinyl booths",
            "key_elements": None,
            "lighting_default": "buzzing fluorescent tubes",
            "atmosphere": "greasy and warm",
        },
        {"name": "Desert Highway", "description": "two-lane blacktop", "lighting_default": "hard sun"},
    ],
    "continuity_rules": ["the car is always a green 1971 Pinto"],
    "forbidden_elements": ["smartphones"],
}


def directive(number, location="roadside diner", **kwargs) -> SceneDirective:
    kwargs.setdefault("description", f"Beat {number} of the story.")
    return SceneDirective(scene_number=number, location=location, **kwargs)


@pytest.fixture
def bible() -> VisualBible:
    return parse_visual_bible(json.dumps(BIBLE))


class TestParse:
    def test_nested_rules_and_nulls(self, bible):
        assert bible.lighting_rules == {"day_exterior": "hard sun, overhead", "interior": "tungsten practicals"}
        assert bible.locations[0].key_elements == []
        assert not bible.fallback

    def test_fenced_answer(self):
        bible = parse_visual_bible("```json\n" + json.dumps(BIBLE) + "\n```")
        assert bible.era == "1970s"

    def test_not_json(self):
        with pytest.raises(MalformedVendorResponse):
            parse_visual_bible("Here is your bible: warm tones")

    def test_wrong_shape(self):
        with pytest.raises(MalformedVendorResponse):
            parse_visual_bible(json.dumps({"locations": "everywhere"}))

    def test_location_lookup_ignores_case(self, bible):
        assert bible.location(" desert highway ").lighting_default == "hard sun"
        assert bible.location("moon base") is None

    def test_style_lines(self, bible):
        assert bible.style_lines() == [
            "Visual style: sun-faded Kodachrome",
            "Palette: burnt orange, dusty teal",
            "Era: 1970s",
        ]


class TestGenerate:
    @pytest.mark.asyncio
    async def test_generated(self):
        gateway = ScriptedGateway(llm_content=json.dumps(BIBLE))
        movie = Movie(id="movie-1", title="Last Sunset", genre="drama", premise="two friends, one car")

        bible, warning = await generate_visual_bible(gateway, movie)

        assert warning is None
        assert bible.visual_style == "sun-faded Kodachrome"
        request = gateway.calls_for(Capability.LLM)[0]
        assert request.purpose == "visual_bible"
        assert "two friends, one car" in request.messages[1].content

    @pytest.mark.asyncio
    async def test_unparseable_answer_falls_back(self):
        movie = Movie(id="movie-1", genre="thriller", premise="a heist")

        bible, warning = await generate_visual_bible(ScriptedGateway(llm_content="nope"), movie)

        assert bible.fallback
        assert bible.tone == "thriller"
        assert warning.startswith("MalformedVendorResponse")

    @pytest.mark.asyncio
    async def test_vendor_outage_falls_back(self):
        gateway = ScriptedGateway(failures=lambda cap, req: VendorUnavailable("down", vendor="openai"))

        bible, warning = await generate_visual_bible(gateway, Movie(id="movie-1", premise="a heist"))

        assert bible == fallback_bible(Movie(id="movie-1", premise="a heist"))
        assert "down" in warning

    def test_script_request_carries_summary(self, bible, cast):
        movie = Movie(id="movie-1", premise="two friends, one car")
        request = build_script_request(movie, cast, 3, bible=bible)
        user = request.messages[-1].content

        assert "Location 'Roadside Diner': chrome counter, red vinyl booths" in user
        assert "Rule: the car is always a green 1971 Pinto" in user


class TestSeededContinuity:
    def test_first_location_and_lighting(self, cast, bible):
        state = ContinuityManager.for_cast(cast, bible).state
        assert state.location == "Roadside Diner"
        assert state.lighting == "buzzing fluorescent tubes"
        assert state.style == bible.style_lines()

    def test_location_defaults_apply_per_scene(self, cast, bible):
        manager = ContinuityManager.for_cast(cast, bible)
        ctx = manager.context_for(1, directive(1, location="desert highway"))

        assert ctx.lighting == "hard sun"
        assert ctx.location_description == "two-lane blacktop"
        assert ctx.style == tuple(bible.style_lines())

    def test_directive_lighting_wins(self, cast, bible):
        manager = ContinuityManager.for_cast(cast, bible)
        ctx = manager.context_for(1, directive(1, lighting="candlelight"))
        assert ctx.lighting == "candlelight"

    def test_look_section_in_prompt(self, cast, bible):
        manager = ContinuityManager.for_cast(cast, bible)
        prompt = build_scene_prompt(manager.context_for(1, directive(1)))

        assert "Visual style: sun-faded Kodachrome." in prompt.positive
        assert "Palette: burnt orange, dusty teal." in prompt.positive
        assert "Setting details: chrome counter, red vinyl booths." in prompt.positive
        assert "Lighting: buzzing fluorescent tubes" in prompt.positive

    def test_no_bible_no_look_section(self, cast):
        prompt = build_scene_prompt(ContinuityManager.for_cast(cast).context_for(1, directive(1)))
        assert "Visual style" not in prompt.positive
        assert "Setting details" not in prompt.positive

    def test_location_reference_recalled_after_commit(self, cast, bible):
        manager = ContinuityManager.for_cast(cast, bible)
        ctx = manager.context_for(1, directive(1)).model_copy(
            update={"location_reference_url": "https://cdn.example.com/diner.png"}
        )
        manager.commit(ctx, None)
        manager.commit(manager.context_for(2, directive(2, location="desert highway")), None)

        back = manager.context_for(3, directive(3, location="Roadside Diner"))
        assert back.location_reference_url == "https://cdn.example.com/diner.png"
        assert not back.is_continuation

    def test_snapshot_keeps_bible_state(self, cast, bible):
        manager = ContinuityManager.for_cast(cast, bible)
        restored = ContinuityManager.from_snapshot(manager.snapshot())
        assert restored.context_for(1, directive(1)) == manager.context_for(1, directive(1))


class TestStillPrompts:
    def test_location_prompt(self, cast, bible):
        ctx = ContinuityManager.for_cast(cast, bible).context_for(1, directive(1, time_of_day="night"))
        prompt = location_prompt(ctx)

        assert prompt.startswith("Cinematic establishing shot")
        assert "roadside diner, chrome counter, red vinyl booths, night, buzzing fluorescent tubes lighting" in prompt
        assert "Visual style: sun-faded Kodachrome" in prompt
        assert prompt.endswith("empty scene without people, cinematic composition")

    def test_end_frame_prompt(self, cast):
        ctx = ContinuityManager.for_cast(cast).context_for(
            1, directive(1, description="Sam slams the door.", time_of_day="dusk")
        )
        assert end_frame_prompt(ctx) == (
            "roadside diner, Sam slams the door, dusk, "
            "cinematic still, final moment of scene, 4K quality, wide shot"
        )


class TestCharacterShapes:
    def test_structured_personality(self, cast):
        character = cast[0].model_copy(update={"personality": {"primary_traits": ["bold"], "fears": []}})
        assert character.personality_summary == "primary traits: bold"

    def test_text_personality(self, cast):
        assert cast[1].personality_summary == "dry wit"
