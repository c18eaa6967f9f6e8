"""
Character preparation: reference images → identity model → portrait → lock.

A locked character (identity model trained and canonical portrait generated)
is reused untouched. For everyone else the missing steps run in order, and the
character row is saved after each step so a crash does not redo finished work.

Transient or input-related vendor failures degrade the character to
description-only prompting (unlocked) instead of failing the job. Credential
failures propagate.
"""

import logging
import re
from typing import Awaitable, Callable, Optional

from ..providers.errors import (
    MalformedVendorResponse,
    VendorRejected,
    VendorUnavailable,
)
from ..providers.models import (
    Capability,
    IdentityRef,
    IdentityTrainingRequest,
    ImageRequest,
)
from ..settings import PipelineConfig
from .continuity import describe_appearance
from .models import Character

logger = logging.getLogger(__name__)

TRIGGER_PREFIX = "MOVIEGEN"

PORTRAIT_PROMPT = (
    "{subject}, front view portrait, professional headshot, neutral background, "
    "studio lighting, looking at camera, centered, high quality, 8K"
)
REFERENCE_VIEWS = [
    "front view portrait",
    "three-quarter view portrait",
    "side profile portrait",
    "full body shot, standing",
    "medium shot, natural expression",
    "close-up, soft smile",
]

DEGRADABLE_ERRORS = (VendorUnavailable, VendorRejected, MalformedVendorResponse)


def trigger_word_for(character: Character) -> str:
    name = re.sub(r"[^A-Za-z0-9]+", "_", character.name.strip()).strip("_").upper()
    return f"{TRIGGER_PREFIX}_{name or character.id[:8].upper()}"


def reference_prompt(character: Character, view: str) -> str:
    description = describe_appearance(character) or character.name
    return f"{description}, {view}, photorealistic, consistent identity, neutral background"


def portrait_prompt(character: Character) -> str:
    subject = character.lora_trigger_word or describe_appearance(character) or character.name
    return PORTRAIT_PROMPT.format(subject=subject)


class CharacterPreparer:
    def __init__(self, gateway, store, config: PipelineConfig):
        self.gateway = gateway
        self.store = store
        self.config = config

    async def prepare(
        self,
        job_id: str,
        characters: list[Character],
        before_vendor_call: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> tuple[list[Character], list[dict]]:
        """
        Make every character ready for scene generation.

        Returns:
            (characters, warnings). Warnings describe characters that fell back
            to description-only prompting.
        """
        training_ready = (
            await self.gateway.is_available(Capability.IMAGE)
            and await self.gateway.is_available(Capability.IDENTITY_TRAINING)
        )

        prepared, warnings = [], []
        for character in characters:
            if character.is_locked:
                logger.info(f"[{job_id}] Reusing locked character {character.name}")
                prepared.append(character)
                continue

            if not training_ready:
                logger.warning(f"[{job_id}] Identity training unavailable; {character.name} stays description-only")
                warnings.append({"character": character.name, "reason": "identity training not configured"})
                prepared.append(character)
                continue

            try:
                character = await self._prepare_one(job_id, character, before_vendor_call)
            except DEGRADABLE_ERRORS as e:
                logger.warning(f"[{job_id}] Character {character.name} not locked: {e}")
                warnings.append({"character": character.name, "reason": str(e)[:300]})
                character = await self.store.get_character(character.id) or character
            prepared.append(character)

        return prepared, warnings

    async def _checkpoint(self, before_vendor_call):
        if before_vendor_call is not None:
            await before_vendor_call()

    async def _prepare_one(self, job_id: str, character: Character, before_vendor_call) -> Character:
        if not character.reference_images:
            await self._checkpoint(before_vendor_call)
            count = max(1, self.config.reference_images_per_character)
            urls = []
            for view in REFERENCE_VIEWS[:count]:
                result = await self.gateway.invoke(
                    Capability.IMAGE,
                    ImageRequest(prompt=reference_prompt(character, view), image_size="portrait_4_3"),
                )
                urls.extend(result.urls[:1])
            character = character.model_copy(update={"reference_images": urls})
            await self.store.save_character(character)
            logger.info(f"[{job_id}] Generated {len(urls)} reference image(s) for {character.name}")

        if not character.lora_model_url:
            await self._checkpoint(before_vendor_call)
            trigger = character.lora_trigger_word or trigger_word_for(character)
            result = await self.gateway.invoke(
                Capability.IDENTITY_TRAINING,
                IdentityTrainingRequest(
                    character_id=character.id,
                    image_urls=character.reference_images,
                    trigger_word=trigger,
                ),
            )
            character = character.model_copy(update={
                "lora_model_url": result.lora_url,
                "lora_trigger_word": result.trigger_word,
            })
            await self.store.save_character(character)
            logger.info(f"[{job_id}] Identity model trained for {character.name} (trigger={result.trigger_word})")

        if not character.thumbnail_url:
            await self._checkpoint(before_vendor_call)
            result = await self.gateway.invoke(
                Capability.IMAGE,
                ImageRequest(
                    prompt=portrait_prompt(character),
                    image_size="square_hd",
                    identity=IdentityRef(
                        lora_url=character.lora_model_url,
                        trigger_word=character.lora_trigger_word,
                    ),
                ),
            )
            character = character.model_copy(update={"thumbnail_url": result.urls[0]})
            await self.store.save_character(character)

        character = character.model_copy(update={"lora_locked": True})
        await self.store.save_character(character)
        logger.info(f"[{job_id}] Character {character.name} locked")
        return character
