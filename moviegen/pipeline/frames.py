"""
Reference stills for scene generation.

Two kinds of image steer the video vendor:

  end frame           the last frame of a completed scene; the next scene at
                      the same location continues from it
  location reference  an establishing still of a location, used by a scene
                      that does not continue the previous one

Video vendors rarely return a terminal frame. When one is missing it is
extracted by the render server if one is configured, otherwise derived with
the image capability from the scene's setting and closing action.

Everything here is best-effort: a still that cannot be produced leaves the
scene without that anchor. Credential errors still propagate.
"""

import logging
from enum import Enum
from typing import Optional

from ..providers.errors import (
    AssemblyUnavailable,
    MalformedVendorResponse,
    NoProviderConfigured,
    VendorRejected,
    VendorUnavailable,
)
from ..providers.models import Capability, ImageRequest
from ..settings import PipelineConfig
from .continuity import SceneContext

logger = logging.getLogger(__name__)

FRAME_ERRORS = (
    VendorUnavailable,
    VendorRejected,
    MalformedVendorResponse,
    AssemblyUnavailable,
    NoProviderConfigured,
)

STILL_SIZE = "landscape_16_9"


class FrameSource(str, Enum):
    VENDOR = "vendor"
    RENDER_SERVER = "render_server"
    GENERATED = "generated"
    LIBRARY = "library"


def end_frame_prompt(context: SceneContext) -> str:
    parts = [
        context.location,
        context.directive.description.strip().rstrip("."),
        context.time_of_day,
        context.lighting,
        "cinematic still, final moment of scene, 4K quality, wide shot",
    ]
    return ", ".join(p for p in parts if p)


def location_prompt(context: SceneContext) -> str:
    parts = [
        "Cinematic establishing shot, professional photography, 4K quality",
        context.location,
        context.location_description,
        context.time_of_day,
        f"{context.lighting} lighting" if context.lighting else "",
        *context.style,
        "wide shot, empty scene without people, cinematic composition",
    ]
    return ", ".join(p.strip().rstrip(".") for p in parts if p and p.strip())


class ReferenceFrames:
    def __init__(self, gateway, config: PipelineConfig, resolver=None):
        self.gateway = gateway
        self.config = config
        self.resolver = resolver

    async def end_frame(
        self, movie_id: str, context: SceneContext, video_url: str, vendor_frame: Optional[str]
    ) -> tuple[Optional[str], Optional[FrameSource]]:
        """
        The terminal frame of a completed scene and where it came from.

        Returns (None, None) when no frame could be had.
        """
        if vendor_frame:
            return vendor_frame, FrameSource.VENDOR
        if not self.config.derive_end_frames:
            return None, None

        if self.resolver is not None and self.resolver.can_extract_frames:
            try:
                frame = await self.resolver.extract_last_frame(video_url)
            except FRAME_ERRORS as e:
                logger.warning(f"[{movie_id}] Scene {context.scene_number} frame extraction failed: {e}")
            else:
                if frame:
                    return frame, FrameSource.RENDER_SERVER

        frame = await self._generate(movie_id, end_frame_prompt(context), f"scene {context.scene_number} end frame")
        if frame:
            return frame, FrameSource.GENERATED
        return None, None

    async def location_reference(
        self, movie_id: str, context: SceneContext
    ) -> tuple[Optional[str], Optional[FrameSource]]:
        """Establishing still for a scene that starts fresh. Reused per location."""
        if not self.config.location_references or context.is_continuation or not context.location:
            return None, None
        if context.location_reference_url:
            return context.location_reference_url, FrameSource.LIBRARY
        url = await self._generate(movie_id, location_prompt(context), f"location '{context.location}'")
        if url:
            return url, FrameSource.GENERATED
        return None, None

    async def _generate(self, movie_id: str, prompt: str, what: str) -> Optional[str]:
        try:
            result = await self.gateway.invoke(Capability.IMAGE, ImageRequest(prompt=prompt, image_size=STILL_SIZE))
        except FRAME_ERRORS as e:
            logger.warning(f"[{movie_id}] No still for {what}: {e}")
            return None
        if not result.urls:
            return None
        logger.info(f"[{movie_id}] Generated still for {what}")
        return result.urls[0]
