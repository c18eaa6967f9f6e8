"""
Dialogue voice, lip-sync and soundtrack.

Runs during `assembling`, before the Assembly Resolver. Every step is
best-effort: failures are collected into the returned report and never fail
the job.
"""

import logging
from typing import Awaitable, Callable, Optional

from ..providers.errors import NoProviderConfigured, ProviderConfigurationError, VendorError
from ..providers.models import AudioRequest, Capability, LipSyncRequest, MusicRequest
from ..settings import PipelineConfig
from .models import Character, Movie, Scene

logger = logging.getLogger(__name__)

BEST_EFFORT_ERRORS = (VendorError, NoProviderConfigured, ProviderConfigurationError)


class AudioStage:
    def __init__(self, gateway, store, config: PipelineConfig):
        self.gateway = gateway
        self.store = store
        self.config = config

    async def run(
        self,
        movie: Movie,
        scenes: list[Scene],
        characters: list[Character],
        before_vendor_call: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> dict:
        """
        Voice every dialogue line of the completed `scenes`, optionally lip-sync
        them, and generate a soundtrack.

        Returns:
            {"voiced_lines": int, "lip_synced_scenes": [...], "music_url": str|None,
             "errors": [{"step", "scene_number", "error"}]}
        """
        report = {"voiced_lines": 0, "lip_synced_scenes": [], "music_url": None, "errors": []}
        voices = {c.name.strip().lower(): c.voice_id for c in characters}

        voice_on = self.config.enable_voice and await self.gateway.is_available(Capability.AUDIO)
        sync_on = self.config.enable_lip_sync and await self.gateway.is_available(Capability.LIP_SYNC)
        music_on = self.config.enable_music and await self.gateway.is_available(Capability.MUSIC)

        for scene in scenes:
            if not voice_on or not scene.directive.dialogue:
                continue
            audio_urls = []
            for line in scene.directive.dialogue:
                if before_vendor_call is not None:
                    await before_vendor_call()
                try:
                    result = await self.gateway.invoke(
                        Capability.AUDIO,
                        AudioRequest(text=line.line, voice_id=voices.get(line.character.strip().lower())),
                    )
                    audio_urls.append(result.audio_url)
                    report["voiced_lines"] += 1
                except BEST_EFFORT_ERRORS as e:
                    logger.warning(f"[{movie.id}] Voice for scene {scene.scene_number} failed: {e}")
                    report["errors"].append({"step": "voice", "scene_number": scene.scene_number, "error": str(e)[:300]})

            if not audio_urls:
                continue
            scene = scene.model_copy(update={"audio_urls": audio_urls})

            if sync_on and scene.video_url:
                if before_vendor_call is not None:
                    await before_vendor_call()
                try:
                    synced = await self.gateway.invoke(
                        Capability.LIP_SYNC,
                        LipSyncRequest(video_url=scene.video_url, audio_url=audio_urls[0]),
                    )
                    scene = scene.model_copy(update={"lip_synced_url": synced.video_url})
                    report["lip_synced_scenes"].append(scene.scene_number)
                except BEST_EFFORT_ERRORS as e:
                    logger.warning(f"[{movie.id}] Lip-sync for scene {scene.scene_number} failed: {e}")
                    report["errors"].append({"step": "lip_sync", "scene_number": scene.scene_number, "error": str(e)[:300]})

            await self.store.save_scene(scene)

        if music_on and scenes:
            if before_vendor_call is not None:
                await before_vendor_call()
            try:
                music = await self.gateway.invoke(
                    Capability.MUSIC,
                    MusicRequest(
                        genre=movie.genre or "cinematic",
                        duration_seconds=len(scenes) * self.config.scene_duration_seconds,
                    ),
                )
                report["music_url"] = music.audio_url
            except BEST_EFFORT_ERRORS as e:
                logger.warning(f"[{movie.id}] Soundtrack failed: {e}")
                report["errors"].append({"step": "music", "scene_number": None, "error": str(e)[:300]})

        return report
