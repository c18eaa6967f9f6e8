"""
Pipeline Orchestrator: drives one movie from premise to playable output.

    draft → generating_script → generating_characters → generating_scenes
          → assembling → completed

`failed` is reachable from every non-terminal status. Every transition is
validated against ALLOWED_TRANSITIONS and persisted before the step it
announces begins, so a crashed or failed job resumes from its last durable
status:

  - scenes already exist        → the script step is skipped
  - status is generating_scenes → characters are reused as stored
  - completed scenes            → kept; continuity resumes from the snapshot
                                  stored with the last completed scene

Scenes run strictly one after another. A scene that exhausts its attempt
budget is marked failed and the job moves on; only "no scene succeeded" and
configuration problems fail the whole job.
"""

import asyncio
import logging
from typing import Optional

from .. import metrics
from ..providers.errors import (
    InvalidStatusTransition,
    JobCancelled,
    MalformedVendorResponse,
    PipelineError,
    VendorRejected,
    VendorUnavailable,
)
from ..providers.models import Capability, VideoRequest
from ..settings import PipelineConfig
from .assembly import AssemblyResolver
from .audio import AudioStage
from .characters import CharacterPreparer
from .continuity import LOCATION_REFERENCE_WEIGHT, ContinuityManager
from .frames import ReferenceFrames
from .models import (
    AssemblyStatus,
    Character,
    JobStatus,
    Movie,
    ProgressResponse,
    Scene,
    SceneProgress,
    SceneStatus,
    can_transition,
    estimate_progress,
)
from .prompt_builder import DEFAULT_MAX_PROMPT_LENGTH, build_scene_prompt
from .script import generate_script
from .visual_bible import VisualBible, generate_visual_bible

logger = logging.getLogger(__name__)

# Phases in run order; a job resumes at the first phase it has not finished.
PHASES = [
    JobStatus.GENERATING_SCRIPT,
    JobStatus.GENERATING_CHARACTERS,
    JobStatus.GENERATING_SCENES,
    JobStatus.ASSEMBLING,
]

CANCELLED_STATUSES = {JobStatus.FAILED, JobStatus.REJECTED}

# Per-scene failures that are recorded on the scene instead of failing the job.
SCENE_LEVEL_ERRORS = (VendorUnavailable, VendorRejected, MalformedVendorResponse)


class NoUsableScenes(PipelineError):
    """Every scene of the job failed."""


def stored_visual_bible(movie: Movie) -> Optional[VisualBible]:
    raw = movie.metadata.get("visual_bible")
    return VisualBible.model_validate(raw) if raw else None


def resume_phase(status: JobStatus, has_scenes: bool) -> JobStatus:
    """First phase a job in `status` still has to run."""
    if status in (JobStatus.DRAFT, JobStatus.FAILED, JobStatus.GENERATING_SCRIPT):
        return JobStatus.GENERATING_CHARACTERS if has_scenes else JobStatus.GENERATING_SCRIPT
    if status in PHASES:
        return status
    raise InvalidStatusTransition(status.value, JobStatus.GENERATING_SCRIPT.value)


class Orchestrator:
    def __init__(self, store, gateway, resolver: AssemblyResolver, config: PipelineConfig):
        self.store = store
        self.gateway = gateway
        self.resolver = resolver
        self.config = config
        self.characters = CharacterPreparer(gateway, store, config)
        self.audio = AudioStage(gateway, store, config)
        self.frames = ReferenceFrames(gateway, config, resolver)
        # job id → last status this orchestrator persisted for it
        self._written: dict[str, JobStatus] = {}

    async def aclose(self):
        await self.gateway.aclose()
        await self.resolver.aclose()

    # ── Entry point ──────────────────────────────────────────────────────

    async def run(self, job_id: str) -> Optional[Movie]:
        """
        Run (or resume) the job to a terminal status.

        Never raises for pipeline failures: they are persisted as `failed`
        with the originating error kept in `error_message` and metadata.

        Returns:
            The job as stored after the run, or None for an unknown id.
        """
        movie = await self.store.get_movie(job_id)
        if movie is None:
            logger.error(f"[{job_id}] Job not found")
            return None
        if movie.status in (JobStatus.COMPLETED, JobStatus.REJECTED):
            logger.info(f"[{job_id}] Job already {movie.status.value}; nothing to do")
            return movie
        if movie.status == JobStatus.FAILED and movie.metadata.get("cancelled"):
            logger.info(f"[{job_id}] Job was cancelled; not resuming")
            return movie

        metrics.inc_counter("jobs.started")
        self._written[job_id] = movie.status
        try:
            await self._run(movie)
            metrics.inc_counter("jobs.completed")
        except JobCancelled:
            logger.info(f"[{job_id}] Cancelled; stopping before the next vendor call")
            metrics.inc_counter("jobs.cancelled")
        except PipelineError as e:
            logger.error(f"[{job_id}] Job failed: {type(e).__name__}: {e}")
            metrics.inc_counter("jobs.failed")
            metrics.record_error("orchestrator", type(e).__name__, str(e), job_id=job_id)
            await self._fail(job_id, e)
        except Exception as e:
            logger.error(f"[{job_id}] Unexpected error: {e}", exc_info=True)
            metrics.inc_counter("jobs.failed")
            metrics.record_error("orchestrator", type(e).__name__, str(e), job_id=job_id)
            await self._fail(job_id, e)
        finally:
            self._written.pop(job_id, None)

        return await self.store.get_movie(job_id)

    async def _run(self, movie: Movie):
        job_id = movie.id
        scenes = await self.store.list_scenes(job_id)
        start = PHASES.index(resume_phase(movie.status, bool(scenes)))
        logger.info(f"[{job_id}] Starting at {PHASES[start].value} (status={movie.status.value})")

        character_list = await self.store.get_characters(movie.character_ids)

        if start <= PHASES.index(JobStatus.GENERATING_SCRIPT):
            movie = await self._transition(movie, JobStatus.GENERATING_SCRIPT)
            movie, scenes = await self._script_step(movie, character_list)

        if start <= PHASES.index(JobStatus.GENERATING_CHARACTERS):
            movie = await self._transition(movie, JobStatus.GENERATING_CHARACTERS)
            movie, character_list = await self._characters_step(movie, character_list)

        if start <= PHASES.index(JobStatus.GENERATING_SCENES):
            movie = await self._transition(movie, JobStatus.GENERATING_SCENES)
            movie, scenes = await self._scenes_step(movie, scenes, character_list)

        movie = await self._transition(movie, JobStatus.ASSEMBLING)
        movie = await self._assembly_step(movie, scenes, character_list)
        await self._transition(movie, JobStatus.COMPLETED)
        logger.info(f"[{job_id}] Job completed ({movie.metadata.get('assembly_status')})")

    # ── Persistence helpers ──────────────────────────────────────────────

    def _was_cancelled(self, stored: Optional[Movie]) -> bool:
        # A failed/rejected status this run did not write was set externally.
        if stored is None:
            return True
        if stored.status == JobStatus.FAILED and stored.metadata.get("cancelled"):
            return True
        return stored.status in CANCELLED_STATUSES and stored.status != self._written.get(stored.id)

    async def _check_cancelled(self, job_id: str):
        if self._was_cancelled(await self.store.get_movie(job_id)):
            raise JobCancelled(f"Job {job_id} was cancelled")

    async def _save(self, movie: Movie):
        """Persist `movie` unless it was cancelled underneath us."""
        await self._check_cancelled(movie.id)
        # Conditional on the status we last wrote, so a cancel landing between
        # the check and the write is not overwritten.
        if not await self.store.save_movie(movie, expected_status=self._written.get(movie.id)):
            raise JobCancelled(f"Job {movie.id} changed status underneath the pipeline")
        self._written[movie.id] = movie.status

    async def _transition(self, movie: Movie, target: JobStatus) -> Movie:
        if movie.status == target:
            return movie
        if not can_transition(movie.status, target):
            raise InvalidStatusTransition(movie.status.value, target.value)
        logger.info(f"[{movie.id}] {movie.status.value} → {target.value}")
        movie = movie.model_copy(update={
            "status": target,
            "progress": estimate_progress(target, [], movie.progress),
            "error_message": None,
        })
        await self._save(movie)
        metrics.inc_counter(f"jobs.status.{target.value}")
        return movie

    async def _fail(self, job_id: str, error: BaseException):
        movie = await self.store.get_movie(job_id)
        if movie is None or movie.status in CANCELLED_STATUSES or movie.status == JobStatus.COMPLETED:
            return
        metadata = dict(movie.metadata)
        metadata["error"] = {"type": type(error).__name__, "message": str(error)[:1000]}
        if isinstance(error, MalformedVendorResponse) and error.raw_text:
            metadata["raw_script"] = error.raw_text
        saved = await self.store.save_movie(
            movie.model_copy(update={
                "status": JobStatus.FAILED,
                "error_message": str(error)[:1000] or type(error).__name__,
                "metadata": metadata,
            }),
            expected_status=movie.status,
        )
        if not saved:
            logger.info(f"[{job_id}] Status changed while recording the failure; keeping the stored one")

    # ── Steps ────────────────────────────────────────────────────────────

    async def _script_step(self, movie: Movie, characters: list[Character]) -> tuple[Movie, list[Scene]]:
        scene_count = movie.target_scene_count or self.config.default_scene_count
        movie, bible = await self._visual_bible_step(movie)
        await self._check_cancelled(movie.id)
        script = await generate_script(self.gateway, movie, characters, scene_count, bible)

        scenes = await self.store.create_scenes(movie.id, script.scenes)
        metadata = {**movie.metadata, "scene_count": len(scenes)}
        movie = movie.model_copy(update={"title": movie.title or script.title, "metadata": metadata})
        await self._save(movie)
        logger.info(f"[{movie.id}] Created {len(scenes)} scene(s)")
        return movie, scenes

    async def _visual_bible_step(self, movie: Movie) -> tuple[Movie, Optional[VisualBible]]:
        if not self.config.enable_visual_bible:
            return movie, None
        bible = stored_visual_bible(movie)
        if bible is not None:
            return movie, bible

        await self._check_cancelled(movie.id)
        bible, warning = await generate_visual_bible(self.gateway, movie)
        metadata = {**movie.metadata, "visual_bible": bible.model_dump(mode="json")}
        if warning:
            metadata["visual_bible_warning"] = warning
        movie = movie.model_copy(update={"metadata": metadata})
        await self._save(movie)
        return movie, bible

    async def _characters_step(self, movie: Movie, characters: list[Character]) -> tuple[Movie, list[Character]]:
        prepared, warnings = await self.characters.prepare(
            movie.id, characters, before_vendor_call=lambda: self._check_cancelled(movie.id)
        )
        if warnings:
            movie = movie.model_copy(update={"metadata": {**movie.metadata, "character_warnings": warnings}})
            await self._save(movie)
        return movie, prepared

    async def _scenes_step(
        self, movie: Movie, scenes: list[Scene], characters: list[Character]
    ) -> tuple[Movie, list[Scene]]:
        manager = ContinuityManager.for_cast(characters, stored_visual_bible(movie))
        prompt_limit = None
        results = []

        for scene in sorted(scenes, key=lambda s: s.scene_number):
            if scene.status == SceneStatus.COMPLETED:
                if scene.continuity_snapshot:
                    manager = ContinuityManager.from_snapshot(scene.continuity_snapshot)
                else:
                    manager.commit(manager.context_for(scene.scene_number, scene.directive), scene.last_frame_url)
                results.append(scene)
                continue

            if prompt_limit is None:
                prompt_limit = await self._video_prompt_limit()
            scene = await self._generate_scene(movie, scene, manager, prompt_limit)
            results.append(scene)

            pending = results + [s for s in scenes if s.scene_number > scene.scene_number]
            movie = movie.model_copy(update={"progress": estimate_progress(movie.status, pending, movie.progress)})
            await self._save(movie)

        failed = [s.scene_number for s in results if s.status == SceneStatus.FAILED]
        completed = [s for s in results if s.status == SceneStatus.COMPLETED]
        metadata = {**movie.metadata, "partial": bool(failed), "failed_scenes": failed}
        movie = movie.model_copy(update={"metadata": metadata})
        await self._save(movie)

        if not completed:
            raise NoUsableScenes(f"All {len(results)} scene(s) failed")
        if failed:
            logger.warning(f"[{movie.id}] Partial result: scene(s) {failed} failed")
        return movie, results

    async def _video_prompt_limit(self) -> int:
        if self.gateway.config.mock_mode:
            return DEFAULT_MAX_PROMPT_LENGTH
        provider = await self.gateway.resolve(Capability.VIDEO)
        return getattr(provider.config, "max_prompt_length", None) or DEFAULT_MAX_PROMPT_LENGTH

    async def _generate_scene(self, movie: Movie, scene: Scene, manager: ContinuityManager, prompt_limit: int) -> Scene:
        number = scene.scene_number
        # Resolved once; every attempt reuses the same context.
        context = manager.context_for(number, scene.directive)
        prompt = build_scene_prompt(context, max_length=prompt_limit)

        scene = scene.model_copy(update={
            "status": SceneStatus.GENERATING,
            "prompt": prompt.positive,
            "negative_prompt": prompt.negative,
            "is_continuation": context.is_continuation,
            "error": None,
        })
        await self.store.save_scene(scene)

        if context.is_continuation:
            reference_url, weight = prompt.reference_frame_url, prompt.reference_frame_weight
        else:
            await self._check_cancelled(movie.id)
            reference_url, source = await self.frames.location_reference(movie.id, context)
            weight = LOCATION_REFERENCE_WEIGHT if reference_url else 0.0
            if reference_url:
                context = context.model_copy(update={"location_reference_url": reference_url})
                scene = scene.model_copy(update={
                    "reference_image_url": reference_url,
                    "reference_source": source.value,
                })

        request = VideoRequest(
            prompt=prompt.positive,
            negative_prompt=prompt.negative,
            duration_seconds=self.config.scene_duration_seconds,
            aspect_ratio=self.config.aspect_ratio,
            reference_image_url=reference_url,
            reference_weight=weight,
        )

        budget = max(1, self.config.scene_attempts)
        last_error: Optional[Exception] = None
        for attempt in range(1, budget + 1):
            await self._check_cancelled(movie.id)
            try:
                result = await self.gateway.invoke(Capability.VIDEO, request)
            except VendorUnavailable as e:
                last_error = e
                if attempt < budget:
                    delay = self.config.retry_backoff_base * (2 ** (attempt - 1))
                    logger.warning(
                        f"[{movie.id}] Scene {number} attempt {attempt}/{budget} failed: {e}. "
                        f"Retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                continue
            except SCENE_LEVEL_ERRORS as e:
                last_error = e
                break

            # Durable before any further vendor call: the clip is already paid for.
            scene = scene.model_copy(update={
                "status": SceneStatus.COMPLETED,
                "video_url": result.video_url,
                "last_frame_url": result.last_frame_url,
                "attempts": attempt,
            })
            await self.store.save_scene(scene)

            if not result.last_frame_url:
                await self._check_cancelled(movie.id)
            last_frame, frame_source = await self.frames.end_frame(
                movie.id, context, result.video_url, result.last_frame_url
            )
            manager.commit(context, last_frame)
            scene = scene.model_copy(update={
                "last_frame_url": last_frame,
                "last_frame_source": frame_source.value if frame_source else None,
                "continuity_snapshot": manager.snapshot(),
            })
            await self.store.save_scene(scene)
            metrics.inc_counter("scenes.completed")
            logger.info(
                f"[{movie.id}] Scene {number} completed"
                + (" (continuation)" if context.is_continuation else "")
            )
            return scene

        manager.skip(number)
        scene = scene.model_copy(update={
            "status": SceneStatus.FAILED,
            "attempts": attempt,
            "error": f"{type(last_error).__name__}: {last_error}"[:500],
        })
        await self.store.save_scene(scene)
        metrics.inc_counter("scenes.failed")
        logger.error(f"[{movie.id}] Scene {number} failed after {attempt} attempt(s): {last_error}")
        return scene

    async def _assembly_step(self, movie: Movie, scenes: list[Scene], characters: list[Character]) -> Movie:
        metadata = {**movie.metadata, "assembly_status": AssemblyStatus.PENDING_REAL_ASSEMBLY.value}
        movie = movie.model_copy(update={"metadata": metadata})
        await self._save(movie)

        completed = [s for s in scenes if s.status == SceneStatus.COMPLETED]
        report = await self.audio.run(
            movie, completed, characters, before_vendor_call=lambda: self._check_cancelled(movie.id)
        )
        # Audio stage may have saved lip-synced cuts.
        scenes = await self.store.list_scenes(movie.id)

        await self._check_cancelled(movie.id)
        result = await self.resolver.resolve(movie.id, scenes, soundtrack_url=report.get("music_url"))

        metadata = {**movie.metadata, **result.metadata(), "audio": report}
        movie = movie.model_copy(update={
            "metadata": metadata,
            "video_url_720p": result.video_url if result.real else None,
        })
        await self._save(movie)
        return movie

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_progress(self, job_id: str) -> Optional[ProgressResponse]:
        movie = await self.store.get_movie(job_id)
        if movie is None:
            return None
        scenes = await self.store.list_scenes(job_id)

        assembly_status = movie.metadata.get("assembly_status")
        video_urls = {
            label: url
            for label, url in (
                ("720p", movie.video_url_720p),
                ("1080p", movie.video_url_1080p),
                ("4k", movie.video_url_4k),
            )
            if url
        }
        return ProgressResponse(
            job_id=job_id,
            status=movie.status,
            progress_pct=estimate_progress(movie.status, scenes, movie.progress),
            scenes=[
                SceneProgress(
                    scene_number=s.scene_number,
                    status=s.status,
                    video_url=s.video_url,
                    is_continuation=s.is_continuation,
                    error=s.error,
                )
                for s in scenes
            ],
            partial_urls=[s.video_url for s in scenes if s.status == SceneStatus.COMPLETED and s.video_url],
            assembly_status=AssemblyStatus(assembly_status) if assembly_status else None,
            video_urls=video_urls,
            error=movie.error_message if movie.status == JobStatus.FAILED else None,
        )
