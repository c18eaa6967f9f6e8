"""
FastAPI routes for movie generation.

  POST /movies/{id}/generate  start (or resume) generation; returns at once
  GET  /movies/{id}/progress  status, per-scene progress, partial URLs
  POST /movies/{id}/cancel    mark a running job failed ("Cancelled")
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from .models import CancelRequest, ProgressResponse, StartRequest
from .runner import AtCapacity, DispatchFailed, JobConflict, JobNotFound, JobRunner

logger = logging.getLogger(__name__)

movie_router = APIRouter(prefix="/movies", tags=["movies"])


def get_runner(request: Request) -> JobRunner:
    runner = getattr(request.app.state, "runner", None)
    if runner is None:
        raise HTTPException(status_code=503, detail="Worker is starting up")
    return runner


@movie_router.post("/{movie_id}/generate")
async def start_generation(
    movie_id: str,
    body: Optional[StartRequest] = None,
    runner: JobRunner = Depends(get_runner),
):
    """
    Start the pipeline for a movie. Returns immediately; poll /progress.

    Errors:
      - 404: Unknown movie
      - 409: Already completed, rejected, or in progress
      - 503: No free job slot
      - 500: Hand-off failed (the movie is now `failed`)
    """
    try:
        handle = await runner.start(movie_id, scene_count=body.scene_count if body else None)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Movie not found")
    except JobConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AtCapacity as e:
        raise HTTPException(status_code=503, detail=str(e))
    except DispatchFailed:
        raise HTTPException(status_code=500, detail="Failed to start generation")

    logger.info(f"[{movie_id}] Generation started ({handle['mode']})")
    return {"status": "started", **handle}


@movie_router.get("/{movie_id}/progress", response_model=ProgressResponse)
async def get_progress(movie_id: str, runner: JobRunner = Depends(get_runner)):
    try:
        return await runner.progress(movie_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Movie not found")


@movie_router.post("/{movie_id}/cancel")
async def cancel_generation(
    movie_id: str,
    body: Optional[CancelRequest] = None,
    runner: JobRunner = Depends(get_runner),
):
    reason = body.reason if body else "Cancelled"
    try:
        movie = await runner.cancel(movie_id, reason)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Movie not found")
    except JobConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": movie.status.value, "job_id": movie_id, "reason": reason}
