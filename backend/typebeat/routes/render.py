"""
Render endpoints.

HTTP adapter over RenderService. Pairs are referenced by local file
path; rendered videos are served back by the id in their playback URL.

Errors map to status codes:
- ValidationError -> 400
- JobNotFoundError -> 404
- BatchInProgressError, InvalidStateTransitionError -> 409
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict

from ..jobs.errors import (
    BatchInProgressError,
    InvalidStateTransitionError,
    JobNotFoundError,
    ValidationError,
)
from ..jobs.models import BackgroundMode, FileMediaRef, JobStatus, PairInput, VideoSettings
from ..service import RenderService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/render", tags=["render"])


class PairRequest(BaseModel):
    """One audio/image pair referenced by local path."""

    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None
    audio_path: Optional[str] = None
    image_path: Optional[str] = None


class SettingsRequest(BaseModel):
    """Video settings for API."""

    model_config = ConfigDict(extra="forbid")

    background: BackgroundMode = BackgroundMode.BLACK
    custom_background_path: Optional[str] = None
    use_logo: bool = False
    logo_path: Optional[str] = None


class BatchRequest(BaseModel):
    """Request body for batch submission."""

    model_config = ConfigDict(extra="forbid")

    pairs: List[PairRequest]
    settings: SettingsRequest = SettingsRequest()


class BatchResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_id: str
    job_ids: List[str]


class OperationResponse(BaseModel):
    """Generic response for render operations."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    message: str


def _service(request: Request) -> RenderService:
    return request.app.state.render_service


def _media_ref(path: Optional[str]) -> Optional[FileMediaRef]:
    """A FileMediaRef for an existing file, None otherwise."""
    if not path:
        return None
    if not Path(path).is_file():
        return None
    return FileMediaRef(path)


def _to_pairs(body: BatchRequest) -> List[PairInput]:
    pairs = []
    for item in body.pairs:
        identity = {"id": item.id} if item.id else {}
        pairs.append(PairInput(
            audio=_media_ref(item.audio_path),
            image=_media_ref(item.image_path),
            **identity,
        ))
    return pairs


def _to_settings(body: SettingsRequest) -> VideoSettings:
    background = _media_ref(body.custom_background_path)
    if body.custom_background_path and background is None:
        raise ValidationError(f"Custom background not found: {body.custom_background_path}")
    logo = _media_ref(body.logo_path)
    if body.logo_path and logo is None:
        raise ValidationError(f"Logo not found: {body.logo_path}")
    return VideoSettings(
        background=body.background,
        custom_background=background,
        use_logo=body.use_logo,
        logo=logo,
    )


# ============================================================================
# BATCHES
# ============================================================================

@router.post("/batches", response_model=BatchResponse)
async def submit_batch(body: BatchRequest, request: Request):
    """
    Start rendering a batch of pairs.

    Pairs whose audio or image path does not point to a file are treated
    as missing that input, which rejects the whole batch.

    Raises:
        400: Validation failed, nothing was started
        409: A batch is already running
    """
    service = _service(request)
    try:
        handle = await service.submit_batch(_to_pairs(body), _to_settings(body.settings))
    except ValidationError as e:
        detail = str(e)
        if e.pair_ids:
            detail += f" (pairs: {', '.join(e.pair_ids)})"
        raise HTTPException(status_code=400, detail=detail)
    except BatchInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return BatchResponse(batch_id=handle.batch_id, job_ids=handle.job_ids)


@router.post("/prepare")
async def prepare_pairs(body: BatchRequest, request: Request) -> List[Dict[str, Any]]:
    """
    Read and probe pairs ahead of submission.

    Pairs with a missing file are reported as failed; the others are
    cached and picked up by the next POST /batches with the same ids.
    """
    try:
        settings = _to_settings(body.settings)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    results = await _service(request).prepare_pairs(_to_pairs(body), settings)
    return [result.model_dump() for result in results]


@router.get("/batches/current")
async def current_batch(request: Request) -> Dict[str, Any]:
    """Progress of the most recent batch."""
    handle = _service(request).current_batch
    if handle is None:
        raise HTTPException(status_code=404, detail="No batch has been submitted")
    return handle.to_summary()


@router.post("/cancel", response_model=OperationResponse)
async def cancel_batch(request: Request):
    """Stop the running batch. Finished jobs keep their results."""
    cancelled = await _service(request).cancel_batch()
    if not cancelled:
        return OperationResponse(success=False, message="No batch is running")
    return OperationResponse(success=True, message="Cancellation requested")


# ============================================================================
# JOBS
# ============================================================================

@router.get("/jobs")
async def list_jobs(request: Request, status: Optional[JobStatus] = None) -> List[Dict[str, Any]]:
    return [job.to_summary() for job in _service(request).list_jobs(status)]


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request) -> Dict[str, Any]:
    try:
        return _service(request).get_job(job_id).to_summary()
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/jobs/{job_id}/cancel", response_model=OperationResponse)
async def cancel_job(job_id: str, request: Request):
    try:
        cancelled = await _service(request).cancel_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if not cancelled:
        return OperationResponse(success=False, message=f"Job {job_id} already finished")
    return OperationResponse(success=True, message=f"Job {job_id} cancellation requested")


@router.delete("/jobs/{job_id}", response_model=OperationResponse)
async def discard_job(job_id: str, request: Request):
    """Forget a finished job and release its video."""
    try:
        _service(request).discard_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return OperationResponse(success=True, message=f"Job {job_id} discarded")


@router.post("/jobs/{job_id}/retry", response_model=BatchResponse)
async def retry_job(job_id: str, request: Request):
    """Render a failed or cancelled job again."""
    try:
        handle = await _service(request).retry_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BatchInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return BatchResponse(batch_id=handle.batch_id, job_ids=handle.job_ids)


# ============================================================================
# VIDEOS
# ============================================================================

@router.get("/videos/{video_id}")
async def get_video(video_id: str, request: Request):
    """Rendered MP4 bytes, served as an attachment."""
    found = _service(request).get_video(video_id)
    if found is None:
        raise HTTPException(status_code=404, detail=f"Video not found: {video_id}")
    data, output = found
    return Response(
        content=data,
        media_type="video/mp4",
        headers={"Content-Disposition": f'attachment; filename="{output.filename}"'},
    )
