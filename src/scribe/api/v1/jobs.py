"""REST endpoints for processing jobs.

Upload creates a pending job from compressed audio; process / reprocess /
cancel drive the state machine; GET /jobs/{id} is the polling endpoint.

Command endpoints always answer with a ProcessingOutcome body. Business
failures (credits, rate limits, preconditions, provider errors) come back
as ``success=false`` with structured metadata; only an unknown or foreign
job id changes the HTTP status (404).
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Any

import structlog
from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse

from src.scribe.api.deps import CurrentUser, get_current_user
from src.scribe.audio.preprocessor import CompressionOptions
from src.scribe.audio.storage import fits_without_compression
from src.scribe.config import get_settings
from src.scribe.errors import AuthorizationError, CompressionError, ScribeError
from src.scribe.jobs.schemas import (
    CancelResponse,
    JobStatus,
    JobView,
    ProcessingOutcome,
    ProcessRequest,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


# ── Dependency Helpers ───────────────────────────────────────────────────────


def _get_orchestrator(request: Request) -> Any:
    """Retrieve ProcessingOrchestrator from app.state, 503 if not available."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Processing orchestrator not initialized",
        )
    return orchestrator


def _get_preprocessor(request: Request) -> Any:
    """Retrieve AudioPreprocessor from app.state, 503 if not available."""
    preprocessor = getattr(request.app.state, "audio_preprocessor", None)
    if preprocessor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audio preprocessor not initialized",
        )
    return preprocessor


def _get_audio_store(request: Request) -> Any:
    store = getattr(request.app.state, "audio_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audio store not initialized",
        )
    return store


def _outcome_response(outcome: ProcessingOutcome) -> JSONResponse:
    code = (
        status.HTTP_404_NOT_FOUND
        if outcome.error_code == AuthorizationError.code
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=code, content=outcome.model_dump(mode="json"))


async def _save_upload(upload: UploadFile, directory: Path) -> Path:
    suffix = Path(upload.filename or "upload").suffix or ".bin"
    destination = directory / f"original{suffix.lower()}"

    def _copy() -> None:
        with destination.open("wb") as out:
            shutil.copyfileobj(upload.file, out)

    await asyncio.to_thread(_copy)
    return destination


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", response_model=JobView, status_code=status.HTTP_201_CREATED)
async def upload_recording(
    request: Request,
    file: UploadFile = File(...),
    title: str | None = Form(None),
    allow_uncompressed: bool = Form(False),
    user: CurrentUser = Depends(get_current_user),
) -> JobView:
    """Compress an uploaded recording and create a pending job for it.

    If compression fails and ``allow_uncompressed`` is set, the original is
    stored instead, but only when it already fits the upload size limit.
    Its duration is probed from the file; when that fails too the job is
    stored with an unknown duration and can only run on unbilled routes.
    """
    orchestrator = _get_orchestrator(request)
    preprocessor = _get_preprocessor(request)
    store = _get_audio_store(request)
    settings = get_settings()

    options = CompressionOptions(
        target_bitrate_kbps=settings.AUDIO_TARGET_BITRATE_KBPS,
        sample_rate=settings.AUDIO_SAMPLE_RATE,
    )

    with tempfile.TemporaryDirectory(prefix="scribe-upload-") as tmp:
        original = await _save_upload(file, Path(tmp))
        try:
            compressed = await preprocessor.compress(original, options)
            audio_ref = compressed.audio_ref
            duration = compressed.duration_seconds
        except CompressionError as exc:
            if not (
                allow_uncompressed
                and fits_without_compression(original, settings.AUDIO_MAX_UPLOAD_MB)
            ):
                logger.warning("upload_compression_failed", user_id=user.user_id, error=exc.message)
                return JSONResponse(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    content={"success": False, **exc.to_payload()},
                )
            logger.info("upload_stored_uncompressed", user_id=user.user_id)
            duration = await preprocessor.probe_duration(original)
            audio_ref = await store.put(original)

    job = await orchestrator.create_job(
        user_id=user.user_id,
        audio_ref=audio_ref,
        duration_seconds=duration,
        title=title,
    )
    return JobView.of(job)


@router.get("/{job_id}", response_model=JobView)
async def get_job(
    job_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> JobView:
    """Current job state; clients poll this while status is processing."""
    orchestrator = _get_orchestrator(request)
    try:
        return await orchestrator.get_view(user.user_id, job_id)
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)


@router.post("/{job_id}/process")
async def process_job(
    job_id: str,
    body: ProcessRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
) -> JSONResponse:
    """Submit a pending job.

    With ``background=true`` the response returns as soon as the job is
    claimed and paid for; poll GET /jobs/{id} for the result.
    """
    orchestrator = _get_orchestrator(request)
    if not body.background:
        return _outcome_response(await orchestrator.submit(user.user_id, job_id, body.model_id))

    try:
        ticket = await orchestrator.begin(user.user_id, job_id, body.model_id)
    except ScribeError as exc:
        return _outcome_response(ProcessingOutcome.failure(exc))

    background_tasks.add_task(orchestrator.run, ticket)
    return _outcome_response(
        ProcessingOutcome(
            success=True,
            job_id=ticket.job_id,
            status=JobStatus.PROCESSING,
            credits_charged=ticket.debit_amount,
        )
    )


@router.post("/{job_id}/reprocess")
async def reprocess_job(
    job_id: str,
    body: ProcessRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> JSONResponse:
    """Re-run a completed job with (possibly) another model."""
    orchestrator = _get_orchestrator(request)
    return _outcome_response(await orchestrator.reprocess(user.user_id, job_id, body.model_id))


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(
    job_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> JSONResponse:
    """Cancel an in-flight job. Cancelling a finished job is a no-op success."""
    orchestrator = _get_orchestrator(request)
    outcome = await orchestrator.cancel(user.user_id, job_id)
    body = CancelResponse(success=outcome.success, error=outcome.error, error_code=outcome.error_code)
    code = (
        status.HTTP_404_NOT_FOUND
        if outcome.error_code == AuthorizationError.code
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))
