# nutrizen/api/jobs.py
"""
Automation job endpoints: start, status polling and the signed worker callback.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from nutrizen.api.deps import get_current_user, get_job_poller, get_job_service
from nutrizen.models.jobs import StartJobRequest
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.errors import ErrorCode, PublicError
from nutrizen.services.job_service import SIGNATURE_HEADER, JobPoller, JobPollTimeout, JobService

router = APIRouter()


@router.post("/start")
async def start_job(
    body: StartJobRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    job_service: JobService = Depends(get_job_service),
):
    result = await job_service.start_job(user, body)
    return JSONResponse(result.model_dump(exclude_none=True), status_code=result.status_code)


@router.post("/run")
async def run_job(
    body: StartJobRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    poller: JobPoller = Depends(get_job_poller),
):
    """Start a job and hold the request until it finishes or the polling time limit runs out."""
    try:
        outcome = await poller.run_job(user, body)
    except JobPollTimeout as exc:
        raise PublicError(
            "Processing is taking longer than expected. Check back shortly.",
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            504,
            details={"job_id": exc.job_id},
        ) from exc
    return outcome.model_dump()


@router.post("/callback")
async def job_callback(request: Request, job_service: JobService = Depends(get_job_service)):
    """Worker callback; the raw body is what the signature covers."""
    raw_body = await request.body()
    return await job_service.handle_job_callback(raw_body, request.headers.get(SIGNATURE_HEADER))


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    job_service: JobService = Depends(get_job_service),
):
    job = await job_service.get_job(job_id, user.id)
    if job is None:
        raise PublicError("Job not found", ErrorCode.RESOURCE_NOT_FOUND, 404)
    return job
