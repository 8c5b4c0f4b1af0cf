"""
Render job endpoint router

Progress polling, cancellation and download links for render jobs.
"""

import structlog
from fastapi import APIRouter, Depends, Path
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from schemas import DownloadUrlResponse, ErrorResponse, RenderProgressResponse
from services import render_jobs
from routers.dependencies import get_storage

logger = structlog.get_logger()

router = APIRouter(prefix="/api/render-jobs", tags=["Render Jobs"])

ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or invalid session"},
    403: {"model": ErrorResponse, "description": "Render job belongs to another user"},
    404: {"model": ErrorResponse, "description": "Render job not found"},
    409: {"model": ErrorResponse, "description": "Render job is in the wrong status"},
}


@router.get(
    "/{render_job_id}/progress",
    response_model=RenderProgressResponse,
    responses=ERROR_RESPONSES,
    summary="Get Render Progress",
)
async def get_render_progress(
    render_job_id: str = Path(..., description="Render job identifier (UUID)"),
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Current status and progress of a render job.

    Pure read: polling never changes the job.
    """
    job = render_jobs.get_owned_render_job(db, render_job_id, user_id)
    return render_jobs.get_progress(job)


@router.post("/{render_job_id}/cancel", responses=ERROR_RESPONSES, summary="Cancel Render")
async def cancel_render(
    render_job_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Request cancellation of a pending or rendering job.

    The worker finishes the job as cancelled on its next poll.
    """
    render_jobs.get_owned_render_job(db, render_job_id, user_id)
    job = render_jobs.cancel_render(db, render_job_id)
    db.commit()
    return {"renderJob": job.to_dict()}


@router.get(
    "/{render_job_id}/download-url",
    response_model=DownloadUrlResponse,
    responses=ERROR_RESPONSES,
    summary="Get Render Download URL",
)
async def get_download_url(
    render_job_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    job = render_jobs.get_owned_render_job(db, render_job_id, user_id)
    return render_jobs.get_download_url(job, storage)
