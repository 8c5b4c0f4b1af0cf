"""
Render job state machine.

    pending -> rendering -> completed | failed | cancelled
    pending | rendering -> cancel_requested -> cancelled

Every transition is a conditional UPDATE so a request thread (cancel) and
the render worker (progress, completion) can race without a terminal state
ever being left or overwritten. A pending cancellation always wins over a
completion or failure reported by the renderer.
"""

import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from config import settings
from errors import ConflictError, ExternalServiceError, NotFoundError, call_with_retry
from models import (
    ArtifactType,
    Checkpoint,
    MessageRole,
    MessageType,
    Project,
    RenderJob,
    RenderStatus,
    new_id,
    utcnow,
)
from services import message_timeline
from services.project_service import get_checkpoint, get_owned_project
from services.renderer import RenderHandle, Renderer
from services.s3_storage import render_output_key

logger = structlog.get_logger()


# ===== Request-side operations =====

def submit_render(
    db: Session,
    project: Project,
    checkpoint_id: str,
    format: str,
    correlation_id: Optional[str] = None,
) -> RenderJob:
    """
    Create a pending render job for a checkpoint and announce it.

    The job is flushed, not committed, and not yet queued; see
    ``enqueue_render``.
    """
    checkpoint = get_checkpoint(db, project.id, checkpoint_id)

    now = utcnow()
    job = RenderJob(
        id=new_id(),
        project_id=project.id,
        source_checkpoint_id=checkpoint.id,
        source_message_id=checkpoint.source_message_id,
        format=format,
        status=RenderStatus.PENDING,
        progress=0,
        cancel_requested=False,
        correlation_id=correlation_id,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.flush()

    message_timeline.append(
        db,
        project.id,
        MessageRole.USER,
        MessageType.RENDER_REQUESTED,
        message_timeline.build_content(
            MessageType.RENDER_REQUESTED,
            [message_timeline.artifact_ref(ArtifactType.RENDER_JOB, job.id)],
            renderJobId=job.id,
            format=format,
        ),
    )

    logger.info(
        "render_submitted",
        project_id=project.id,
        render_job_id=job.id,
        checkpoint_id=checkpoint.id,
        format=format,
    )
    return job


def enqueue_render(db: Session, job: RenderJob, queue) -> None:
    """
    Hand a committed job to the render worker queue.

    Raises:
        ExternalServiceError: the queue rejected the job (the job is failed)
    """
    if queue.enqueue_render(job.id, job.correlation_id):
        return

    finalize(db, job.id, RenderStatus.FAILED, last_error="Failed to enqueue render job")
    raise ExternalServiceError("render_queue", "Render queue unavailable")


def get_render_job(db: Session, render_job_id: str) -> RenderJob:
    job = db.query(RenderJob).filter(RenderJob.id == render_job_id).first()
    if not job:
        raise NotFoundError("Render job", render_job_id)
    return job


def get_owned_render_job(db: Session, render_job_id: str, user_id: str) -> RenderJob:
    """Load a render job whose project belongs to ``user_id``"""
    job = get_render_job(db, render_job_id)
    get_owned_project(db, job.project_id, user_id)
    return job


def list_render_jobs(db: Session, project_id: str) -> List[RenderJob]:
    return (
        db.query(RenderJob)
        .filter(RenderJob.project_id == project_id)
        .order_by(RenderJob.created_at.desc())
        .all()
    )


def cancel_render(db: Session, render_job_id: str) -> RenderJob:
    """
    Latch ``cancel_requested`` on a pending or rendering job.

    The worker observes the latch on its next poll and finishes the job as
    cancelled.

    Raises:
        NotFoundError: unknown job
        ConflictError: job is not pending or rendering
    """
    updated = (
        db.query(RenderJob)
        .filter(
            RenderJob.id == render_job_id,
            RenderJob.status.in_(RenderStatus.CANCELLABLE),
        )
        .update(
            {
                RenderJob.cancel_requested: True,
                RenderJob.status: RenderStatus.CANCEL_REQUESTED,
                RenderJob.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.expire_all()
    job = get_render_job(db, render_job_id)

    if updated == 0:
        raise ConflictError(
            f"Cannot cancel render job with status '{job.status}'",
            current_status=job.status,
        )

    logger.info("render_cancel_requested", render_job_id=render_job_id, project_id=job.project_id)
    return job


def get_progress(job: RenderJob) -> Dict[str, Any]:
    """Read-only progress snapshot of a render job"""
    return {
        "id": job.id,
        "status": job.status,
        "progress": job.progress,
        "outputRef": job.output_s3_key,
        "lastError": job.last_error,
    }


def get_download_url(job: RenderJob, storage) -> Dict[str, Any]:
    """
    Issue a short-lived download URL for a completed render.

    Raises:
        ConflictError: the render is not completed or was cancelled
    """
    if job.status != RenderStatus.COMPLETED or not job.output_s3_key or job.cancel_requested:
        raise ConflictError(
            f"Render job with status '{job.status}' has no downloadable output",
            current_status=job.status,
        )

    expires_in = settings.PRESIGNED_URL_EXPIRY
    url = storage.generate_presigned_url(job.output_s3_key, expiry=expires_in)
    return {"downloadUrl": url, "expiresIn": expires_in}


# ===== Worker-side transitions =====

def _append_completed(db: Session, job: RenderJob, status: str) -> None:
    message_timeline.append(
        db,
        job.project_id,
        MessageRole.SYSTEM,
        MessageType.RENDER_COMPLETED,
        message_timeline.build_content(
            MessageType.RENDER_COMPLETED,
            [message_timeline.artifact_ref(ArtifactType.RENDER_JOB, job.id)],
            renderJobId=job.id,
            outputUrl=None,
            status=status,
        ),
    )


def finalize(
    db: Session,
    render_job_id: str,
    status: str,
    progress: Optional[int] = None,
    last_error: Optional[str] = None,
    output_s3_key: Optional[str] = None,
) -> str:
    """
    Move a job into a terminal status and append ``render_completed``.

    Completion and failure only apply while no cancellation is pending;
    otherwise the job is finalized as cancelled instead. A job that is
    already terminal is left untouched.

    Returns:
        The job's terminal status after this call
    """
    query = db.query(RenderJob).filter(
        RenderJob.id == render_job_id,
        RenderJob.status.notin_(RenderStatus.TERMINAL),
    )
    if status != RenderStatus.CANCELLED:
        query = query.filter(RenderJob.cancel_requested.is_(False))

    values = {RenderJob.status: status, RenderJob.updated_at: utcnow()}
    if progress is not None:
        values[RenderJob.progress] = progress
    if last_error is not None:
        values[RenderJob.last_error] = last_error
    if output_s3_key is not None:
        values[RenderJob.output_s3_key] = output_s3_key

    updated = query.update(values, synchronize_session=False)
    db.expire_all()
    job = get_render_job(db, render_job_id)

    if updated == 0:
        if job.status in RenderStatus.TERMINAL:
            return job.status
        if job.cancel_requested:
            return finalize(db, render_job_id, RenderStatus.CANCELLED, progress=job.progress)
        return job.status

    _append_completed(db, job, status)
    db.commit()

    logger.info(
        "render_finalized",
        render_job_id=render_job_id,
        project_id=job.project_id,
        status=status,
        output_s3_key=output_s3_key,
        last_error=last_error,
    )
    return status


def mark_rendering(db: Session, render_job_id: str) -> bool:
    """
    Move a pending job to rendering.

    Returns:
        False when the job could not start (cancel requested or already
        terminal)
    """
    updated = (
        db.query(RenderJob)
        .filter(
            RenderJob.id == render_job_id,
            RenderJob.status == RenderStatus.PENDING,
            RenderJob.cancel_requested.is_(False),
        )
        .update(
            {
                RenderJob.status: RenderStatus.RENDERING,
                RenderJob.progress: 0,
                RenderJob.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    if updated == 0:
        return False

    db.expire_all()
    job = get_render_job(db, render_job_id)
    message_timeline.append(
        db,
        job.project_id,
        MessageRole.SYSTEM,
        MessageType.RENDER_PROGRESS,
        message_timeline.build_content(
            MessageType.RENDER_PROGRESS,
            [message_timeline.artifact_ref(ArtifactType.RENDER_JOB, job.id)],
            renderJobId=job.id,
            progress=0,
            status=RenderStatus.RENDERING,
        ),
    )
    db.commit()
    return True


def record_progress(db: Session, render_job_id: str, progress: int) -> None:
    """Persist observed progress without changing the job's status"""
    db.query(RenderJob).filter(
        RenderJob.id == render_job_id,
        RenderJob.status.notin_(RenderStatus.TERMINAL),
    ).update(
        {RenderJob.progress: progress, RenderJob.updated_at: utcnow()},
        synchronize_session=False,
    )
    db.commit()


class RenderJobRunner:
    """
    Drives one render job against the renderer.

    ``start()`` submits the render; each ``tick()`` is one poll. Within a
    tick the cancellation latch is read before the renderer is polled and
    again before a reported completion is accepted.

    Usage:
        runner = RenderJobRunner(SessionLocal, renderer, job_id)
        runner.run()  # start, then tick every poll interval until terminal
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        renderer: Renderer,
        render_job_id: str,
        poll_interval: Optional[float] = None,
        retry_sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.renderer = renderer
        self.render_job_id = render_job_id
        self.poll_interval = settings.RENDER_POLL_INTERVAL if poll_interval is None else poll_interval
        self.retry_sleep = retry_sleep
        self.handle: Optional[RenderHandle] = None
        self.last_progress = 0

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def _call_renderer(self, fn):
        return call_with_retry(
            fn,
            "renderer",
            max_retries=settings.EXTERNAL_MAX_RETRIES,
            base_delay=settings.EXTERNAL_RETRY_BASE_DELAY,
            sleep=self.retry_sleep,
        )

    def start(self) -> bool:
        """
        Submit the render.

        Returns:
            True when the job is already terminal and no polling is needed
        """
        with self._session() as db:
            job = db.query(RenderJob).filter(RenderJob.id == self.render_job_id).first()
            if not job:
                logger.error("render_job_missing", render_job_id=self.render_job_id)
                return True
            if job.status in RenderStatus.TERMINAL:
                return True
            if job.cancel_requested:
                finalize(db, job.id, RenderStatus.CANCELLED, progress=job.progress)
                return True

            checkpoint = db.query(Checkpoint).filter(Checkpoint.id == job.source_checkpoint_id).first()
            if not checkpoint:
                finalize(db, job.id, RenderStatus.FAILED, progress=0, last_error="Checkpoint not found")
                return True

            if job.status == RenderStatus.RENDERING and job.renderer_handle:
                # Resumed after a worker restart
                self.handle = RenderHandle(**job.renderer_handle)
                self.last_progress = job.progress
                return False

            if job.status == RenderStatus.PENDING and not mark_rendering(db, job.id):
                # Lost a race with cancel (or another worker)
                db.expire_all()
                job = get_render_job(db, self.render_job_id)
                if job.cancel_requested:
                    finalize(db, job.id, RenderStatus.CANCELLED, progress=job.progress)
                return True

            storyboard = checkpoint.storyboard_json
            brand_kit = checkpoint.brand_kit_json
            render_format = job.format

        self.handle = self._call_renderer(
            lambda: self.renderer.submit_render(storyboard, brand_kit, render_format)
        )

        with self._session() as db:
            db.query(RenderJob).filter(RenderJob.id == self.render_job_id).update(
                {RenderJob.renderer_handle: self.handle.model_dump(), RenderJob.updated_at: utcnow()},
                synchronize_session=False,
            )
            db.commit()

        logger.info("render_started", render_job_id=self.render_job_id, render_id=self.handle.renderId)
        return False

    def tick(self) -> bool:
        """
        Poll the renderer once and apply what it reports.

        Returns:
            True when the job reached a terminal status
        """
        with self._session() as db:
            job = get_render_job(db, self.render_job_id)
            if job.status in RenderStatus.TERMINAL:
                return True

            if job.cancel_requested:
                logger.info("render_cancel_observed", render_job_id=job.id)
                finalize(db, job.id, RenderStatus.CANCELLED, progress=self.last_progress)
                return True

            if self.handle is None:
                if not job.renderer_handle:
                    finalize(db, job.id, RenderStatus.FAILED, last_error="Render was never submitted")
                    return True
                self.handle = RenderHandle(**job.renderer_handle)

        progress = self._call_renderer(lambda: self.renderer.poll_progress(self.handle))

        with self._session() as db:
            if progress.percent != self.last_progress:
                self.last_progress = progress.percent
                record_progress(db, self.render_job_id, self.last_progress)

            if progress.done:
                db.expire_all()
                job = get_render_job(db, self.render_job_id)
                if job.cancel_requested:
                    finalize(db, job.id, RenderStatus.CANCELLED, progress=100)
                else:
                    finalize(
                        db,
                        job.id,
                        RenderStatus.COMPLETED,
                        progress=100,
                        output_s3_key=render_output_key(self.handle.renderId),
                    )
                return True

            if progress.fatal_error:
                finalize(
                    db,
                    self.render_job_id,
                    RenderStatus.FAILED,
                    progress=self.last_progress,
                    last_error=progress.first_error,
                )
                return True

        return False

    def fail(self, error: str) -> str:
        with self._session() as db:
            return finalize(db, self.render_job_id, RenderStatus.FAILED, last_error=error)

    def run(
        self,
        sleep: Callable[[float], None] = time.sleep,
        should_continue: Callable[[], bool] = lambda: True,
    ) -> bool:
        """
        Run the job until it is terminal or ``should_continue`` returns False.

        Unexpected errors fail the job.

        Returns:
            True when the job reached a terminal status
        """
        try:
            terminal = self.start()
            while not terminal:
                if not should_continue():
                    logger.info("render_job_suspended", render_job_id=self.render_job_id)
                    return False
                sleep(self.poll_interval)
                terminal = self.tick()
            return True
        except Exception as e:
            logger.error(
                "render_job_crashed",
                render_job_id=self.render_job_id,
                error=str(e),
                exc_info=True,
            )
            self.fail(str(e))
            return True
