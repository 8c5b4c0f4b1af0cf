"""
Projects API Router.

Project management, generation, checkpoint editing and render submission.
Cost-bearing routes run: auth, rate limit, ownership, idempotency, then the
domain operation.
"""

import json

import structlog
from fastapi import APIRouter, Depends, Path
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from models import IdempotentOperation, new_id
from schemas import (
    AssetUploadUrlRequest,
    ConfirmAssetRequest,
    CreateProjectRequest,
    ErrorResponse,
    GenerateAssetsRequest,
    GenerateRequest,
    RegenerateSceneRequest,
    RenderRequest,
    SceneUpdateRequest,
    UpdateBrandKitRequest,
    UpdateSceneRequest,
)
from services import asset_service, checkpoint_service, generation_service, message_timeline, render_jobs
from services.idempotency import run_idempotent
from services.project_service import (
    create_project,
    get_active_checkpoint,
    get_checkpoint,
    get_owned_project,
    get_project,
    list_checkpoints,
    list_projects,
)
from routers.dependencies import (
    get_correlation_id,
    get_generator,
    get_limiter,
    get_render_queue,
    get_session_factory,
    get_storage,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["Projects"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation failed"},
    401: {"model": ErrorResponse, "description": "Missing or invalid session"},
    403: {"model": ErrorResponse, "description": "Project belongs to another user"},
    404: {"model": ErrorResponse, "description": "Resource not found"},
    409: {"model": ErrorResponse, "description": "Conflicting state"},
}


def _project_payload(db: Session, project):
    active = get_active_checkpoint(db, project)
    return {
        "project": project.to_dict(),
        "activeCheckpoint": active.to_dict() if active else None,
    }


# ===== Projects =====

@router.post(
    "/projects",
    status_code=201,
    responses=ERROR_RESPONSES,
    summary="Create Project",
)
async def create_project_endpoint(
    body: CreateProjectRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    project = create_project(db, user_id, body.title)
    db.commit()
    return {"project": project.to_dict()}


@router.get("/projects", summary="List Projects")
async def list_projects_endpoint(
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"projects": [project.to_dict() for project in list_projects(db, user_id)]}


@router.get("/projects/{project_id}", responses=ERROR_RESPONSES, summary="Get Project")
async def get_project_endpoint(
    project_id: str = Path(..., description="Project identifier"),
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    project = get_owned_project(db, project_id, user_id)
    return _project_payload(db, project)


@router.get("/projects/{project_id}/messages", responses=ERROR_RESPONSES, summary="List Messages")
async def list_messages_endpoint(
    project_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Full project timeline, oldest first"""
    get_owned_project(db, project_id, user_id)
    messages = message_timeline.list_for_project(db, project_id)
    return {"messages": [message.to_dict() for message in messages]}


@router.get("/projects/{project_id}/checkpoints", responses=ERROR_RESPONSES, summary="List Checkpoints")
async def list_checkpoints_endpoint(
    project_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    project = get_owned_project(db, project_id, user_id)
    return {
        "activeCheckpointId": project.active_checkpoint_id,
        "checkpoints": [checkpoint.to_dict() for checkpoint in list_checkpoints(db, project_id)],
    }


# ===== Generation =====

@router.post("/projects/{project_id}/generate", responses=ERROR_RESPONSES, summary="Generate Storyboard")
def generate_endpoint(
    project_id: str,
    body: GenerateRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    generator=Depends(get_generator),
    limiter=Depends(get_limiter),
):
    """
    Generate storyboard, script and brand kit for a product URL.

    Replaying the same ``idempotencyKey`` returns the original checkpoint.
    """
    limiter.check(user_id, IdempotentOperation.GENERATE)
    project = get_owned_project(db, project_id, user_id)

    checkpoint, replayed = run_idempotent(
        db,
        body.idempotencyKey,
        user_id,
        project.id,
        IdempotentOperation.GENERATE,
        lambda: generation_service.generate(db, project, body.url, body.format, body.tone, generator),
    )
    db.refresh(project)
    return {**_project_payload(db, project), "checkpoint": checkpoint.to_dict(), "replayed": replayed}


def _sse(event) -> str:
    return f"data: {json.dumps(event)}\n\n"


@router.post(
    "/projects/{project_id}/generate/stream",
    responses=ERROR_RESPONSES,
    summary="Generate Storyboard (Server-Sent Events)",
)
def generate_stream_endpoint(
    project_id: str,
    body: GenerateRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    generator=Depends(get_generator),
    limiter=Depends(get_limiter),
    session_factory=Depends(get_session_factory),
    correlation_id: str = Depends(get_correlation_id),
):
    """
    Generate into a project while streaming progress as server-sent events.

    Events: ``generation_progress`` for each progress message as soon as it
    is committed, then ``generation_complete`` (checkpoint id, summary,
    ``replayed``) or ``generation_error`` (API error body).
    """
    limiter.check(user_id, IdempotentOperation.GENERATE)
    get_owned_project(db, project_id, user_id)

    events = generation_service.stream_generation(
        session_factory,
        project_id,
        user_id,
        body.url,
        body.format,
        body.tone,
        body.idempotencyKey,
        generator,
        correlation_id=correlation_id,
    )
    return StreamingResponse(
        (_sse(event) for event in events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "X-Correlation-ID": correlation_id},
    )


@router.post("/generate", responses=ERROR_RESPONSES, summary="Create Project And Generate")
def create_and_generate_endpoint(
    body: GenerateRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    generator=Depends(get_generator),
    limiter=Depends(get_limiter),
):
    """Create a project titled after the URL's host and generate into it"""
    limiter.check(user_id, IdempotentOperation.GENERATE)
    project_id = new_id()

    def produce():
        project = create_project(db, user_id, generation_service.title_from_url(body.url), project_id)
        return generation_service.generate(db, project, body.url, body.format, body.tone, generator)

    checkpoint, replayed = run_idempotent(
        db,
        body.idempotencyKey,
        user_id,
        project_id,
        IdempotentOperation.GENERATE,
        produce,
    )
    project = get_project(db, checkpoint.project_id)
    return {**_project_payload(db, project), "checkpoint": checkpoint.to_dict(), "replayed": replayed}


# ===== Checkpoint editing =====

@router.post("/projects/{project_id}/update-scene", responses=ERROR_RESPONSES, summary="Edit Scene")
async def update_scene_endpoint(
    project_id: str,
    body: UpdateSceneRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    project = get_owned_project(db, project_id, user_id)
    checkpoint = checkpoint_service.update_scene(
        db,
        project,
        body.checkpointId,
        body.sceneId,
        body.duration,
        body.onScreenText,
        body.voiceoverText,
    )
    db.commit()
    return {"checkpoint": checkpoint.to_dict()}


@router.patch("/projects/{project_id}/scenes/{scene_id}", responses=ERROR_RESPONSES, summary="Edit Active Scene")
async def edit_active_scene_endpoint(
    project_id: str,
    scene_id: str,
    body: SceneUpdateRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Change only the given fields of one scene in the active checkpoint"""
    project = get_owned_project(db, project_id, user_id)
    checkpoint = checkpoint_service.edit_active_scene(
        db,
        project,
        scene_id,
        duration=body.duration,
        on_screen_text=body.onScreenText,
        voiceover_text=body.voiceoverText,
    )
    db.commit()
    _, scene = checkpoint_service.find_scene(checkpoint.storyboard_json, scene_id)
    return {"checkpoint": checkpoint.to_dict(), "scene": scene}


@router.post("/projects/{project_id}/regenerate-scene", responses=ERROR_RESPONSES, summary="Regenerate Scene")
def regenerate_scene_endpoint(
    project_id: str,
    body: RegenerateSceneRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    generator=Depends(get_generator),
    limiter=Depends(get_limiter),
):
    """Regenerate one scene; every other scene is carried over unchanged"""
    limiter.check(user_id, IdempotentOperation.REGENERATE_SCENE)
    project = get_owned_project(db, project_id, user_id)

    message, replayed = run_idempotent(
        db,
        body.idempotencyKey,
        user_id,
        project.id,
        IdempotentOperation.REGENERATE_SCENE,
        lambda: checkpoint_service.regenerate_scene(
            db, project, body.checkpointId, body.sceneId, body.instruction, generator
        )[1],
    )
    checkpoint = get_checkpoint(db, project.id, message.content_json["checkpointId"])
    return {"checkpoint": checkpoint.to_dict(), "message": message.to_dict(), "replayed": replayed}


@router.post("/projects/{project_id}/generate-assets", responses=ERROR_RESPONSES, summary="Generate Scene Assets")
def generate_assets_endpoint(
    project_id: str,
    body: GenerateAssetsRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    generator=Depends(get_generator),
    limiter=Depends(get_limiter),
):
    limiter.check(user_id, IdempotentOperation.GENERATE_ASSETS)
    project = get_owned_project(db, project_id, user_id)

    checkpoint, replayed = run_idempotent(
        db,
        body.idempotencyKey,
        user_id,
        project.id,
        IdempotentOperation.GENERATE_ASSETS,
        lambda: checkpoint_service.generate_assets(
            db, project, body.checkpointId, body.sceneId, body.prompt, generator
        ),
    )
    return {"checkpoint": checkpoint.to_dict(), "replayed": replayed}


@router.post("/projects/{project_id}/assets/upload-url", responses=ERROR_RESPONSES, summary="Asset Upload URL")
async def asset_upload_url_endpoint(
    project_id: str,
    body: AssetUploadUrlRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    project = get_owned_project(db, project_id, user_id)
    return asset_service.create_asset_upload_url(
        db, project, body.sceneId, body.assetId, body.contentType, storage
    )


@router.post("/projects/{project_id}/assets/confirm", responses=ERROR_RESPONSES, summary="Confirm Asset Upload")
async def confirm_asset_endpoint(
    project_id: str,
    body: ConfirmAssetRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    project = get_owned_project(db, project_id, user_id)
    checkpoint = asset_service.confirm_asset(db, project, body.sceneId, body.assetId, body.s3Key)
    db.commit()
    return {"checkpoint": checkpoint.to_dict(), "assetId": body.assetId, "s3Key": body.s3Key}


@router.post("/projects/{project_id}/brand-kit", responses=ERROR_RESPONSES, summary="Update Brand Kit")
async def update_brand_kit_endpoint(
    project_id: str,
    body: UpdateBrandKitRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    project = get_owned_project(db, project_id, user_id)
    checkpoint = checkpoint_service.update_brand_kit(db, project, body.checkpointId, body.brandKit)
    db.commit()
    return {"checkpoint": checkpoint.to_dict()}


@router.post(
    "/projects/{project_id}/checkpoints/{checkpoint_id}/restore",
    responses=ERROR_RESPONSES,
    summary="Restore Checkpoint",
)
async def restore_checkpoint_endpoint(
    project_id: str,
    checkpoint_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    project = get_owned_project(db, project_id, user_id)
    result = checkpoint_service.restore_checkpoint(db, project, checkpoint_id)
    db.commit()
    return {
        "checkpoint": result["checkpoint"].to_dict(),
        "previousCheckpointId": result["previousCheckpointId"],
    }


# ===== Rendering =====

@router.post("/projects/{project_id}/render", status_code=202, responses=ERROR_RESPONSES, summary="Submit Render")
def submit_render_endpoint(
    project_id: str,
    body: RenderRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    queue=Depends(get_render_queue),
    limiter=Depends(get_limiter),
    correlation_id: str = Depends(get_correlation_id),
):
    """
    Create a render job and queue it for the render worker.

    Duplicate requests with the same ``idempotencyKey`` receive the same job
    and do not queue it again.
    """
    limiter.check(user_id, IdempotentOperation.RENDER)
    project = get_owned_project(db, project_id, user_id)

    job, replayed = run_idempotent(
        db,
        body.idempotencyKey,
        user_id,
        project.id,
        IdempotentOperation.RENDER,
        lambda: render_jobs.submit_render(db, project, body.checkpointId, body.format, correlation_id),
    )
    if not replayed:
        render_jobs.enqueue_render(db, job, queue)

    return {"renderJob": job.to_dict(), "replayed": replayed}


@router.get("/projects/{project_id}/render-jobs", responses=ERROR_RESPONSES, summary="List Render Jobs")
async def list_render_jobs_endpoint(
    project_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    get_owned_project(db, project_id, user_id)
    return {"renderJobs": [job.to_dict() for job in render_jobs.list_render_jobs(db, project_id)]}
