"""
User-uploaded scene assets
"""

import copy
from typing import Any, Dict

import structlog
from sqlalchemy.orm import Session

from config import settings
from errors import NotFoundError
from models import Checkpoint, CheckpointReason, Project
from services.checkpoint_service import create_checkpoint, find_scene, replace_scene
from services.project_service import get_active_checkpoint, get_latest_checkpoint
from services.s3_storage import asset_upload_key, validate_s3_key

logger = structlog.get_logger()

_EXTENSIONS = (
    ("png", "png"),
    ("jpeg", "jpg"),
    ("jpg", "jpg"),
    ("webp", "webp"),
    ("gif", "gif"),
    ("mp4", "mp4"),
    ("webm", "webm"),
)


def extension_for(content_type: str) -> str:
    """
    File extension for an upload content type.

    Examples:
        >>> extension_for("image/jpeg")
        'jpg'
        >>> extension_for("application/octet-stream")
        'bin'
    """
    for marker, extension in _EXTENSIONS:
        if marker in content_type:
            return extension
    return "bin"


def _base_checkpoint(db: Session, project: Project) -> Checkpoint:
    checkpoint = get_active_checkpoint(db, project) or get_latest_checkpoint(db, project.id)
    if not checkpoint:
        raise NotFoundError("Checkpoint")
    return checkpoint


def create_asset_upload_url(
    db: Session,
    project: Project,
    scene_id: str,
    asset_id: str,
    content_type: str,
    storage,
) -> Dict[str, Any]:
    """
    Issue a presigned PUT URL for a scene asset upload.

    Returns:
        ``{"uploadUrl", "s3Key", "expiresIn"}``
    """
    find_scene(_base_checkpoint(db, project).storyboard_json, scene_id)

    s3_key = asset_upload_key(project.id, scene_id, asset_id, extension_for(content_type))
    expires_in = settings.UPLOAD_URL_EXPIRY
    upload_url = storage.generate_presigned_upload_url(s3_key, content_type, expiry=expires_in)

    logger.info("asset_upload_url_issued", project_id=project.id, scene_id=scene_id, s3_key=s3_key)
    return {"uploadUrl": upload_url, "s3Key": s3_key, "expiresIn": expires_in}


def confirm_asset(
    db: Session,
    project: Project,
    scene_id: str,
    asset_id: str,
    s3_key: str,
) -> Checkpoint:
    """
    Attach an uploaded object to an asset suggestion.

    Works on the active checkpoint (or the latest one when none is active)
    and records the storage key, never a URL.
    """
    s3_key = validate_s3_key(s3_key)
    source = _base_checkpoint(db, project)
    index, scene = find_scene(source.storyboard_json, scene_id)

    edited = copy.deepcopy(scene)
    for asset in edited.get("assetSuggestions", []):
        if asset.get("id") == asset_id:
            asset["s3Key"] = s3_key
            break
    else:
        raise NotFoundError("Asset", asset_id)

    storyboard = replace_scene(source.storyboard_json, scene_id, edited)

    return create_checkpoint(
        db,
        project,
        source_message_id=source.source_message_id,
        parent_checkpoint_id=source.id,
        storyboard=storyboard,
        script=source.script_json,
        brand_kit=source.brand_kit_json,
        name=f"Confirmed asset for scene {index + 1}",
        reason=CheckpointReason.ASSET_GENERATION,
    )
