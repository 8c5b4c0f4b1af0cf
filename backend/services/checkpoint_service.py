"""
Checkpoint engine.

Checkpoints are immutable snapshots of storyboard, script and brand kit.
Every edit produces a new checkpoint linked to the checkpoint it was derived
from and to the message that caused it, then moves the project's active
pointer with a version-stamped compare-and-swap.

Functions here flush but never commit; the calling request owns the
transaction so the checkpoint, its message and the pointer move land
together.
"""

import copy
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from config import settings
from errors import ConflictError, NotFoundError, ValidationError, call_with_retry
from models import (
    ArtifactType,
    Checkpoint,
    CheckpointReason,
    Message,
    MessageRole,
    MessageType,
    Project,
    new_id,
    utcnow,
)
from schemas import validate_snapshot, validate_storyboard
from services import message_timeline
from services.project_service import get_checkpoint

logger = structlog.get_logger()


def _move_active_pointer(db: Session, project: Project, checkpoint_id: str, expected_version: int) -> None:
    updated = (
        db.query(Project)
        .filter(Project.id == project.id, Project.version == expected_version)
        .update(
            {
                Project.active_checkpoint_id: checkpoint_id,
                Project.version: Project.version + 1,
                Project.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    if updated == 0:
        logger.warning(
            "active_checkpoint_conflict",
            project_id=project.id,
            expected_version=expected_version,
        )
        raise ConflictError("Project was modified concurrently, reload and retry")
    db.refresh(project)


def create_checkpoint(
    db: Session,
    project: Project,
    source_message_id: str,
    parent_checkpoint_id: Optional[str],
    storyboard: Dict[str, Any],
    script: Dict[str, Any],
    brand_kit: Dict[str, Any],
    name: str,
    reason: str,
    expected_version: Optional[int] = None,
) -> Checkpoint:
    """
    Create a checkpoint and make it the project's active checkpoint.

    Inserts the checkpoint row, a ``checkpoint_created`` message referencing
    it, and moves ``project.active_checkpoint_id``. A ``restoration`` reason
    re-applies ``parent_checkpoint_id`` instead of inserting anything.

    Args:
        db: Database session
        project: Owning project (as read at the start of the request)
        source_message_id: Message that triggered this checkpoint
        parent_checkpoint_id: Checkpoint this one was derived from, if any
        storyboard: Storyboard payload
        script: Script payload
        brand_kit: Brand kit payload
        name: Human readable checkpoint name
        reason: Why the checkpoint is being created
        expected_version: Project version the caller based its edit on;
            defaults to the version currently loaded on ``project``

    Returns:
        The new (or, for restoration, re-applied) checkpoint

    Raises:
        ValidationError: any artifact fails validation or reason is unknown
        NotFoundError: source message or parent checkpoint does not exist
        ConflictError: the active pointer moved since ``expected_version``
    """
    if reason == CheckpointReason.RESTORATION:
        if not parent_checkpoint_id:
            raise ValidationError(
                "Restoration requires the checkpoint to restore",
                field_errors={"parentCheckpointId": ["required for restoration"]},
            )
        return restore_checkpoint(db, project, parent_checkpoint_id, expected_version)["checkpoint"]

    if reason not in CheckpointReason.creating_reasons():
        raise ValidationError(
            f"Invalid checkpoint reason: {reason}",
            field_errors={"reason": [f"must be one of {CheckpointReason.creating_reasons()}"]},
        )

    storyboard, script, brand_kit = validate_snapshot(storyboard, script, brand_kit)

    source_message = (
        db.query(Message)
        .filter(Message.id == source_message_id, Message.project_id == project.id)
        .first()
    )
    if not source_message:
        raise NotFoundError("Message", source_message_id)

    if parent_checkpoint_id:
        get_checkpoint(db, project.id, parent_checkpoint_id)

    if expected_version is None:
        expected_version = project.version

    checkpoint = Checkpoint(
        id=new_id(),
        project_id=project.id,
        name=name,
        source_message_id=source_message_id,
        parent_checkpoint_id=parent_checkpoint_id,
        storyboard_json=storyboard,
        script_json=script,
        brand_kit_json=brand_kit,
        created_at=utcnow(),
    )
    db.add(checkpoint)
    db.flush()

    message_timeline.append(
        db,
        project.id,
        MessageRole.SYSTEM,
        MessageType.CHECKPOINT_CREATED,
        message_timeline.build_content(
            MessageType.CHECKPOINT_CREATED,
            [message_timeline.artifact_ref(ArtifactType.CHECKPOINT, checkpoint.id)],
            checkpointId=checkpoint.id,
            reason=reason,
        ),
    )

    _move_active_pointer(db, project, checkpoint.id, expected_version)

    logger.info(
        "checkpoint_created",
        project_id=project.id,
        checkpoint_id=checkpoint.id,
        parent_checkpoint_id=parent_checkpoint_id,
        reason=reason,
    )
    return checkpoint


def restore_checkpoint(
    db: Session,
    project: Project,
    checkpoint_id: str,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Make an existing checkpoint the active one again.

    Restoring the checkpoint that is already active is harmless: the pointer
    is unchanged and another ``checkpoint_applied`` message is recorded.

    Returns:
        ``{"checkpoint": Checkpoint, "previousCheckpointId": str | None}``
    """
    checkpoint = get_checkpoint(db, project.id, checkpoint_id)
    previous_checkpoint_id = project.active_checkpoint_id

    if expected_version is None:
        expected_version = project.version

    _move_active_pointer(db, project, checkpoint.id, expected_version)

    refs = [message_timeline.artifact_ref(ArtifactType.CHECKPOINT, checkpoint.id)]
    if previous_checkpoint_id and previous_checkpoint_id != checkpoint.id:
        refs.append(message_timeline.artifact_ref(ArtifactType.CHECKPOINT, previous_checkpoint_id))

    message_timeline.append(
        db,
        project.id,
        MessageRole.SYSTEM,
        MessageType.CHECKPOINT_APPLIED,
        message_timeline.build_content(
            MessageType.CHECKPOINT_APPLIED,
            refs,
            checkpointId=checkpoint.id,
            previousCheckpointId=previous_checkpoint_id,
        ),
    )

    logger.info(
        "checkpoint_restored",
        project_id=project.id,
        checkpoint_id=checkpoint.id,
        previous_checkpoint_id=previous_checkpoint_id,
    )
    return {"checkpoint": checkpoint, "previousCheckpointId": previous_checkpoint_id}


# ===== Scene helpers =====

def find_scene(storyboard: Dict[str, Any], scene_id: str) -> Tuple[int, Dict[str, Any]]:
    """Return ``(index, scene)`` for ``scene_id`` or raise NotFoundError"""
    for index, scene in enumerate(storyboard.get("scenes", [])):
        if scene.get("id") == scene_id:
            return index, scene
    raise NotFoundError("Scene", scene_id)


def replace_scene(storyboard: Dict[str, Any], scene_id: str, new_scene: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of ``storyboard`` with exactly one scene replaced.

    The replacement keeps the original scene id and position. All other
    scenes are deep copies of the originals and ``totalDuration`` is
    recomputed from the resulting scene list.
    """
    index, _ = find_scene(storyboard, scene_id)

    updated = copy.deepcopy(storyboard)
    replacement = copy.deepcopy(new_scene)
    replacement["id"] = scene_id
    updated["scenes"][index] = replacement
    updated["totalDuration"] = sum(scene["duration"] for scene in updated["scenes"])
    return validate_storyboard(updated)


def _sync_script_voiceover(script: Dict[str, Any], scene: Dict[str, Any]) -> Dict[str, Any]:
    updated = copy.deepcopy(script)
    for script_scene in updated.get("scenes", []):
        if script_scene.get("sceneId") == scene["id"]:
            script_scene["voiceover"] = scene["voiceoverText"]
    return updated


def _retrying(fn, service: str):
    return call_with_retry(
        fn,
        service,
        max_retries=settings.EXTERNAL_MAX_RETRIES,
        base_delay=settings.EXTERNAL_RETRY_BASE_DELAY,
    )


# ===== Scene-level operations =====

def update_scene(
    db: Session,
    project: Project,
    checkpoint_id: str,
    scene_id: str,
    duration: Optional[float] = None,
    on_screen_text: Optional[str] = None,
    voiceover_text: Optional[str] = None,
) -> Checkpoint:
    """
    Apply a manual edit to one scene and checkpoint the result.

    Fields passed as None keep the scene's current value.
    """
    source = get_checkpoint(db, project.id, checkpoint_id)
    index, scene = find_scene(source.storyboard_json, scene_id)

    changes = {
        field: value
        for field, value in (
            ("duration", duration),
            ("onScreenText", on_screen_text),
            ("voiceoverText", voiceover_text),
        )
        if value is not None
    }
    edited = dict(copy.deepcopy(scene), **changes)
    storyboard = replace_scene(source.storyboard_json, scene_id, edited)
    script = _sync_script_voiceover(source.script_json, edited)

    return create_checkpoint(
        db,
        project,
        source_message_id=source.source_message_id,
        parent_checkpoint_id=source.id,
        storyboard=storyboard,
        script=script,
        brand_kit=source.brand_kit_json,
        name=f"Manual edit scene {index + 1}",
        reason=CheckpointReason.MANUAL_EDIT,
    )


def edit_active_scene(
    db: Session,
    project: Project,
    scene_id: str,
    duration: Optional[float] = None,
    on_screen_text: Optional[str] = None,
    voiceover_text: Optional[str] = None,
) -> Checkpoint:
    """Partially edit one scene of the project's active checkpoint"""
    if not project.active_checkpoint_id:
        raise ValidationError("Project has no active checkpoint", {"checkpoint": ["No active checkpoint"]})
    return update_scene(
        db,
        project,
        project.active_checkpoint_id,
        scene_id,
        duration=duration,
        on_screen_text=on_screen_text,
        voiceover_text=voiceover_text,
    )


def regenerate_scene(
    db: Session,
    project: Project,
    checkpoint_id: str,
    scene_id: str,
    instruction: str,
    generator,
) -> Tuple[Checkpoint, Message]:
    """
    Ask the content generator for a new version of one scene.

    Every other scene is carried over unchanged. Records the new checkpoint
    and a ``scene_regenerated`` message announcing it.

    Returns:
        ``(checkpoint, scene_regenerated message)``
    """
    source = get_checkpoint(db, project.id, checkpoint_id)
    index, scene = find_scene(source.storyboard_json, scene_id)

    regenerated = _retrying(
        lambda: generator.regenerate_scene(
            storyboard=source.storyboard_json,
            scene=copy.deepcopy(scene),
            instruction=instruction,
            brand_kit=source.brand_kit_json,
        ),
        "content_generator",
    )
    regenerated = dict(regenerated, id=scene_id)

    storyboard = replace_scene(source.storyboard_json, scene_id, regenerated)
    script = _sync_script_voiceover(source.script_json, regenerated)

    checkpoint = create_checkpoint(
        db,
        project,
        source_message_id=source.source_message_id,
        parent_checkpoint_id=source.id,
        storyboard=storyboard,
        script=script,
        brand_kit=source.brand_kit_json,
        name=f"Regenerated scene {index + 1}",
        reason=CheckpointReason.SCENE_REGENERATION,
    )

    message = message_timeline.append(
        db,
        project.id,
        MessageRole.ASSISTANT,
        MessageType.SCENE_REGENERATED,
        message_timeline.build_content(
            MessageType.SCENE_REGENERATED,
            [message_timeline.artifact_ref(ArtifactType.CHECKPOINT, checkpoint.id)],
            checkpointId=checkpoint.id,
            sceneId=scene_id,
            instruction=instruction,
        ),
    )
    return checkpoint, message


def _assign_asset_ids(suggestions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [dict(suggestion, id=suggestion.get("id") or new_id()) for suggestion in suggestions]


def generate_assets(
    db: Session,
    project: Project,
    checkpoint_id: str,
    scene_id: str,
    prompt: str,
    generator,
) -> Checkpoint:
    """Replace one scene's asset suggestions with freshly generated ones"""
    source = get_checkpoint(db, project.id, checkpoint_id)
    index, scene = find_scene(source.storyboard_json, scene_id)

    suggestions = _retrying(
        lambda: generator.suggest_assets(
            scene=copy.deepcopy(scene),
            prompt=prompt,
            brand_kit=source.brand_kit_json,
        ),
        "content_generator",
    )

    edited = copy.deepcopy(scene)
    edited["assetSuggestions"] = _assign_asset_ids(suggestions)
    storyboard = replace_scene(source.storyboard_json, scene_id, edited)

    return create_checkpoint(
        db,
        project,
        source_message_id=source.source_message_id,
        parent_checkpoint_id=source.id,
        storyboard=storyboard,
        script=source.script_json,
        brand_kit=source.brand_kit_json,
        name=f"Generated assets for scene {index + 1}",
        reason=CheckpointReason.ASSET_GENERATION,
    )


def update_brand_kit(
    db: Session,
    project: Project,
    checkpoint_id: str,
    brand_kit: Dict[str, Any],
) -> Checkpoint:
    """Replace the brand kit of a checkpoint, keeping storyboard and script"""
    source = get_checkpoint(db, project.id, checkpoint_id)

    return create_checkpoint(
        db,
        project,
        source_message_id=source.source_message_id,
        parent_checkpoint_id=source.id,
        storyboard=source.storyboard_json,
        script=source.script_json,
        brand_kit=brand_kit,
        name="Brand kit update",
        reason=CheckpointReason.BRAND_KIT_UPDATE,
    )
