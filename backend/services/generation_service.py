"""
Storyboard generation from a product URL
"""

import itertools
from typing import Any, Callable, Dict, Iterator, Optional, Tuple, Union
from urllib.parse import urlparse

import structlog
from sqlalchemy.orm import Session

from config import settings
from errors import AppError, ConflictError, ExternalServiceError, InternalError, call_with_retry
from models import (
    ArtifactType,
    Checkpoint,
    CheckpointReason,
    IdempotentOperation,
    Message,
    MessageRole,
    MessageType,
    Project,
    new_id,
)
from services import message_timeline
from services.checkpoint_service import create_checkpoint
from services.content_generator import GenerationEvent, GenerationProgress, GenerationResult
from services.idempotency import IdempotencyLedger
from services.project_service import get_project

logger = structlog.get_logger()


def title_from_url(url: str) -> str:
    """
    Derive a project title from a product URL.

    Examples:
        >>> title_from_url("https://www.example.com/p/1")
        'example.com'
    """
    hostname = urlparse(url).hostname
    if not hostname:
        return "Untitled project"
    return hostname[4:] if hostname.startswith("www.") else hostname


def normalize_generation_output(
    result: GenerationResult,
    format: str,
) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
    """
    Assign fresh scene and asset ids, pin the requested format and
    recompute ``totalDuration``.

    Script scenes are remapped to the new scene ids (by old id, falling back
    to position).
    """
    storyboard = result.storyboard
    scene_ids = {}
    scenes = []
    for scene in storyboard.get("scenes", []):
        fresh_id = new_id()
        scene_ids[scene.get("id")] = fresh_id
        scenes.append({
            **scene,
            "id": fresh_id,
            "assetSuggestions": [
                {**asset, "id": asset.get("id") or new_id()}
                for asset in scene.get("assetSuggestions", [])
            ],
        })

    script_scenes = []
    for index, script_scene in enumerate(result.script.get("scenes", [])):
        mapped = scene_ids.get(script_scene.get("sceneId"))
        if mapped is None and index < len(scenes):
            mapped = scenes[index]["id"]
        script_scenes.append({**script_scene, "sceneId": mapped or script_scene.get("sceneId")})

    normalized_storyboard = {
        **storyboard,
        "format": format,
        "totalDuration": sum(scene.get("duration", 0) for scene in scenes),
        "scenes": scenes,
    }
    normalized_script = {**result.script, "scenes": script_scenes}
    return normalized_storyboard, normalized_script, result.brandKit


def _format_seconds(value: float) -> str:
    return f"{value:g}"


def generation_summary(storyboard: Dict[str, Any]) -> str:
    """
    Examples:
        >>> generation_summary({"scenes": [{}, {}, {}], "totalDuration": 15.0})
        '3 scenes, 15s'
    """
    return f"{len(storyboard['scenes'])} scenes, {_format_seconds(storyboard['totalDuration'])}s"


def _open_stream(generator, url: str, format: str, tone: Optional[str]) -> Iterator[GenerationEvent]:
    # Pulling the first event makes connection failures surface here
    events = iter(generator.generate(url, format, tone))
    first = next(events, None)
    if first is None:
        raise ExternalServiceError("content_generator", "Content generator returned no result")
    return itertools.chain([first], events)


def iter_generation(
    db: Session,
    project: Project,
    url: str,
    format: str,
    tone: Optional[str],
    generator,
) -> Iterator[Union[Message, Checkpoint]]:
    """
    Generate a storyboard for ``url`` and checkpoint it, one step at a time.

    Yields every ``generation_progress`` message right after it is appended,
    then the new checkpoint. Nothing is committed here.

    Timeline: ``url_submitted`` (user), ``generation_progress`` per generator
    event, ``checkpoint_created``, ``generation_result`` (assistant).
    """
    submitted = message_timeline.append(
        db,
        project.id,
        MessageRole.USER,
        MessageType.URL_SUBMITTED,
        message_timeline.build_content(
            MessageType.URL_SUBMITTED,
            url=url,
            format=format,
            tone=tone,
        ),
    )

    # Only opening the stream is retried; a stream that breaks midway fails
    events = call_with_retry(
        lambda: _open_stream(generator, url, format, tone),
        "content_generator",
        max_retries=settings.EXTERNAL_MAX_RETRIES,
        base_delay=settings.EXTERNAL_RETRY_BASE_DELAY,
    )

    result = None
    try:
        for event in events:
            if isinstance(event, GenerationProgress):
                yield message_timeline.append(
                    db,
                    project.id,
                    MessageRole.ASSISTANT,
                    MessageType.GENERATION_PROGRESS,
                    message_timeline.build_content(
                        MessageType.GENERATION_PROGRESS,
                        message=event.message,
                        progress=event.progress,
                    ),
                )
            elif isinstance(event, GenerationResult):
                result = event
    except (ConnectionError, TimeoutError) as e:
        raise ExternalServiceError(
            "content_generator",
            f"Content generator stream broke: {e}",
            timeout=isinstance(e, TimeoutError),
        ) from e

    if result is None:
        raise ExternalServiceError("content_generator", "Content generator returned no result")

    storyboard, script, brand_kit = normalize_generation_output(result, format)

    checkpoint = create_checkpoint(
        db,
        project,
        source_message_id=submitted.id,
        parent_checkpoint_id=project.active_checkpoint_id,
        storyboard=storyboard,
        script=script,
        brand_kit=brand_kit,
        name=f"Generated from {urlparse(url).hostname}",
        reason=CheckpointReason.GENERATION,
    )

    stored = checkpoint.storyboard_json
    message_timeline.append(
        db,
        project.id,
        MessageRole.ASSISTANT,
        MessageType.GENERATION_RESULT,
        message_timeline.build_content(
            MessageType.GENERATION_RESULT,
            [message_timeline.artifact_ref(ArtifactType.CHECKPOINT, checkpoint.id)],
            checkpointId=checkpoint.id,
            summary=generation_summary(stored),
        ),
    )

    logger.info(
        "generation_completed",
        project_id=project.id,
        checkpoint_id=checkpoint.id,
        scenes=len(stored["scenes"]),
    )
    yield checkpoint


def generate(
    db: Session,
    project: Project,
    url: str,
    format: str,
    tone: Optional[str],
    generator,
) -> Checkpoint:
    """Run a whole generation and return its checkpoint, without committing"""
    checkpoint = None
    for step in iter_generation(db, project, url, format, tone, generator):
        checkpoint = step
    return checkpoint


def _complete_event(checkpoint: Checkpoint, replayed: bool) -> Dict[str, Any]:
    return {
        "type": "generation_complete",
        "projectId": checkpoint.project_id,
        "checkpointId": checkpoint.id,
        "summary": generation_summary(checkpoint.storyboard_json),
        "replayed": replayed,
    }


def stream_generation(
    session_factory: Callable[[], Session],
    project_id: str,
    user_id: str,
    url: str,
    format: str,
    tone: Optional[str],
    idempotency_key: Optional[str],
    generator,
    correlation_id: Optional[str] = None,
) -> Iterator[Dict[str, Any]]:
    """
    Run a generation in its own session, describing it as events.

    Each ``generation_progress`` message is committed before its event is
    yielded, so the timeline shows progress while the generator is still
    running. The checkpoint is committed together with its idempotency
    entry. Failures end the stream with a ``generation_error`` event
    shaped like an API error body.

    Yields:
        ``generation_progress`` events, then one ``generation_complete``
        or ``generation_error`` event
    """
    db = session_factory()
    ledger = IdempotencyLedger(db)
    operation = IdempotentOperation.GENERATE
    try:
        if idempotency_key:
            existing = ledger.check(idempotency_key, user_id, operation)
            if existing is not None:
                yield _complete_event(existing, replayed=True)
                return

        project = get_project(db, project_id)
        checkpoint = None
        replayed = False
        try:
            for step in iter_generation(db, project, url, format, tone, generator):
                if isinstance(step, Checkpoint):
                    checkpoint = step
                    continue
                event = {
                    "type": MessageType.GENERATION_PROGRESS,
                    "messageId": step.id,
                    "message": step.content_json["message"],
                    "progress": step.content_json["progress"],
                }
                db.commit()
                yield event

            if not idempotency_key:
                db.commit()
            elif not ledger.store(idempotency_key, project_id, user_id, operation, checkpoint.id):
                checkpoint, replayed = ledger.check(idempotency_key, user_id, operation), True
                if checkpoint is None:
                    raise InternalError("Idempotency key for generate has no stored result")
        except ConflictError:
            winner = ledger.replay_winner(idempotency_key, user_id, operation) if idempotency_key else None
            if winner is None:
                raise
            checkpoint, replayed = winner, True

        yield _complete_event(checkpoint, replayed)
    except AppError as e:
        db.rollback()
        e.log_error(project_id=project_id, operation="generation_stream")
        yield {"type": "generation_error", **e.to_dict(), "correlationId": correlation_id}
    except Exception as e:
        db.rollback()
        logger.error("generation_stream_crashed", project_id=project_id, error=str(e), exc_info=True)
        yield {"type": "generation_error", **InternalError().to_dict(), "correlationId": correlation_id}
    finally:
        db.close()
