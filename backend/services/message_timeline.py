"""
Append-only message timeline per project.

Every checkpoint-affecting or render-affecting action is recorded here as a
typed, versioned message. Content is validated against the schema selected
by the message type before insert.
"""

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from errors import SchemaValidationError
from models import Checkpoint, Message, MessageRole, RenderJob, new_id, utcnow
from schemas import CURRENT_MESSAGE_VERSION, validate_message_content

logger = structlog.get_logger()


def append(
    db: Session,
    project_id: str,
    role: str,
    message_type: str,
    content: Dict[str, Any],
) -> Message:
    """
    Validate and append a message to a project's timeline.

    The row is flushed but not committed; callers own the transaction.

    Args:
        db: Database session
        project_id: Owning project
        role: user, assistant or system
        message_type: Discriminator selecting the content schema
        content: Message payload (must carry version and artifactRefs)

    Returns:
        The new Message

    Raises:
        SchemaValidationError: if role or content is invalid
    """
    if role not in MessageRole.all_roles():
        raise SchemaValidationError(
            f"Invalid message role: {role}",
            field_errors={"role": [f"must be one of {MessageRole.all_roles()}"]},
        )

    validated = validate_message_content(message_type, content)
    _assert_artifacts_exist(db, project_id, validated["artifactRefs"])

    next_seq = (
        db.query(func.coalesce(func.max(Message.seq), 0))
        .filter(Message.project_id == project_id)
        .scalar()
    ) + 1

    message = Message(
        id=new_id(),
        project_id=project_id,
        seq=next_seq,
        role=role,
        type=message_type,
        content_json=validated,
        created_at=utcnow(),
    )
    db.add(message)
    db.flush()

    logger.info(
        "message_appended",
        project_id=project_id,
        message_id=message.id,
        message_type=message_type,
        seq=next_seq,
    )
    return message


def list_for_project(db: Session, project_id: str) -> List[Message]:
    """
    Load every message of a project, oldest first.

    Ties on ``created_at`` are broken by insertion order.
    """
    return (
        db.query(Message)
        .filter(Message.project_id == project_id)
        .order_by(Message.created_at.asc(), Message.seq.asc())
        .all()
    )


def _artifact_model(artifact_type: str):
    if artifact_type == "checkpoint":
        return Checkpoint
    if artifact_type == "render_job":
        return RenderJob
    raise SchemaValidationError(
        f"Unknown artifact type: {artifact_type}",
        field_errors={"artifactRefs": [f"unknown type '{artifact_type}'"]},
    )


def _artifact_exists(db: Session, project_id: str, ref: Dict[str, str]) -> bool:
    model = _artifact_model(ref["type"])
    return (
        db.query(model.id)
        .filter(model.id == ref["id"], model.project_id == project_id)
        .first()
    ) is not None


def _assert_artifacts_exist(db: Session, project_id: str, refs: List[Dict[str, str]]) -> None:
    missing = [ref for ref in refs if not _artifact_exists(db, project_id, ref)]
    if missing:
        raise SchemaValidationError(
            "Message references unknown artifacts",
            field_errors={
                "artifactRefs": [f"{ref['type']} {ref['id']} does not exist" for ref in missing]
            },
        )


def artifact_ref(artifact_type: str, artifact_id: str) -> Dict[str, str]:
    return {"type": artifact_type, "id": artifact_id}


def build_content(message_type: str, artifact_refs: Optional[List[Dict[str, str]]] = None, **fields) -> Dict[str, Any]:
    """Build a message payload at the current schema version"""
    return {
        "version": CURRENT_MESSAGE_VERSION,
        "type": message_type,
        "artifactRefs": artifact_refs or [],
        **fields,
    }


def resolve_artifact_refs(db: Session, message: Message) -> List[Dict[str, Any]]:
    """
    Resolve a message's artifact references against the entity tables.

    Returns:
        One entry per ref: ``{"type", "id", "exists"}``; ``exists`` is True
        only when an entity of the matching type and project was found.
    """
    return [
        {"type": ref["type"], "id": ref["id"], "exists": _artifact_exists(db, message.project_id, ref)}
        for ref in message.content_json.get("artifactRefs", [])
    ]
