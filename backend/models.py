"""
SQLAlchemy database models
"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Text, JSON, Index, UniqueConstraint
)
from database import Base


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new UUID string identifier"""
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class Project(Base):
    """
    Project model

    Owned exclusively by the creating user. ``active_checkpoint_id`` points to
    the most recently created or restored checkpoint; ``version`` is bumped
    every time that pointer moves.
    """
    __tablename__ = "project"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    active_checkpoint_id = Column(String, nullable=True, index=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Project(id={self.id}, user={self.user_id}, active={self.active_checkpoint_id})>"

    def to_dict(self):
        """Convert project to dictionary"""
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "activeCheckpointId": self.active_checkpoint_id,
            "version": self.version,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class Checkpoint(Base):
    """
    Immutable snapshot of storyboard, script and brand kit.

    Rows are inserted once and never updated; edits produce a new row whose
    ``parent_checkpoint_id`` points at the edited checkpoint.
    """
    __tablename__ = "checkpoint"

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    source_message_id = Column(String, ForeignKey("message.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_checkpoint_id = Column(String, nullable=True)
    storyboard_json = Column(JSON, nullable=False)
    script_json = Column(JSON, nullable=False)
    brand_kit_json = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Checkpoint(id={self.id}, project={self.project_id}, parent={self.parent_checkpoint_id})>"

    def to_dict(self):
        """Convert checkpoint to dictionary"""
        return {
            "id": self.id,
            "projectId": self.project_id,
            "name": self.name,
            "sourceMessageId": self.source_message_id,
            "parentCheckpointId": self.parent_checkpoint_id,
            "storyboardJson": self.storyboard_json,
            "scriptJson": self.script_json,
            "brandKitJson": self.brand_kit_json,
            "createdAt": _iso(self.created_at),
        }


class Message(Base):
    """
    Append-only project timeline entry.

    Ordered by ``created_at`` then ``seq`` (per-project insertion counter).
    """
    __tablename__ = "message"

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True)
    seq = Column(Integer, nullable=False, default=0)
    role = Column(String, nullable=False)  # user, assistant, system
    type = Column(String, nullable=False)
    content_json = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("message_project_order_idx", "project_id", "created_at", "seq"),
    )

    def __repr__(self):
        return f"<Message(id={self.id}, project={self.project_id}, type={self.type})>"

    def to_dict(self):
        """Convert message to dictionary"""
        return {
            "id": self.id,
            "projectId": self.project_id,
            "role": self.role,
            "type": self.type,
            "contentJson": self.content_json,
            "createdAt": _iso(self.created_at),
        }


class RenderJob(Base):
    """
    Render job model

    One row per render request; mutated in place through the render state
    machine until it reaches a terminal status.
    """
    __tablename__ = "render_job"

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True)
    source_checkpoint_id = Column(String, ForeignKey("checkpoint.id", ondelete="CASCADE"), nullable=False)
    source_message_id = Column(String, ForeignKey("message.id", ondelete="CASCADE"), nullable=False)
    format = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    progress = Column(Integer, nullable=False, default=0)  # 0-100
    cancel_requested = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)
    output_s3_key = Column(String, nullable=True)
    renderer_handle = Column(JSON, nullable=True)
    correlation_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<RenderJob(id={self.id}, status={self.status}, progress={self.progress})>"

    def to_dict(self):
        """Convert render job to dictionary"""
        return {
            "id": self.id,
            "projectId": self.project_id,
            "sourceCheckpointId": self.source_checkpoint_id,
            "sourceMessageId": self.source_message_id,
            "format": self.format,
            "status": self.status,
            "progress": self.progress,
            "cancelRequested": self.cancel_requested,
            "lastError": self.last_error,
            "outputS3Key": self.output_s3_key,
            "correlationId": self.correlation_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class IdempotencyKey(Base):
    """
    Idempotency ledger entry

    Unique on (user_id, operation, key); ``result_ref`` is the id of the
    entity the first successful request produced.
    """
    __tablename__ = "idempotency_key"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    project_id = Column(String, ForeignKey("project.id", ondelete="CASCADE"), nullable=False)
    operation = Column(String, nullable=False)
    key = Column(String, nullable=False)
    result_ref = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "operation", "key", name="idempotency_key_unique"),
    )

    def __repr__(self):
        return f"<IdempotencyKey(user={self.user_id}, op={self.operation}, key={self.key})>"


# Render status constants
class RenderStatus:
    """Constants for render job status values"""
    PENDING = "pending"
    RENDERING = "rendering"
    CANCEL_REQUESTED = "cancel_requested"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    TERMINAL = (COMPLETED, FAILED, CANCELLED)
    CANCELLABLE = (PENDING, RENDERING)


class MessageRole:
    """Constants for message author roles"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @classmethod
    def all_roles(cls):
        return [cls.USER, cls.ASSISTANT, cls.SYSTEM]


class MessageType:
    """Constants for timeline message types"""
    URL_SUBMITTED = "url_submitted"
    GENERATION_PROGRESS = "generation_progress"
    GENERATION_RESULT = "generation_result"
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_APPLIED = "checkpoint_applied"
    SCENE_REGENERATED = "scene_regenerated"
    RENDER_REQUESTED = "render_requested"
    RENDER_PROGRESS = "render_progress"
    RENDER_COMPLETED = "render_completed"

    RENDER_EVENTS = frozenset({RENDER_REQUESTED, RENDER_PROGRESS, RENDER_COMPLETED})


class CheckpointReason:
    """Why a checkpoint was created"""
    GENERATION = "generation"
    MANUAL_EDIT = "manual_edit"
    SCENE_REGENERATION = "scene_regeneration"
    ASSET_GENERATION = "asset_generation"
    BRAND_KIT_UPDATE = "brand_kit_update"
    # Re-applies an existing checkpoint instead of creating one
    RESTORATION = "restoration"

    @classmethod
    def creating_reasons(cls):
        return [
            cls.GENERATION,
            cls.MANUAL_EDIT,
            cls.SCENE_REGENERATION,
            cls.ASSET_GENERATION,
            cls.BRAND_KIT_UPDATE,
        ]


class IdempotentOperation:
    """Operations guarded by the idempotency ledger"""
    GENERATE = "generate"
    REGENERATE_SCENE = "regenerate_scene"
    GENERATE_ASSETS = "generate_assets"
    RENDER = "render"

    @classmethod
    def all_operations(cls):
        return [cls.GENERATE, cls.REGENERATE_SCENE, cls.GENERATE_ASSETS, cls.RENDER]


class ArtifactType:
    """Artifact reference target kinds"""
    CHECKPOINT = "checkpoint"
    RENDER_JOB = "render_job"

