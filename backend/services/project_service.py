"""
Project ownership and read helpers
"""

from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from errors import ForbiddenError, NotFoundError
from models import Checkpoint, Project, new_id, utcnow

logger = structlog.get_logger()


def create_project(db: Session, user_id: str, title: str, project_id: Optional[str] = None) -> Project:
    """Create an empty project owned by ``user_id`` (flushed, not committed)"""
    now = utcnow()
    project = Project(
        id=project_id or new_id(),
        user_id=user_id,
        title=title,
        active_checkpoint_id=None,
        version=0,
        created_at=now,
        updated_at=now,
    )
    db.add(project)
    db.flush()
    logger.info("project_created", project_id=project.id, user_id=user_id)
    return project


def get_project(db: Session, project_id: str) -> Project:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise NotFoundError("Project", project_id)
    return project


def get_owned_project(db: Session, project_id: str, user_id: str) -> Project:
    """
    Load a project and verify the caller owns it.

    Raises:
        NotFoundError: project does not exist
        ForbiddenError: project belongs to another user
    """
    project = get_project(db, project_id)
    if project.user_id != user_id:
        logger.warning("project_access_denied", project_id=project_id, user_id=user_id)
        raise ForbiddenError("You do not have access to this project")
    return project


def list_projects(db: Session, user_id: str) -> List[Project]:
    return (
        db.query(Project)
        .filter(Project.user_id == user_id)
        .order_by(Project.updated_at.desc())
        .all()
    )


def get_checkpoint(db: Session, project_id: str, checkpoint_id: str) -> Checkpoint:
    """Load a checkpoint that must belong to ``project_id``"""
    checkpoint = (
        db.query(Checkpoint)
        .filter(Checkpoint.id == checkpoint_id, Checkpoint.project_id == project_id)
        .first()
    )
    if not checkpoint:
        raise NotFoundError("Checkpoint", checkpoint_id)
    return checkpoint


def get_active_checkpoint(db: Session, project: Project) -> Optional[Checkpoint]:
    if not project.active_checkpoint_id:
        return None
    return db.query(Checkpoint).filter(Checkpoint.id == project.active_checkpoint_id).first()


def get_latest_checkpoint(db: Session, project_id: str) -> Optional[Checkpoint]:
    return (
        db.query(Checkpoint)
        .filter(Checkpoint.project_id == project_id)
        .order_by(Checkpoint.created_at.desc())
        .first()
    )


def list_checkpoints(db: Session, project_id: str) -> List[Checkpoint]:
    """All checkpoints of a project, oldest first"""
    return (
        db.query(Checkpoint)
        .filter(Checkpoint.project_id == project_id)
        .order_by(Checkpoint.created_at.asc())
        .all()
    )
