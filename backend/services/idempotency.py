"""
Idempotency ledger.

Maps ``(user_id, operation, key)`` to the entity the first successful
request produced. Uniqueness is enforced by the ``idempotency_key_unique``
index; when two requests race past ``check`` the loser's transaction is
rolled back and it observes the winner's result instead.
"""

from typing import Callable, Optional, Tuple, TypeVar

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ConflictError, InternalError
from models import Checkpoint, IdempotencyKey, IdempotentOperation, Message, RenderJob, new_id, utcnow

logger = structlog.get_logger()

T = TypeVar("T")

_UNIQUE_MARKERS = ("unique", "duplicate")


def _is_unique_violation(error: IntegrityError) -> bool:
    text = str(error.orig if error.orig is not None else error).lower()
    return any(marker in text for marker in _UNIQUE_MARKERS)


def _result_model(operation: str):
    if operation not in IdempotentOperation.all_operations():
        raise InternalError(f"Unknown idempotent operation: {operation}")
    if operation == IdempotentOperation.RENDER:
        return RenderJob
    if operation in (IdempotentOperation.GENERATE, IdempotentOperation.GENERATE_ASSETS):
        return Checkpoint
    return Message


class IdempotencyLedger:
    """Ledger of idempotency keys backed by the ``idempotency_key`` table"""

    def __init__(self, db: Session):
        self.db = db

    def check(self, key: str, user_id: str, operation: str):
        """
        Look up a previously stored result.

        Returns:
            The live entity referenced by the stored ``result_ref`` (RenderJob
            for render, Checkpoint for generate and generate_assets, Message
            otherwise), or None when the key is unused.
        """
        entry = (
            self.db.query(IdempotencyKey)
            .filter(
                IdempotencyKey.user_id == user_id,
                IdempotencyKey.operation == operation,
                IdempotencyKey.key == key,
            )
            .first()
        )
        if not entry:
            return None

        model = _result_model(operation)
        entity = self.db.query(model).filter(model.id == entry.result_ref).first()
        logger.info(
            "idempotency_hit",
            user_id=user_id,
            operation=operation,
            key=key,
            result_ref=entry.result_ref,
            resolved=entity is not None,
        )
        return entity

    def store(self, key: str, project_id: str, user_id: str, operation: str, result_ref: str) -> bool:
        """
        Record the key and commit the current unit of work with it.

        Returns:
            True when this call stored the key. False when a concurrent
            request stored it first; the session is rolled back, discarding
            this request's work.

        Raises:
            IntegrityError: for any constraint failure other than the
                idempotency key uniqueness race
        """
        self.db.add(
            IdempotencyKey(
                id=new_id(),
                user_id=user_id,
                project_id=project_id,
                operation=operation,
                key=key,
                result_ref=result_ref,
                created_at=utcnow(),
            )
        )
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if not _is_unique_violation(e):
                raise
            logger.info(
                "idempotency_race_lost",
                user_id=user_id,
                operation=operation,
                key=key,
            )
            return False
        return True

    def replay_winner(self, key: str, user_id: str, operation: str):
        """
        Discard the current unit of work and return the entity a concurrent
        request stored under the same key, or None when there is none.
        """
        self.db.rollback()
        winner = self.check(key, user_id, operation)
        if winner is not None:
            logger.info(
                "idempotency_winner_replayed",
                user_id=user_id,
                operation=operation,
                key=key,
                result_ref=winner.id,
            )
        return winner


def run_idempotent(
    db: Session,
    key: Optional[str],
    user_id: str,
    project_id: str,
    operation: str,
    produce: Callable[[], T],
    result_ref: Callable[[T], str] = lambda entity: entity.id,
) -> Tuple[T, bool]:
    """
    Execute ``produce`` at most once per ``(user_id, operation, key)``.

    ``produce`` must only flush; this function commits its work together
    with the ledger entry. A duplicate racing the first request may lose the
    active checkpoint compare-and-swap inside ``produce``; it then observes
    the winner's result instead of the conflict.

    Returns:
        ``(entity, replayed)`` where ``replayed`` is True when the entity was
        produced by an earlier (or concurrently winning) request
    """
    if not key:
        entity = produce()
        db.commit()
        return entity, False

    ledger = IdempotencyLedger(db)
    existing = ledger.check(key, user_id, operation)
    if existing is not None:
        return existing, True

    try:
        entity = produce()
    except ConflictError:
        winner = ledger.replay_winner(key, user_id, operation)
        if winner is None:
            raise
        return winner, True

    if ledger.store(key, project_id, user_id, operation, result_ref(entity)):
        return entity, False

    winner = ledger.check(key, user_id, operation)
    if winner is None:
        raise InternalError(f"Idempotency key for {operation} has no stored result")
    return winner, True
