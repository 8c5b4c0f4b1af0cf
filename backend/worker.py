"""
Render Worker

This worker:
- Listens to the Redis render queue (BLPOP)
- Drives each render job against the renderer until it is terminal
- Polls renderer progress at a fixed interval and observes cancellation
- Marks crashed jobs failed with a render_completed message
- Supports graceful shutdown (SIGTERM, SIGINT), re-queueing an unfinished job
- Performs periodic health checks of Redis and the database
- Designed for horizontal scaling (multiple workers)
"""

import signal
import sys
import time
import traceback
import structlog
from typing import Optional, Dict, Any, Callable
from datetime import datetime, timezone

from sqlalchemy import text

from redis_client import redis_client
from database import SessionLocal, get_db_context, init_db
from config import settings
from errors import get_retry_delay
from services.render_jobs import RenderJobRunner
from services.renderer import Renderer, get_renderer

logger = structlog.get_logger()


class WorkerState:
    """Worker state management for graceful shutdown"""

    def __init__(self):
        self.running = True
        self.current_job_id: Optional[str] = None
        self.shutdown_requested = False

    def request_shutdown(self):
        """Request graceful shutdown"""
        self.shutdown_requested = True
        logger.info("shutdown_requested")

    def is_running(self) -> bool:
        """Check if worker should continue running"""
        return self.running and not self.shutdown_requested

    def stop(self):
        """Stop the worker"""
        self.running = False
        logger.info("worker_stopped")


class RenderWorker:
    """
    Worker for processing render jobs from the Redis queue

    Features:
    - Blocking queue pop with timeout (BLPOP)
    - One RenderJobRunner per job, ticking every RENDER_POLL_INTERVAL
    - Graceful shutdown handling
    - Health check support
    """

    def __init__(
        self,
        worker_id: Optional[str] = None,
        queue=None,
        renderer: Optional[Renderer] = None,
        session_factory: Callable = SessionLocal,
        sleep: Callable[[float], None] = time.sleep,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize worker

        Args:
            worker_id: Optional worker identifier for multi-worker setups
            queue: Render queue (defaults to the global Redis client)
            renderer: Renderer (defaults to the configured one)
            session_factory: Database session factory
            sleep: Sleep function between polls
            install_signal_handlers: Register SIGTERM/SIGINT handlers
        """
        self.worker_id = worker_id or f"worker-{id(self)}"
        self.state = WorkerState()
        self.queue = queue or redis_client
        self.renderer = renderer or get_renderer()
        self.session_factory = session_factory
        self.sleep = sleep
        self.health_check_interval = 30  # seconds
        self.last_health_check = time.time()
        self.consecutive_errors = 0

        if install_signal_handlers:
            # Setup signal handlers for graceful shutdown
            signal.signal(signal.SIGTERM, self._handle_shutdown_signal)
            signal.signal(signal.SIGINT, self._handle_shutdown_signal)

        logger.info(
            "worker_initialized",
            worker_id=self.worker_id,
            poll_interval=settings.RENDER_POLL_INTERVAL
        )

    def _handle_shutdown_signal(self, signum, frame):
        """Handle shutdown signals (SIGTERM, SIGINT)"""
        signal_name = "SIGTERM" if signum == signal.SIGTERM else "SIGINT"
        logger.info(
            "shutdown_signal_received",
            signal=signal_name,
            current_job=self.state.current_job_id
        )
        self.state.request_shutdown()

    def run(self):
        """
        Main worker loop

        Continuously polls the render queue and processes jobs.
        Exits gracefully on shutdown signal.
        """
        logger.info("worker_started", worker_id=self.worker_id)

        # Initialize database
        try:
            init_db()
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            return

        while self.state.is_running():
            try:
                # Periodic health check
                self._perform_health_check()

                # Dequeue job from Redis (blocking with timeout)
                payload = self.queue.dequeue_render()

                if payload is None:
                    # No job available, continue polling
                    continue

                self.process_payload(payload)
                self.consecutive_errors = 0

            except KeyboardInterrupt:
                logger.info("keyboard_interrupt_received")
                break
            except Exception as e:
                logger.error(
                    "worker_loop_error",
                    error=str(e),
                    traceback=traceback.format_exc()
                )
                # Continue processing despite errors
                self.sleep(get_retry_delay(self.consecutive_errors, max_delay=10.0))
                self.consecutive_errors += 1

        logger.info("worker_shutdown_complete", worker_id=self.worker_id)

    def process_payload(self, payload: Dict[str, Any]) -> bool:
        """
        Run one queued render job

        Returns:
            True when the job reached a terminal status, False when it was
            handed back to the queue because of shutdown
        """
        render_job_id = payload.get("render_job_id")
        if not render_job_id:
            logger.error("render_payload_missing_id", payload=payload)
            return True

        self.state.current_job_id = render_job_id
        try:
            with structlog.contextvars.bound_contextvars(
                render_job_id=render_job_id,
                correlation_id=payload.get("correlation_id"),
                worker_id=self.worker_id,
            ):
                logger.info("render_job_processing_started")

                runner = RenderJobRunner(self.session_factory, self.renderer, render_job_id)
                terminal = runner.run(
                    sleep=self.sleep,
                    should_continue=lambda: not self.state.shutdown_requested,
                )

                if not terminal:
                    # Another worker resumes from the stored renderer handle
                    self.queue.enqueue_render(render_job_id, payload.get("correlation_id"))
                    logger.info("render_job_requeued")
                else:
                    logger.info("render_job_processing_finished")
                return terminal
        finally:
            self.state.current_job_id = None

    def _perform_health_check(self):
        """
        Perform periodic health check

        Checks Redis and database connectivity at most once per interval.
        """
        current_time = time.time()
        if current_time - self.last_health_check < self.health_check_interval:
            return

        self.last_health_check = current_time
        status = self.get_health_status()
        if status["healthy"]:
            logger.info("health_check_passed", worker_id=self.worker_id)
        else:
            logger.error(
                "health_check_failed",
                worker_id=self.worker_id,
                redis_healthy=status["redis_healthy"],
                database_healthy=status["database_healthy"]
            )

    def get_health_status(self) -> Dict[str, Any]:
        """
        Get current health status

        Returns:
            Dictionary with health status information
        """
        redis_healthy = self.queue.ping()

        db_healthy = False
        try:
            with get_db_context() as db:
                db.execute(text("SELECT 1"))
            db_healthy = True
        except Exception as e:
            logger.error("health_check_database_error", worker_id=self.worker_id, error=str(e))

        return {
            "worker_id": self.worker_id,
            "running": self.state.is_running(),
            "current_job": self.state.current_job_id,
            "redis_healthy": redis_healthy,
            "database_healthy": db_healthy,
            "healthy": redis_healthy and db_healthy and self.state.is_running(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }


def main():
    """
    Main entry point for worker

    Usage:
        python worker.py [worker_id]

    Example:
        python worker.py worker-1
    """
    worker_id = sys.argv[1] if len(sys.argv) > 1 else None

    worker = RenderWorker(worker_id=worker_id)

    try:
        worker.run()
    except Exception as e:
        logger.error(
            "worker_fatal_error",
            error=str(e),
            traceback=traceback.format_exc()
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
