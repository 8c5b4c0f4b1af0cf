"""
Tests for the render worker loop.
"""

from unittest.mock import patch

import pytest

from models import RenderJob
from services import render_jobs
from tests.fakes import FakeQueue, ScriptedRenderer, progress
from worker import RenderWorker


@pytest.fixture
def job(db, project, generated):
    job = render_jobs.submit_render(db, project, generated.id, "16:9", correlation_id="corr-9")
    db.commit()
    return job


def make_worker(session_factory, queue, renderer):
    return RenderWorker(
        worker_id="worker-test",
        queue=queue,
        renderer=renderer,
        session_factory=session_factory,
        sleep=lambda s: None,
        install_signal_handlers=False,
    )


class TestProcessPayload:

    def test_drives_job_to_completion(self, session_factory, db, job):
        renderer = ScriptedRenderer([progress(0.5), progress(1.0, done=True)], render_id="r-9")
        worker = make_worker(session_factory, FakeQueue(), renderer)

        assert worker.process_payload({"render_job_id": job.id, "correlation_id": "corr-9"}) is True

        db.expire_all()
        finished = db.query(RenderJob).filter(RenderJob.id == job.id).one()
        assert finished.status == "completed"
        assert finished.output_s3_key == "renders/r-9.mp4"
        assert renderer.submitted[0]["format"] == "16:9"

    def test_shutdown_requeues_unfinished_job(self, session_factory, job):
        queue = FakeQueue()
        worker = make_worker(session_factory, queue, ScriptedRenderer([progress(0.1)]))
        worker.state.request_shutdown()

        assert worker.process_payload({"render_job_id": job.id, "correlation_id": "corr-9"}) is False
        assert queue.items == [{"render_job_id": job.id, "correlation_id": "corr-9"}]
        assert worker.state.current_job_id is None

    def test_payload_without_id_is_dropped(self, session_factory):
        worker = make_worker(session_factory, FakeQueue(), ScriptedRenderer([progress(0)]))
        assert worker.process_payload({"correlation_id": "x"}) is True


class TestRunLoop:

    def test_run_drains_queue_until_shutdown(self, session_factory, db, job):
        queue = FakeQueue()
        queue.enqueue_render(job.id, "corr-9")
        worker = make_worker(session_factory, queue, ScriptedRenderer([progress(1.0, done=True)]))

        original = worker.process_payload

        def process_then_stop(payload):
            result = original(payload)
            worker.state.request_shutdown()
            return result

        worker.process_payload = process_then_stop
        with patch("worker.init_db"):
            worker.run()

        db.expire_all()
        assert db.query(RenderJob).filter(RenderJob.id == job.id).one().status == "completed"
        assert queue.items == []


class TestHealth:

    def test_health_status_reports_components(self, session_factory):
        worker = make_worker(session_factory, FakeQueue(), ScriptedRenderer([progress(0)]))
        with patch("worker.get_db_context", side_effect=RuntimeError("db down")):
            status = worker.get_health_status()

        assert status["worker_id"] == "worker-test"
        assert status["redis_healthy"] is True
        assert status["database_healthy"] is False
        assert status["healthy"] is False
