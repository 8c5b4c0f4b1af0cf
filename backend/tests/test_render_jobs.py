"""
Tests for the render job state machine and the worker-side runner.
"""

import pytest

from errors import ConflictError, ExternalServiceError
from models import Checkpoint, Message, MessageType, RenderJob
from services import message_timeline, render_jobs
from services.project_service import get_project
from services.render_jobs import RenderJobRunner
from tests.fakes import FakeQueue, ScriptedRenderer, progress


@pytest.fixture
def job(db, project, generated):
    job = render_jobs.submit_render(db, project, generated.id, "9:16", correlation_id="corr-1")
    db.commit()
    return job


def reload(session_factory, job_id):
    session = session_factory()
    try:
        return session.query(RenderJob).filter(RenderJob.id == job_id).one()
    finally:
        session.close()


def completed_messages(db, job_id):
    return [
        m for m in db.query(Message).filter(Message.type == "render_completed").all()
        if m.content_json["renderJobId"] == job_id
    ]


def runner_for(session_factory, renderer, job_id):
    return RenderJobRunner(session_factory, renderer, job_id, poll_interval=0, retry_sleep=lambda s: None)


class TestSubmit:

    def test_submit_creates_pending_job_and_message(self, db, job, generated):
        assert job.status == "pending"
        assert job.progress == 0
        assert job.source_checkpoint_id == generated.id
        assert job.source_message_id == generated.source_message_id

        requested = message_timeline.list_for_project(db, job.project_id)[-1]
        assert requested.type == "render_requested"
        assert requested.role == "user"
        assert requested.content_json["artifactRefs"] == [{"type": "render_job", "id": job.id}]

    def test_enqueue_failure_fails_job(self, db, job):
        with pytest.raises(ExternalServiceError):
            render_jobs.enqueue_render(db, job, FakeQueue(accept=False))

        db.expire_all()
        failed = render_jobs.get_render_job(db, job.id)
        assert failed.status == "failed"
        assert failed.last_error == "Failed to enqueue render job"
        assert len(completed_messages(db, job.id)) == 1


class TestRunner:

    def test_progress_then_completion(self, session_factory, db, job):
        renderer = ScriptedRenderer([progress(0.4), progress(1.0, done=True)], render_id="r-42")
        runner = runner_for(session_factory, renderer, job.id)

        assert runner.start() is False
        assert reload(session_factory, job.id).status == "rendering"

        assert runner.tick() is False
        assert reload(session_factory, job.id).progress == 40

        assert runner.tick() is True
        finished = reload(session_factory, job.id)
        assert finished.status == "completed"
        assert finished.progress == 100
        assert finished.output_s3_key == "renders/r-42.mp4"

        messages = completed_messages(db, job.id)
        assert len(messages) == 1
        assert messages[0].role == "system"
        assert messages[0].content_json["status"] == "completed"
        assert messages[0].content_json["outputUrl"] is None

    def test_render_progress_message_on_start(self, session_factory, db, job):
        runner = runner_for(session_factory, ScriptedRenderer([progress(0.1)]), job.id)
        runner.start()

        types = [m.type for m in message_timeline.list_for_project(db, job.project_id)]
        assert types[-2:] == ["render_requested", "render_progress"]

    def test_cancel_before_start(self, session_factory, db, job):
        render_jobs.cancel_render(db, job.id)
        db.commit()

        renderer = ScriptedRenderer([progress(1.0, done=True)])
        assert runner_for(session_factory, renderer, job.id).run(sleep=lambda s: None) is True

        assert reload(session_factory, job.id).status == "cancelled"
        assert renderer.submitted == []

    def test_cancel_wins_over_completion(self, session_factory, db, job):
        renderer = ScriptedRenderer([progress(1.0, done=True)])
        runner = runner_for(session_factory, renderer, job.id)
        runner.start()

        original_poll = renderer.poll_progress

        def poll_then_cancel(handle):
            result = original_poll(handle)
            session = session_factory()
            try:
                render_jobs.cancel_render(session, job.id)
                session.commit()
            finally:
                session.close()
            return result

        renderer.poll_progress = poll_then_cancel
        assert runner.tick() is True

        finished = reload(session_factory, job.id)
        assert finished.status == "cancelled"
        assert finished.output_s3_key is None
        assert [m.content_json["status"] for m in completed_messages(db, job.id)] == ["cancelled"]

    def test_cancel_observed_between_polls(self, session_factory, db, job):
        renderer = ScriptedRenderer([progress(0.3), progress(1.0, done=True)])
        runner = runner_for(session_factory, renderer, job.id)
        runner.start()
        runner.tick()

        render_jobs.cancel_render(db, job.id)
        db.commit()

        assert runner.tick() is True
        finished = reload(session_factory, job.id)
        assert finished.status == "cancelled"
        assert finished.progress == 30
        assert renderer.polls == 1

    def test_fatal_error_fails_job(self, session_factory, db, job):
        renderer = ScriptedRenderer([progress(0.2, errors=["Out of memory", "second"])])
        runner = runner_for(session_factory, renderer, job.id)

        assert runner.run(sleep=lambda s: None) is True
        failed = reload(session_factory, job.id)
        assert failed.status == "failed"
        assert failed.last_error == "Out of memory"
        assert [m.content_json["status"] for m in completed_messages(db, job.id)] == ["failed"]

    def test_renderer_outage_fails_job_after_retries(self, session_factory, db, job):
        class DownRenderer(ScriptedRenderer):
            def submit_render(self, storyboard, brand_kit, format):
                raise ExternalServiceError("renderer", "503")

        runner = runner_for(session_factory, DownRenderer([progress(0)]), job.id)
        assert runner.run(sleep=lambda s: None) is True

        failed = reload(session_factory, job.id)
        assert failed.status == "failed"
        assert "503" in failed.last_error

    def test_suspended_run_resumes_from_handle(self, session_factory, job):
        renderer = ScriptedRenderer([progress(0.5), progress(1.0, done=True)], render_id="r-7")
        first = runner_for(session_factory, renderer, job.id)
        assert first.run(sleep=lambda s: None, should_continue=lambda: False) is False
        assert reload(session_factory, job.id).renderer_handle["renderId"] == "r-7"

        second = runner_for(session_factory, renderer, job.id)
        assert second.run(sleep=lambda s: None) is True
        assert len(renderer.submitted) == 1
        assert reload(session_factory, job.id).output_s3_key == "renders/r-7.mp4"

    def test_terminal_job_is_never_reopened(self, session_factory, db, job):
        render_jobs.finalize(db, job.id, "failed", last_error="boom")
        assert render_jobs.finalize(db, job.id, "completed", progress=100) == "failed"
        assert reload(session_factory, job.id).status == "failed"
        assert len(completed_messages(db, job.id)) == 1


class TestRenderLeavesCheckpointsAlone:

    def test_completed_render_keeps_active_checkpoint(self, session_factory, db, project, generated):
        current = get_project(db, project.id)
        active_before, version_before = current.active_checkpoint_id, current.version
        checkpoints_before = db.query(Checkpoint).count()

        job = render_jobs.submit_render(db, project, generated.id, "1:1")
        db.commit()
        renderer = ScriptedRenderer([progress(0.5), progress(1.0, done=True)], render_id="r-7")
        assert runner_for(session_factory, renderer, job.id).run(sleep=lambda s: None) is True

        db.expire_all()
        after = get_project(db, project.id)
        assert reload(session_factory, job.id).status == "completed"
        assert (after.active_checkpoint_id, after.version) == (active_before, version_before)
        assert db.query(Checkpoint).count() == checkpoints_before

        types = [m.type for m in message_timeline.list_for_project(db, project.id)]
        since_request = types[types.index(MessageType.RENDER_REQUESTED):]
        assert MessageType.CHECKPOINT_CREATED not in since_request
        assert set(since_request) <= MessageType.RENDER_EVENTS


class TestCancel:

    def test_cancel_sets_latch(self, db, job):
        cancelled = render_jobs.cancel_render(db, job.id)
        assert cancelled.cancel_requested is True
        assert cancelled.status == "cancel_requested"

    def test_cancel_terminal_job_conflicts(self, db, job):
        render_jobs.finalize(db, job.id, "completed", progress=100, output_s3_key="renders/x.mp4")
        with pytest.raises(ConflictError) as exc_info:
            render_jobs.cancel_render(db, job.id)
        assert exc_info.value.current_status == "completed"


class TestReadSide:

    def test_progress_is_read_only(self, db, job):
        before = job.updated_at
        snapshot = render_jobs.get_progress(job)
        render_jobs.get_progress(job)

        assert snapshot == {
            "id": job.id,
            "status": "pending",
            "progress": 0,
            "outputRef": None,
            "lastError": None,
        }
        db.expire_all()
        assert render_jobs.get_render_job(db, job.id).updated_at == before

    def test_download_url_requires_completed(self, db, job, storage):
        with pytest.raises(ConflictError):
            render_jobs.get_download_url(job, storage)

    def test_download_url_for_completed_job(self, db, job, storage):
        render_jobs.finalize(db, job.id, "completed", progress=100, output_s3_key="renders/r-1.mp4")
        completed = render_jobs.get_render_job(db, job.id)

        result = render_jobs.get_download_url(completed, storage)
        assert result["expiresIn"] <= 3600
        assert "renders/r-1.mp4" in result["downloadUrl"]
        assert "Signature" in result["downloadUrl"]
