"""
Tests for the append-only message timeline.
"""

from datetime import datetime, timezone

import pytest

from errors import SchemaValidationError
from models import Message, new_id
from services import message_timeline


def progress_content(text="working", value=10):
    return message_timeline.build_content("generation_progress", message=text, progress=value)


class TestAppend:

    def test_append_assigns_increasing_seq(self, db, project):
        first = message_timeline.append(db, project.id, "assistant", "generation_progress", progress_content())
        second = message_timeline.append(db, project.id, "assistant", "generation_progress", progress_content())
        db.commit()

        assert second.seq == first.seq + 1

    def test_invalid_role_rejected(self, db, project):
        with pytest.raises(SchemaValidationError) as exc_info:
            message_timeline.append(db, project.id, "robot", "generation_progress", progress_content())
        assert "role" in exc_info.value.field_errors

    def test_invalid_content_is_not_persisted(self, db, project):
        with pytest.raises(SchemaValidationError):
            message_timeline.append(
                db, project.id, "assistant", "generation_progress",
                {"type": "generation_progress", "artifactRefs": [], "message": "x", "progress": 1},
            )
        db.rollback()
        assert message_timeline.list_for_project(db, project.id) == []

    def test_reference_to_missing_artifact_rejected(self, db, project):
        job_id = new_id()
        content = message_timeline.build_content(
            "render_requested",
            [message_timeline.artifact_ref("render_job", job_id)],
            renderJobId=job_id,
            format="9:16",
        )
        with pytest.raises(SchemaValidationError) as exc_info:
            message_timeline.append(db, project.id, "user", "render_requested", content)
        assert "artifactRefs" in exc_info.value.field_errors

    def test_render_event_without_render_job_rejected(self, db, project):
        content = message_timeline.build_content("render_progress", renderJobId=new_id(), progress=0, status="rendering")
        with pytest.raises(SchemaValidationError) as exc_info:
            message_timeline.append(db, project.id, "system", "render_progress", content)
        assert "artifactRefs" in exc_info.value.field_errors

    def test_reference_to_other_projects_checkpoint_rejected(self, db, generated):
        from services.project_service import create_project

        other = create_project(db, "user-1", "other")
        content = message_timeline.build_content(
            "checkpoint_created",
            [message_timeline.artifact_ref("checkpoint", generated.id)],
            checkpointId=generated.id,
            reason="generation",
        )
        with pytest.raises(SchemaValidationError):
            message_timeline.append(db, other.id, "system", "checkpoint_created", content)


class TestListForProject:

    def test_messages_are_complete_and_ordered(self, db, generated):
        messages = message_timeline.list_for_project(db, generated.project_id)

        assert [m.type for m in messages] == [
            "url_submitted",
            "generation_progress",
            "generation_progress",
            "checkpoint_created",
            "generation_result",
        ]
        assert [m.role for m in messages] == ["user", "assistant", "assistant", "system", "assistant"]

    def test_every_message_carries_version(self, db, generated):
        for message in message_timeline.list_for_project(db, generated.project_id):
            assert message.content_json["version"] == "1"

    def test_same_timestamp_orders_by_insertion(self, db, project):
        first = message_timeline.append(db, project.id, "assistant", "generation_progress", progress_content("a"))
        second = message_timeline.append(db, project.id, "assistant", "generation_progress", progress_content("b"))
        third = message_timeline.append(db, project.id, "assistant", "generation_progress", progress_content("c"))
        tied = datetime(2024, 1, 1, tzinfo=timezone.utc)
        db.query(Message).filter(Message.project_id == project.id).update({Message.created_at: tied})
        db.commit()

        ordered = message_timeline.list_for_project(db, project.id)
        assert [m.id for m in ordered] == [first.id, second.id, third.id]

    def test_other_projects_messages_excluded(self, db, generated):
        from services.project_service import create_project

        other = create_project(db, "user-2", "other")
        message_timeline.append(db, other.id, "assistant", "generation_progress", progress_content())
        db.commit()

        ids = {m.project_id for m in message_timeline.list_for_project(db, generated.project_id)}
        assert ids == {generated.project_id}


class TestResolveArtifactRefs:

    def test_generation_result_resolves_to_checkpoint(self, db, generated):
        result = [
            m for m in message_timeline.list_for_project(db, generated.project_id)
            if m.type == "generation_result"
        ][0]

        resolved = message_timeline.resolve_artifact_refs(db, result)
        assert resolved == [{"type": "checkpoint", "id": generated.id, "exists": True}]
