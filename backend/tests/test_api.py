"""
API tests through the FastAPI TestClient.

Collaborators (generator, storage, render queue, rate limiter) are replaced
with in-process fakes by the ``client`` fixture.
"""

import json

from services.rate_limiter import InMemoryWindowStore, SlidingWindowRateLimiter


def create_generated_project(client, headers, key=None):
    body = {"url": "https://www.example.com/p/1", "format": "9:16", "tone": "bold"}
    if key:
        body["idempotencyKey"] = key
    response = client.post("/api/generate", json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def sse_events(response):
    return [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_correlation_id_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "abc-123"})
        assert response.headers["X-Correlation-ID"] == "abc-123"


class TestErrors:

    def test_missing_session_is_401(self, client):
        response = client.get("/api/projects")
        body = response.json()

        assert response.status_code == 401
        assert body["code"] == "UNAUTHORIZED"
        assert body["correlationId"]
        assert set(body) == {"error", "code", "details", "correlationId"}

    def test_invalid_session_is_401(self, client):
        response = client.get("/api/projects", headers={"Authorization": "Bearer user-1.forged"})
        assert response.status_code == 401

    def test_other_users_project_is_403(self, client, auth_headers, other_user_headers):
        project_id = create_generated_project(client, auth_headers)["project"]["id"]

        response = client.get(f"/api/projects/{project_id}", headers=other_user_headers)
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_unknown_project_is_404(self, client, auth_headers):
        response = client.get("/api/projects/missing", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["details"] == {"resource": "Project", "id": "missing"}

    def test_request_validation_is_400(self, client, auth_headers):
        response = client.post(
            "/api/generate",
            json={"url": "ftp://example.com", "format": "4:3"},
            headers=auth_headers,
        )
        body = response.json()

        assert response.status_code == 400
        assert body["code"] == "VALIDATION_FAILED"
        assert any("url" in path for path in body["details"]["fields"])
        assert any("format" in path for path in body["details"]["fields"])

    def test_rate_limit_is_429_with_retry_after(self, client, auth_headers):
        from main import app
        from routers.dependencies import get_limiter

        tight = SlidingWindowRateLimiter(InMemoryWindowStore(), {"generate": 1}, window_seconds=60)
        app.dependency_overrides[get_limiter] = lambda: tight

        create_generated_project(client, auth_headers)
        response = client.post(
            "/api/generate",
            json={"url": "https://example.com", "format": "9:16"},
            headers=auth_headers,
        )

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.json()["details"]["operation"] == "generate"


class TestProjects:

    def test_generate_creates_project_with_active_checkpoint(self, client, auth_headers):
        body = create_generated_project(client, auth_headers)

        assert body["project"]["title"] == "example.com"
        assert body["project"]["activeCheckpointId"] == body["checkpoint"]["id"]
        assert body["activeCheckpoint"]["storyboardJson"]["totalDuration"] == 15.0
        assert body["replayed"] is False

    def test_generate_replay_returns_same_checkpoint(self, client, auth_headers):
        first = create_generated_project(client, auth_headers, key="gen-1")
        second = create_generated_project(client, auth_headers, key="gen-1")

        assert second["checkpoint"]["id"] == first["checkpoint"]["id"]
        assert second["replayed"] is True
        projects = client.get("/api/projects", headers=auth_headers).json()["projects"]
        assert len(projects) == 1

    def test_timeline_lists_messages_in_order(self, client, auth_headers):
        project_id = create_generated_project(client, auth_headers)["project"]["id"]

        response = client.get(f"/api/projects/{project_id}/messages", headers=auth_headers)
        types = [m["type"] for m in response.json()["messages"]]
        assert types[0] == "url_submitted"
        assert types[-1] == "generation_result"

    def test_edit_and_restore(self, client, auth_headers):
        body = create_generated_project(client, auth_headers)
        project_id = body["project"]["id"]
        checkpoint = body["checkpoint"]
        scene = checkpoint["storyboardJson"]["scenes"][0]

        edited = client.post(
            f"/api/projects/{project_id}/update-scene",
            json={
                "checkpointId": checkpoint["id"],
                "sceneId": scene["id"],
                "duration": 3.0,
                "onScreenText": "Shorter",
                "voiceoverText": "Short",
            },
            headers=auth_headers,
        ).json()["checkpoint"]
        assert edited["parentCheckpointId"] == checkpoint["id"]
        assert edited["storyboardJson"]["totalDuration"] == 13.0

        restored = client.post(
            f"/api/projects/{project_id}/checkpoints/{checkpoint['id']}/restore",
            headers=auth_headers,
        ).json()
        assert restored["checkpoint"]["id"] == checkpoint["id"]
        assert restored["previousCheckpointId"] == edited["id"]

        listing = client.get(f"/api/projects/{project_id}/checkpoints", headers=auth_headers).json()
        assert listing["activeCheckpointId"] == checkpoint["id"]
        assert len(listing["checkpoints"]) == 2

    def test_patch_scene_edits_active_checkpoint(self, client, auth_headers):
        body = create_generated_project(client, auth_headers)
        project_id = body["project"]["id"]
        scene = body["checkpoint"]["storyboardJson"]["scenes"][2]

        response = client.patch(
            f"/api/projects/{project_id}/scenes/{scene['id']}",
            json={"onScreenText": "Buy now"},
            headers=auth_headers,
        )
        edited = response.json()

        assert response.status_code == 200, response.text
        assert edited["scene"]["onScreenText"] == "Buy now"
        assert edited["scene"]["duration"] == scene["duration"]
        assert edited["checkpoint"]["parentCheckpointId"] == body["checkpoint"]["id"]
        project = client.get(f"/api/projects/{project_id}", headers=auth_headers).json()["project"]
        assert project["activeCheckpointId"] == edited["checkpoint"]["id"]

    def test_patch_scene_rejects_non_positive_duration(self, client, auth_headers):
        body = create_generated_project(client, auth_headers)
        scene_id = body["checkpoint"]["storyboardJson"]["scenes"][0]["id"]

        response = client.patch(
            f"/api/projects/{body['project']['id']}/scenes/{scene_id}",
            json={"duration": 0},
            headers=auth_headers,
        )
        assert response.status_code == 400
        assert any("duration" in path for path in response.json()["details"]["fields"])

    def test_generate_stream_emits_progress_then_result(self, client, auth_headers):
        project_id = client.post("/api/projects", json={"title": "Bottle"}, headers=auth_headers).json()["project"]["id"]

        response = client.post(
            f"/api/projects/{project_id}/generate/stream",
            json={"url": "https://example.com/p/9", "format": "16:9", "idempotencyKey": "sse-1"},
            headers={**auth_headers, "X-Correlation-ID": "corr-sse"},
        )
        events = sse_events(response)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["X-Correlation-ID"] == "corr-sse"
        assert [event["type"] for event in events] == [
            "generation_progress",
            "generation_progress",
            "generation_complete",
        ]
        project = client.get(f"/api/projects/{project_id}", headers=auth_headers).json()
        assert project["project"]["activeCheckpointId"] == events[-1]["checkpointId"]

    def test_generate_stream_checks_ownership_first(self, client, auth_headers, other_user_headers):
        project_id = create_generated_project(client, auth_headers)["project"]["id"]

        response = client.post(
            f"/api/projects/{project_id}/generate/stream",
            json={"url": "https://example.com", "format": "9:16"},
            headers=other_user_headers,
        )
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_regenerate_scene_replay(self, client, auth_headers):
        body = create_generated_project(client, auth_headers)
        project_id = body["project"]["id"]
        checkpoint = body["checkpoint"]
        payload = {
            "checkpointId": checkpoint["id"],
            "sceneId": checkpoint["storyboardJson"]["scenes"][1]["id"],
            "instruction": "funnier",
            "idempotencyKey": "regen-1",
        }

        first = client.post(f"/api/projects/{project_id}/regenerate-scene", json=payload, headers=auth_headers)
        second = client.post(f"/api/projects/{project_id}/regenerate-scene", json=payload, headers=auth_headers)

        assert first.status_code == 200, first.text
        assert second.json()["checkpoint"]["id"] == first.json()["checkpoint"]["id"]
        assert second.json()["replayed"] is True


class TestRendering:

    def submit(self, client, headers, project_id, checkpoint_id, key="render-1"):
        return client.post(
            f"/api/projects/{project_id}/render",
            json={"checkpointId": checkpoint_id, "format": "9:16", "idempotencyKey": key},
            headers=headers,
        )

    def test_duplicate_render_requests_share_one_job(self, client, auth_headers, queue):
        body = create_generated_project(client, auth_headers)
        project_id = body["project"]["id"]

        first = self.submit(client, auth_headers, project_id, body["checkpoint"]["id"])
        second = self.submit(client, auth_headers, project_id, body["checkpoint"]["id"])

        assert first.status_code == 202
        assert first.json()["renderJob"]["id"] == second.json()["renderJob"]["id"]
        assert second.json()["replayed"] is True
        assert len(queue.items) == 1

        jobs = client.get(f"/api/projects/{project_id}/render-jobs", headers=auth_headers).json()
        assert len(jobs["renderJobs"]) == 1

    def test_render_job_carries_correlation_id(self, client, auth_headers, queue):
        body = create_generated_project(client, auth_headers)
        response = client.post(
            f"/api/projects/{body['project']['id']}/render",
            json={"checkpointId": body["checkpoint"]["id"], "format": "1:1"},
            headers={**auth_headers, "X-Correlation-ID": "corr-render"},
        )

        assert response.json()["renderJob"]["correlationId"] == "corr-render"
        assert queue.items[0]["correlation_id"] == "corr-render"

    def test_progress_cancel_and_download(self, client, auth_headers, other_user_headers):
        body = create_generated_project(client, auth_headers)
        job_id = self.submit(client, auth_headers, body["project"]["id"], body["checkpoint"]["id"]).json()["renderJob"]["id"]

        progress = client.get(f"/api/render-jobs/{job_id}/progress", headers=auth_headers)
        assert progress.json() == {
            "id": job_id,
            "status": "pending",
            "progress": 0,
            "outputRef": None,
            "lastError": None,
        }

        forbidden = client.get(f"/api/render-jobs/{job_id}/progress", headers=other_user_headers)
        assert forbidden.status_code == 403

        not_ready = client.get(f"/api/render-jobs/{job_id}/download-url", headers=auth_headers)
        assert not_ready.status_code == 409

        cancelled = client.post(f"/api/render-jobs/{job_id}/cancel", headers=auth_headers)
        assert cancelled.json()["renderJob"]["status"] == "cancel_requested"

    def test_cancel_terminal_job_conflicts(self, client, auth_headers, session_factory):
        from services.render_jobs import finalize

        body = create_generated_project(client, auth_headers)
        job_id = self.submit(client, auth_headers, body["project"]["id"], body["checkpoint"]["id"]).json()["renderJob"]["id"]

        session = session_factory()
        try:
            finalize(session, job_id, "completed", progress=100, output_s3_key="renders/r-1.mp4")
        finally:
            session.close()

        response = client.post(f"/api/render-jobs/{job_id}/cancel", headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["details"] == {"status": "completed"}

        download = client.get(f"/api/render-jobs/{job_id}/download-url", headers=auth_headers).json()
        assert "renders/r-1.mp4" in download["downloadUrl"]
        assert download["expiresIn"] <= 3600

    def test_enqueue_failure_is_502(self, client, auth_headers, queue):
        queue.accept = False
        body = create_generated_project(client, auth_headers)

        response = self.submit(client, auth_headers, body["project"]["id"], body["checkpoint"]["id"])
        assert response.status_code == 502
        assert response.json()["details"] == {"service": "render_queue"}
