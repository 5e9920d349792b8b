"""Tests for the HTTP surface."""

from unittest.mock import patch

from automation_engine.core.exceptions import QueueError

from conftest import CRON_SECRET, WORKSPACE

API = "/api/v1/automations"


def _stage_body(to_stage="S1", entity_id="lead-1", **extra):
    body = {
        "workspaceId": WORKSPACE,
        "eventType": "entity.stage_changed",
        "entityId": entity_id,
        "payload": {"toStageId": to_stage},
    }
    body.update(extra)
    return body


class TestRunnerTick:
    """Test the runner tick endpoint."""

    def test_missing_bearer_is_rejected(self, client):
        response = client.post(f"{API}/runner/tick")

        assert response.status_code == 401
        assert response.json()["ok"] is False
        assert response.json()["error"] == "unauthorized"

    def test_wrong_bearer_is_rejected(self, client):
        response = client.post(f"{API}/runner/tick", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_cron_secret_does_not_open_runner(self, client):
        response = client.post(f"{API}/runner/tick", headers={"Authorization": f"Bearer {CRON_SECRET}"})
        assert response.status_code == 401

    def test_empty_queue_tick(self, client, runner_headers):
        response = client.post(f"{API}/runner/tick", headers=runner_headers)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "processed": 0, "released": 0, "dropped": 0}
        assert response.headers["cache-control"] == "no-store"

    def test_tick_counts(self, client, runner_headers, graph_store, event_queue, make_workflow, make_event):
        graph_store.save_graph(make_workflow(trigger_filter={"field": "toStageId", "equals": "S1"}))
        event_queue.enqueue(make_event("S1"))
        event_queue.enqueue(make_event("S2"))

        response = client.post(f"{API}/runner/tick", headers=runner_headers)

        assert response.json() == {"ok": True, "processed": 2, "released": 0, "dropped": 0}

    def test_lock_failure_returns_error_body(self, client, runner_headers):
        with patch("automation_engine.core.event_queue.EventQueue.lock_batch",
                   side_effect=QueueError("database is locked")):
            response = client.post(f"{API}/runner/tick", headers=runner_headers)

        assert response.status_code == 500
        assert response.json()["ok"] is False
        assert "database is locked" in response.json()["message"]


class TestRunnerCron:
    """Test the scheduler wrapper."""

    def test_unauthorized_call(self, client):
        response = client.get(f"{API}/runner/cron")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized_cron"

    def test_scheduler_header_is_trusted(self, client):
        response = client.get(f"{API}/runner/cron", headers={"x-vercel-cron": "1"})

        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "runner": {"ok": True, "processed": 0, "released": 0, "dropped": 0},
        }

    def test_scheduler_user_agent_is_trusted(self, client):
        response = client.get(f"{API}/runner/cron", headers={"user-agent": "vercel-cron/1.0"})
        assert response.status_code == 200

    def test_cron_secret_header(self, client):
        response = client.post(f"{API}/runner/cron", headers={"x-cron-secret": CRON_SECRET})
        assert response.status_code == 200

    def test_cron_secret_bearer(self, client):
        response = client.get(f"{API}/runner/cron", headers={"Authorization": f"Bearer {CRON_SECRET}"})
        assert response.status_code == 200

    def test_cron_secret_query_parameter(self, client):
        response = client.get(f"{API}/runner/cron", params={"secret": CRON_SECRET})
        assert response.status_code == 200

    def test_wrong_cron_secret(self, client):
        response = client.get(f"{API}/runner/cron", params={"secret": "guess"})
        assert response.status_code == 401

    def test_scheduler_header_ignored_when_not_trusted(self, client, test_config):
        test_config.trust_scheduler_header = False

        response = client.get(f"{API}/runner/cron", headers={"x-vercel-cron": "1"})

        assert response.status_code == 401

    def test_forwards_runner_counts(self, client, graph_store, event_queue, make_workflow, make_event):
        graph_store.save_graph(make_workflow())
        event_queue.enqueue(make_event())

        response = client.get(f"{API}/runner/cron", headers={"x-cron-secret": CRON_SECRET})

        assert response.json()["runner"]["processed"] == 1

    def test_runner_failure_is_wrapped(self, client):
        with patch("automation_engine.core.event_queue.EventQueue.lock_batch",
                   side_effect=QueueError("database is locked")):
            response = client.get(f"{API}/runner/cron", headers={"x-cron-secret": CRON_SECRET})

        assert response.status_code == 500
        body = response.json()
        assert body["ok"] is False
        assert body["error"] == "runner_failed"
        assert body["status"] == 500
        assert body["response"]["ok"] is False


class TestEvaluateTriggers:
    """Test synchronous trigger evaluation."""

    def test_requires_runner_secret(self, client):
        response = client.post(f"{API}/triggers/evaluate", json=_stage_body())
        assert response.status_code == 401

    def test_matching_event_creates_run(self, client, runner_headers, graph_store, materializer, make_workflow):
        workflow_id = graph_store.save_graph(make_workflow(trigger_filter={"field": "toStageId", "equals": "S1"}))

        response = client.post(f"{API}/triggers/evaluate", json=_stage_body("S1"), headers=runner_headers)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "triggered": 1}
        assert len(materializer.list_runs(workflow_id)) == 1

    def test_non_matching_event(self, client, runner_headers, graph_store, make_workflow):
        graph_store.save_graph(make_workflow(trigger_filter={"field": "toStageId", "equals": "S1"}))

        response = client.post(f"{API}/triggers/evaluate", json=_stage_body("S2"), headers=runner_headers)

        assert response.json() == {"ok": True, "triggered": 0}

    def test_top_level_stage_fields(self, client, runner_headers, graph_store, make_workflow):
        graph_store.save_graph(make_workflow(trigger_filter={"field": "toStageId", "equals": "S1"}))
        body = {"workspaceId": WORKSPACE, "entityId": "lead-1", "fromStageId": "S0", "toStageId": "S1"}

        response = client.post(f"{API}/triggers/evaluate", json=body, headers=runner_headers)

        assert response.json()["triggered"] == 1

    def test_event_key_makes_evaluation_idempotent(self, client, runner_headers, graph_store, make_workflow):
        graph_store.save_graph(make_workflow())
        body = _stage_body(eventKey="evt-1")

        first = client.post(f"{API}/triggers/evaluate", json=body, headers=runner_headers)
        second = client.post(f"{API}/triggers/evaluate", json=body, headers=runner_headers)

        assert first.json()["triggered"] == 1
        assert second.json()["triggered"] == 0

    def test_missing_stage_is_rejected(self, client, runner_headers):
        body = {"workspaceId": WORKSPACE, "entityId": "lead-1", "payload": {}}

        response = client.post(f"{API}/triggers/evaluate", json=body, headers=runner_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "missing_fields"

    def test_missing_entity_is_rejected(self, client, runner_headers):
        body = {"workspaceId": WORKSPACE, "toStageId": "S1"}

        response = client.post(f"{API}/triggers/evaluate", json=body, headers=runner_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "missing_fields"

    def test_unknown_event_type_is_rejected(self, client, runner_headers):
        body = _stage_body(eventType="entity.archived")

        response = client.post(f"{API}/triggers/evaluate", json=body, headers=runner_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "unknown_event_type"

    def test_malformed_body_is_rejected(self, client, runner_headers):
        response = client.post(f"{API}/triggers/evaluate", json={"payload": "oops"}, headers=runner_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_body"


class TestEnqueueEvent:
    """Test the event producer endpoint."""

    def test_enqueue(self, client, runner_headers, event_queue):
        headers = {**runner_headers, "X-Workspace-Id": WORKSPACE}

        response = client.post(f"{API}/events", json=_stage_body(idempotencyKey="evt-9"), headers=headers)

        assert response.status_code == 201
        item = event_queue.get(response.json()["id"])
        assert item.idempotency_key == "evt-9"
        assert item.event.payload["toStageId"] == "S1"
        assert item.processed_at is None

    def test_workspace_mismatch(self, client, runner_headers, event_queue):
        headers = {**runner_headers, "X-Workspace-Id": "ws-other"}

        response = client.post(f"{API}/events", json=_stage_body(), headers=headers)

        assert response.status_code == 400
        assert response.json()["error"] == "workspace_mismatch"
        assert event_queue.pending_count() == 0

    def test_missing_workspace_header(self, client, runner_headers):
        response = client.post(f"{API}/events", json=_stage_body(), headers=runner_headers)
        assert response.status_code == 400

    def test_malformed_payload_is_not_enqueued(self, client, runner_headers, event_queue):
        headers = {**runner_headers, "X-Workspace-Id": WORKSPACE}
        body = _stage_body()
        body["payload"] = {"fromStageId": "S0"}

        response = client.post(f"{API}/events", json=body, headers=headers)

        assert response.status_code == 400
        assert event_queue.pending_count() == 0

    def test_enqueued_event_is_processed_by_tick(self, client, runner_headers, graph_store, materializer,
                                                 make_workflow):
        workflow_id = graph_store.save_graph(make_workflow())
        headers = {**runner_headers, "X-Workspace-Id": WORKSPACE}

        client.post(f"{API}/events", json=_stage_body(), headers=headers)
        tick = client.post(f"{API}/runner/tick", headers=runner_headers)

        assert tick.json()["processed"] == 1
        assert len(materializer.list_runs(workflow_id)) == 1


class TestExecutionTicks:
    """Test the step and outbox tick endpoints."""

    def test_step_and_outbox_ticks(self, client, runner_headers, graph_store, event_queue, outbox,
                                   make_workflow, make_event):
        graph_store.save_graph(make_workflow(actions=[{"action": "action.send_email", "to": "rep@example.com"}]))
        event_queue.enqueue(make_event())
        client.post(f"{API}/runner/tick", headers=runner_headers)

        steps = client.post(f"{API}/steps/tick", headers=runner_headers)
        sent = client.post(f"{API}/outbox/tick", headers=runner_headers)

        assert steps.json() == {"ok": True, "processed": 1, "failed": 0}
        assert sent.json() == {"ok": True, "processed": 1, "failed": 0}
        assert outbox.list_messages()[0].provider_message_id == "stub"

    def test_ticks_require_runner_secret(self, client):
        assert client.post(f"{API}/steps/tick").status_code == 401
        assert client.post(f"{API}/outbox/tick").status_code == 401


class TestDiagnostics:
    """Test stats and health endpoints."""

    def test_queue_stats(self, client, runner_headers, event_queue, make_event):
        event_queue.enqueue(make_event())

        response = client.get(f"{API}/queue/stats", headers=runner_headers)

        assert response.status_code == 200
        assert response.json() == {"pending": 1, "in_flight": 0, "processed": 0}

    def test_queue_stats_requires_runner_secret(self, client):
        assert client.get(f"{API}/queue/stats").status_code == 401

    def test_health(self, client):
        assert client.get(f"{API}/health").json() == {"ok": True, "status": "healthy"}
        assert client.get("/health").json()["status"] == "healthy"

    def test_readiness(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json() == {"status": "ready"}
