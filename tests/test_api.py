"""
API tests for the SLA routes.

Routes run against the in-memory services from conftest; no database is
needed.
"""

from httpx import AsyncClient

from tests.conftest import make_timer


async def open_timer(client: AsyncClient, service_order_id: str = "SO-100", **fields) -> dict:
    response = await client.post(
        "/sla/timers",
        json={"service_order_id": service_order_id, "service_type": "gst_registration", **fields},
    )
    assert response.status_code == 201
    return response.json()


class TestTimerRoutes:
    """Timer lifecycle over HTTP."""

    async def test_open_timer(self, client):
        body = await open_timer(client, priority="high", assigned_to="asha")

        assert body["baseline_hours"] == 48
        assert body["current_status"] == "running"
        assert body["priority"] == "high"
        assert body["escalation_level"] == 0

    async def test_unknown_field_rejected(self, client):
        response = await client.post(
            "/sla/timers",
            json={"service_order_id": "SO-100", "service_type": "gst_registration", "sla_hours": 5},
        )

        assert response.status_code == 422

    async def test_timer_status(self, client, clock):
        timer = await open_timer(client)
        clock.set(26)

        response = await client.get(f"/sla/timers/{timer['id']}")

        assert response.status_code == 200
        body = response.json()
        assert body["sla_status"] == "at_risk"
        assert body["sla_hours_remaining"] == 22
        assert body["policy_is_default"] is False

    async def test_unknown_timer_is_404(self, client):
        response = await client.get("/sla/timers/missing")

        assert response.status_code == 404
        assert response.json()["error_type"] == "ResourceNotFoundException"

    async def test_pause_resume_stop(self, client, clock):
        timer = await open_timer(client)

        paused = await client.post(f"/sla/timers/{timer['id']}/pause", json={"reason": "waiting_client"})
        clock.advance(hours=2)
        resumed = await client.post(f"/sla/timers/{timer['id']}/resume")
        stopped = await client.post(f"/sla/timers/{timer['id']}/stop")

        assert paused.json()["current_status"] == "paused"
        assert resumed.json()["total_paused_minutes"] == 120
        assert stopped.json()["current_status"] == "stopped"

    async def test_resume_running_timer_is_409(self, client):
        timer = await open_timer(client)

        response = await client.post(f"/sla/timers/{timer['id']}/resume")

        assert response.status_code == 409
        assert response.json()["context"]["operation"] == "resume"

    async def test_extend_and_assign(self, client):
        timer = await open_timer(client)

        extended = await client.post(
            f"/sla/timers/{timer['id']}/extend", json={"hours": 12, "reason": "portal outage"}
        )
        assigned = await client.patch(f"/sla/timers/{timer['id']}/assign", json={"assigned_to": "ravi"})

        assert extended.json()["baseline_hours"] == 60
        assert assigned.json()["assigned_to"] == "ravi"

    async def test_extend_requires_positive_hours(self, client):
        timer = await open_timer(client)

        response = await client.post(f"/sla/timers/{timer['id']}/extend", json={"hours": 0, "reason": "x"})

        assert response.status_code == 422


class TestOrderRoutes:
    """Order lifecycle hook over HTTP."""

    async def test_status_hook_pauses_and_stops(self, client):
        await open_timer(client)

        paused = await client.post("/sla/orders/SO-100/status", json={"status": "waiting_client"})
        stopped = await client.post("/sla/orders/SO-100/status", json={"status": "completed"})

        assert paused.json()["current_status"] == "paused"
        assert stopped.json()["current_status"] == "stopped"

    async def test_reopen(self, client):
        timer = await open_timer(client)
        await client.post(f"/sla/timers/{timer['id']}/stop")

        response = await client.post("/sla/orders/SO-100/reopen")

        assert response.status_code == 201
        assert response.json()["id"] != timer["id"]


class TestWorkQueueRoutes:
    """Work-queue views over HTTP."""

    async def test_stats(self, client, timer_repo):
        timer_repo.put(make_timer(20, assigned_to="asha"))
        timer_repo.put(make_timer(49))

        response = await client.get("/sla/work-queue/stats")

        body = response.json()
        assert body["total"] == 2
        assert body["on_track"] == 1
        assert body["breached"] == 1
        assert body["by_assignee"] == {"asha": 1}
        assert body["unassigned"] == 1
        assert [i["id"] for i in body["items_by_status"]["breached"]] == ["timer-49"]
        assert body["items_by_status"]["warning"] == []
        assert [i["id"] for i in body["items_by_priority"]["medium"]] == ["timer-49", "timer-20"]
        assert [i["id"] for i in body["items_by_assignee"]["asha"]] == ["timer-20"]

    async def test_work_queue_filter(self, client, timer_repo):
        timer_repo.put(make_timer(20))
        timer_repo.put(make_timer(49))

        response = await client.get("/sla/work-queue", params={"sla_status": "breached"})

        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["id"] == "timer-49"

    async def test_invalid_filter_rejected(self, client):
        response = await client.get("/sla/work-queue", params={"sla_status": "late"})

        assert response.status_code == 422


class TestEscalationRoutes:
    """Escalation check, history and acknowledgement over HTTP."""

    async def test_check_commits_then_notifies(self, client, session, timer_repo, dispatcher):
        timer_repo.put(make_timer(25))

        first = await client.post("/sla/escalations/check")
        second = await client.post("/sla/escalations/check")

        assert [e["level"] for e in first.json()["events"]] == [1]
        assert second.json()["events"] == []
        assert [e.level for e in dispatcher.events] == [1]
        assert session.commits == 2

    async def test_acknowledge(self, client, timer_repo):
        timer_repo.put(make_timer(25))
        event = (await client.post("/sla/escalations/check")).json()["events"][0]

        response = await client.post(
            f"/sla/escalations/{event['id']}/acknowledge", json={"acknowledged_by": "ravi"}
        )
        history = await client.get("/sla/escalations", params={"acknowledged": True})

        assert response.json()["acknowledged"] is True
        assert [e["id"] for e in history.json()] == [event["id"]]

    async def test_acknowledge_unknown_is_404(self, client):
        response = await client.post("/sla/escalations/event-404/acknowledge")

        assert response.status_code == 404


class TestPolicyRoutes:
    """Policy administration over HTTP."""

    async def test_default_policy_for_unknown_type(self, client):
        response = await client.get("/sla/policies/trademark_renewal")

        body = response.json()
        assert body["is_default"] is True
        assert body["baseline_hours"] == 72
        assert [rule["after_hours"] for rule in body["effective_ladder"]] == [36, 54, 64.8, 72]

    async def test_put_inconsistent_policy_is_422(self, client):
        response = await client.put(
            "/sla/policies/gst_registration",
            json={"baseline_hours": 10, "warning_threshold_hours": 24, "critical_threshold_hours": 4},
        )

        assert response.status_code == 422
        assert response.json()["error_type"] == "ValidationException"

    async def test_put_policy_takes_effect(self, client):
        saved = await client.put(
            "/sla/policies/gst_registration",
            json={"baseline_hours": 36, "warning_threshold_hours": 12, "critical_threshold_hours": 2},
        )
        timer = await open_timer(client)

        assert saved.status_code == 200
        assert timer["baseline_hours"] == 36

    async def test_list_policies(self, client):
        response = await client.get("/sla/policies")

        assert [p["service_type"] for p in response.json()] == ["gst_registration"]


class TestEngineAndHealth:
    """Engine status and health endpoints."""

    async def test_engine_status(self, client):
        response = await client.get("/sla/engine/status")

        assert response.json() == {
            "running": False,
            "interval_seconds": 0,
            "next_run_at": None,
            "cached_policies": 0,
        }

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["sla_scheduler"] == "stopped"
