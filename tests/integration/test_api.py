"""
End-to-end tests of the HTTP API, in process.

Authentication and the external services are replaced through
app.dependency_overrides; storage is a real temp SQLite database.
"""

from __future__ import annotations

import itertools
import re

import pytest
from conftest import USER_ID, FakeLLM, FakeNylas, connect_user, make_email, match_json
from fastapi.testclient import TestClient

from inseam.api.app import app
from inseam.api.dependencies import get_connection_service, get_orchestrator, get_update_store
from inseam.api.middleware.user_auth import AuthenticatedUser, get_current_user
from inseam.email.fetcher import EmailFetcher
from inseam.email.oauth import EmailConnectionService
from inseam.infrastructure.rate_limit import RateLimiter
from inseam.pipeline.orchestrator import BatchOrchestrator
from inseam.updates.matcher import TrackerMatcher
from inseam.updates.service import UpdateStore

# Each test gets its own client IP so the per-IP limiter never carries over
_client_ips = (f"10.20.{i // 250}.{i % 250 + 1}" for i in itertools.count())

ORDERS_TRACKER = {
    "name": "Orders",
    "color": "#3366ff",
    "primary_key_column": "order_id",
    "columns": [
        {"id": "c1", "name": "Order", "key": "order_id", "order": 0, "ai_enabled": True},
        {
            "id": "c2",
            "name": "Status",
            "key": "status",
            "type": "enum",
            "options": ["ordered", "shipped", "delivered"],
            "order": 1,
            "ai_enabled": True,
        },
    ],
}


class Harness:
    """Wires fakes into the app for one test."""

    def __init__(self):
        self.nylas = FakeNylas()
        self.llm = FakeLLM(self._respond)
        self.tracker_id: str | None = None
        self.user = AuthenticatedUser(id=USER_ID, email="me@gmail.com")
        self.orchestrator = BatchOrchestrator(
            fetcher=EmailFetcher(nylas=self.nylas),
            matcher=TrackerMatcher(llm=self.llm, alias_resolver=lambda _t, _term: None),
            store=UpdateStore(),
        )
        self.connections = EmailConnectionService(
            nylas=self.nylas, rate_limiter=RateLimiter(), allowed_domains=["localhost:3000"]
        )

    def _respond(self, prompt: str) -> str:
        order_id = re.search(r"ORD-\d+", prompt).group(0)
        return match_json(self.tracker_id, order_id=order_id, status="shipped")

    def login_as(self, user_id: str) -> None:
        self.user = AuthenticatedUser(id=user_id, email=f"{user_id}@gmail.com")


@pytest.fixture
def harness(temp_db):
    h = Harness()
    app.dependency_overrides[get_current_user] = lambda: h.user
    app.dependency_overrides[get_orchestrator] = lambda: h.orchestrator
    app.dependency_overrides[get_update_store] = lambda: UpdateStore()
    app.dependency_overrides[get_connection_service] = lambda: h.connections
    yield h
    app.dependency_overrides.clear()


@pytest.fixture
def client(harness):
    return TestClient(app, headers={"X-Forwarded-For": next(_client_ips)})


def create_orders(client: TestClient) -> dict:
    response = client.post("/api/trackers", json=ORDERS_TRACKER)
    assert response.status_code == 201
    return response.json()


class TestMeta:
    def test_index(self, client):
        body = client.get("/").json()
        assert body["service"] == "Inseam API"
        assert body["endpoints"]["process_inbox"] == "/api/inbox/process"

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert set(body) >= {"llm", "email_connector", "version", "timestamp"}

    def test_database_health(self, client):
        body = client.get("/health/db").json()
        assert body["status"] in ("healthy", "degraded")
        assert body["pool"]["closed"] is False

    def test_metrics(self, client):
        body = client.get("/health/metrics").json()
        assert isinstance(body["counters"], dict)
        assert set(body["latency"]) == {"batch.duration", "matcher.complete.latency"}
        assert set(body["latency"]["batch.duration"]) == {"count", "min", "max", "avg", "p50", "p95"}

    def test_validation_errors_are_summarised(self, client):
        response = client.post("/api/inbox/process", json={"email_count": 0})

        assert response.status_code == 422
        assert response.json()["invalid_fields"] == ["email_count"]
        assert response.json()["error_count"] == 1

    def test_rate_limit_headers_present(self, client):
        response = client.get("/api/trackers")
        assert "X-RateLimit-Remaining-Minute" in response.headers


class TestTrackers:
    def test_create_list_and_get(self, client):
        tracker = create_orders(client)

        assert tracker["slug"] == "orders"
        assert tracker["columns"][1]["type"] == "select"
        assert [t["id"] for t in client.get("/api/trackers").json()] == [tracker["id"]]
        assert client.get(f"/api/trackers/{tracker['id']}").json()["name"] == "Orders"

    def test_invalid_tracker_is_400_with_field_errors(self, client):
        bad = dict(ORDERS_TRACKER, primary_key_column="missing")
        response = client.post("/api/trackers", json=bad)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["message"] == "Validation failed"
        assert "primary_key_column" in detail["errors"]

    def test_other_users_tracker_is_403(self, client, harness):
        tracker = create_orders(client)
        harness.login_as("user-2")

        assert client.get(f"/api/trackers/{tracker['id']}").status_code == 403
        assert client.get(f"/api/trackers/{tracker['id']}/rows").status_code == 403

    def test_missing_tracker_is_404(self, client):
        assert client.get("/api/trackers/nope").status_code == 404

    def test_alias_endpoints(self, client):
        tracker = create_orders(client)
        base = f"/api/trackers/{tracker['id']}/aliases"

        created = client.post(base, json={"row_id": "ORD-1", "alias": "Blue Dress"})
        assert created.status_code == 201
        alias = created.json()
        assert alias["alias"] == "blue dress"

        duplicate = client.post(base, json={"row_id": "ORD-2", "alias": "blue dress"})
        assert duplicate.status_code == 400
        assert "alias" in duplicate.json()["detail"]["errors"]

        assert [a["id"] for a in client.get(base).json()] == [alias["id"]]
        assert client.delete(f"{base}/{alias['id']}").status_code == 204
        assert client.delete(f"{base}/{alias['id']}").status_code == 404
        assert client.get(base).json() == []

    def test_bulk_alias_endpoint(self, client):
        tracker = create_orders(client)
        response = client.post(
            f"/api/trackers/{tracker['id']}/aliases/bulk",
            json={
                "aliases": [
                    {"row_id": "ORD-1", "alias": "Blue Dress"},
                    {"row_id": "ORD-2", "alias": "blue dress"},
                ]
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert [a["alias"] for a in body["added"]] == ["blue dress"]
        assert [f["alias"] for f in body["failed"]] == ["blue dress"]

    def test_row_endpoints(self, client, harness):
        tracker = create_orders(client)
        rows = f"/api/trackers/{tracker['id']}/rows"

        created = client.post(rows, json={"data": {"order_id": "ORD-1", "status": "ordered"}})
        assert created.status_code == 201
        assert created.json()["row_id"] == "ORD-1"

        assert client.post(rows, json={"data": {"order_id": "ORD-1"}}).status_code == 409
        assert client.post(rows, json={"data": {"status": "bogus"}}).status_code == 400

        patched = client.patch(f"{rows}/ORD-1", json={"data": {"status": "shipped"}})
        assert patched.json()["data"] == {"order_id": "ORD-1", "status": "shipped"}
        assert client.patch(f"{rows}/ORD-404", json={"data": {}}).json()["detail"] == "Row not found"

        harness.login_as("user-2")
        assert client.delete(f"{rows}/ORD-1").status_code == 403
        harness.login_as(USER_ID)

        assert client.delete(f"{rows}/ORD-1").status_code == 204
        assert client.get(rows).json() == []

    def test_update_toggle_ai_and_delete_tracker(self, client):
        tracker = create_orders(client)
        base = f"/api/trackers/{tracker['id']}"

        renamed = client.patch(base, json={"name": "Shop Orders"})
        assert renamed.status_code == 200
        assert renamed.json()["name"] == "Shop Orders"
        assert client.patch(base, json={"primary_key_column": "nope"}).status_code == 400

        toggled = client.patch(f"{base}/columns/c2/ai", json={"ai_enabled": False})
        assert [c["ai_enabled"] for c in toggled.json()["columns"]] == [True, False]

        assert client.delete(base).status_code == 204
        assert client.get(base).status_code == 404


class TestInboxAndReview:
    def test_not_connected(self, client):
        response = client.post("/api/inbox/process", json={"email_count": 5})

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["outcome"] == "not_connected"

    def test_process_then_approve(self, client, harness):
        tracker = create_orders(client)
        harness.tracker_id = tracker["id"]
        connect_user()
        harness.nylas.emails = [
            make_email("m1", subject="Order ORD-1 shipped", body="ORD-1 is on its way"),
        ]

        processed = client.post("/api/inbox/process", json={"email_count": 5}).json()
        assert processed["outcome"] == "processed"
        assert processed["statistics"]["successful_updates"] == 1

        batch = client.get(f"/api/inbox/batches/{processed['workflow_id']}").json()
        assert batch["status"] == "completed"
        assert batch["email_statuses"] == {"m1": "succeeded"}

        listing = client.get("/api/updates").json()
        assert listing["count"] == 1
        update = listing["updates"][0]
        assert update["tracker_proposals"][0]["row_id"] == "ORD-1"

        approved = client.post(f"/api/updates/{update['id']}/approve")
        assert approved.status_code == 200
        assert approved.json()["success"] is True

        rows = client.get(f"/api/trackers/{tracker['id']}/rows").json()
        assert rows[0]["data"] == {"order_id": "ORD-1", "status": "shipped"}

        again = client.post(f"/api/updates/{update['id']}/approve").json()
        assert again["already_processed"] is True

        stats = client.get("/api/updates/stats").json()
        assert stats["approved"] == 1 and stats["pending"] == 0

        second = client.post("/api/inbox/process", json={"email_count": 5}).json()
        assert second["outcome"] == "no_new_emails"

    def test_approve_with_edits_and_reject(self, client, harness):
        tracker = create_orders(client)
        harness.tracker_id = tracker["id"]
        connect_user()
        harness.nylas.emails = [
            make_email("m1", subject="Order ORD-1", body="ORD-1"),
            make_email("m2", subject="Order ORD-2", body="ORD-2", minutes_ago=1),
        ]
        client.post("/api/inbox/process", json={"email_count": 5})
        updates = {u["source_id"]: u for u in client.get("/api/updates").json()["updates"]}

        edit = {
            "edited_proposals": [
                {
                    "tracker_id": tracker["id"],
                    "row_id": "ORD-1",
                    "edited_columns": [{"column_key": "status", "new_value": "delivered"}],
                }
            ]
        }
        approved = client.post(f"/api/updates/{updates['m1']['id']}/approve", json=edit).json()
        assert approved["results"][0]["success"] is True

        rejected = client.post(f"/api/updates/{updates['m2']['id']}/reject").json()
        assert rejected["success"] is True

        rows = {r["row_id"]: r["data"] for r in client.get(f"/api/trackers/{tracker['id']}/rows").json()}
        assert rows == {"ORD-1": {"order_id": "ORD-1", "status": "delivered"}}

    def test_update_ownership(self, client, harness):
        tracker = create_orders(client)
        harness.tracker_id = tracker["id"]
        connect_user()
        harness.nylas.emails = [make_email("m1", subject="Order ORD-1", body="ORD-1")]
        client.post("/api/inbox/process", json={"email_count": 5})
        update_id = client.get("/api/updates").json()["updates"][0]["id"]

        harness.login_as("user-2")
        assert client.post(f"/api/updates/{update_id}/approve").status_code == 403
        assert client.get(f"/api/updates/{update_id}").status_code == 403
        assert client.get("/api/updates").json()["count"] == 0
        assert client.post("/api/updates/missing/reject").status_code == 404

    def test_viewed_and_archive(self, client, harness):
        harness.tracker_id = create_orders(client)["id"]
        connect_user()
        harness.nylas.emails = [make_email("m1", subject="Order ORD-1", body="ORD-1")]
        client.post("/api/inbox/process", json={"email_count": 5})
        update_id = client.get("/api/updates").json()["updates"][0]["id"]

        assert client.post(f"/api/updates/{update_id}/view").json() == {"success": True, "changed": True}
        assert client.post("/api/updates/viewed").json() == {"count": 0}
        assert client.post(f"/api/updates/{update_id}/archive").json() == {"success": True}
        assert client.get("/api/updates").json()["count"] == 0
        assert client.get("/api/updates", params={"include_archived": True}).json()["count"] == 1

    def test_unknown_batch_is_404(self, client):
        assert client.get("/api/inbox/batches/nope").status_code == 404
        assert client.post("/api/inbox/batches/nope/cancel").status_code == 404


class TestEmailConnection:
    def test_connect_callback_status_disconnect(self, client, harness):
        response = client.post(
            "/api/email/connect", json={"redirect_uri": "http://localhost:3000/cb", "provider": "google"}
        )
        assert response.status_code == 200
        state = re.search(r"state=([^&]+)", response.json()["auth_url"]).group(1)

        callback = client.post("/api/email/callback", json={"code": "c", "state": state})
        assert callback.json()["email"] == "me@gmail.com"

        assert client.get("/api/email/status").json() == {
            "connected": True,
            "email": "me@gmail.com",
            "provider": "google",
        }

        assert client.delete("/api/email/connection").json()["success"] is True
        assert client.get("/api/email/status").json()["connected"] is False
        assert harness.nylas.revoked == ["grant-new"]

    def test_bad_redirect_is_400(self, client):
        response = client.post("/api/email/connect", json={"redirect_uri": "https://evil.example.com/cb"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid redirect URI"

    def test_bad_state_is_400(self, client):
        response = client.post("/api/email/callback", json={"code": "c", "state": "forged"})
        assert response.status_code == 400
