"""
Integration tests for the operator HTTP API.

Tests cover:
- Health endpoint
- Reconciliation trigger: dry run, confirmation, secret, parameter errors
- Shared-experiences read path
- Access-set inspection
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from sharing.access_sync.api.http_server import create_app
from sharing.access_sync.config import HttpConfig
from sharing.access_sync.errors import TransientStoreError
from sharing.access_sync.reconcile.job import ReconciliationJob
from sharing.access_sync.store.base import Experience, Grant, GrantScope
from sharing.access_sync.store.memory import InMemoryStore

SECRET = "s3cret"


async def no_sleep(_seconds):
    return None


@pytest.fixture
def store():
    store = InMemoryStore()

    async def seed():
        await store.put_experience(
            Experience("e1", owner="u1", primary_category="catA", created_at=1)
        )
        await store.put_experience(
            Experience(
                "e2",
                owner="u1",
                secondary_categories=frozenset({"catA"}),
                access_set=frozenset({"u2"}),
                created_at=2,
            )
        )
        await store.put_experience(
            Experience("e3", owner="u1", access_set=frozenset({"u2", "u3"}), created_at=3)
        )
        await store.put_grant(Grant("g1", "u1", GrantScope.CATEGORY, "catA", "u2"))

    asyncio.run(seed())
    return store


def make_client(store, config=None, consumer_stats=None):
    job = ReconciliationJob(store, store, sleep=no_sleep)
    return TestClient(create_app(store, job, config=config, consumer_stats=consumer_stats))


@pytest.fixture
def client(store):
    return make_client(store)


@pytest.fixture
def secured_client(store):
    return make_client(store, config=HttpConfig(maintenance_secret=SECRET))


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        response = client.get("/v1/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "access-sync"}

    def test_health_reports_consumer(self, store):
        client = make_client(store, consumer_stats=lambda: {"processed_count": 7})

        assert client.get("/v1/health").json()["consumer"] == {"processed_count": 7}


class TestReconcileEndpoint:
    """Tests for POST /v1/maintenance/reconcile."""

    def test_dry_run_via_query(self, client, store):
        response = client.post("/v1/maintenance/reconcile", params={"dry_run": "true"})

        assert response.status_code == 200
        data = response.json()
        assert data["dry_run"] is True
        assert data["processed"] == 3
        # e1 lacks u2, e3 carries two stale grantees
        assert data["updated"] == 2
        assert data["done"] is True
        assert store.access_set("e1") == frozenset()

    def test_live_run_without_confirm_is_rejected(self, client, store):
        response = client.post("/v1/maintenance/reconcile")

        assert response.status_code == 400
        assert "confirmation" in response.json()["detail"]
        assert store.commit_sizes == []

    def test_live_run_with_confirm_in_body(self, client, store):
        response = client.post(
            "/v1/maintenance/reconcile", json={"confirm": "yes", "batch_size": 2}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["dry_run"] is False
        assert data["updated"] == 2
        assert data["next_cursor"] == "3:e3"
        assert store.access_set("e1") == {"u2"}
        assert store.access_set("e3") == frozenset()

    def test_confirm_other_than_yes_is_rejected(self, client):
        response = client.post("/v1/maintenance/reconcile", params={"confirm": "maybe"})
        assert response.status_code == 400

    def test_body_overrides_query(self, client):
        response = client.post(
            "/v1/maintenance/reconcile",
            params={"max_items": "1"},
            json={"dry_run": True, "max_items": 2},
        )

        assert response.status_code == 200
        assert response.json()["processed"] == 2

    def test_resume_cursor(self, client):
        response = client.post(
            "/v1/maintenance/reconcile", json={"dry_run": True, "cursor": "2:e2"}
        )

        assert response.status_code == 200
        assert response.json()["processed"] == 1

    def test_bad_cursor(self, client):
        response = client.post(
            "/v1/maintenance/reconcile", json={"dry_run": True, "cursor": "nope"}
        )
        assert response.status_code == 400

    def test_non_positive_batch_size(self, client):
        response = client.post(
            "/v1/maintenance/reconcile", json={"dry_run": True, "batch_size": 0}
        )
        assert response.status_code == 400

    def test_non_numeric_batch_size(self, client):
        response = client.post(
            "/v1/maintenance/reconcile", params={"dry_run": "true", "batch_size": "abc"}
        )
        assert response.status_code == 422

    def test_body_must_be_object(self, client):
        response = client.post(
            "/v1/maintenance/reconcile",
            content=b"[1, 2]",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_body_must_be_json(self, client):
        response = client.post(
            "/v1/maintenance/reconcile",
            content=b"dry_run",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_store_outage_returns_service_unavailable(self, client, store):
        store.fail_next(
            "page_experiences", TransientStoreError("store down", operation="page_experiences")
        )

        response = client.post("/v1/maintenance/reconcile", json={"dry_run": True})

        assert response.status_code == 503
        assert response.json() == {"detail": "store down"}


class TestMaintenanceSecret:
    """Tests for the maintenance secret check."""

    def test_missing_secret(self, secured_client):
        response = secured_client.post("/v1/maintenance/reconcile", json={"dry_run": True})
        assert response.status_code == 403

    def test_wrong_secret(self, secured_client):
        response = secured_client.post(
            "/v1/maintenance/reconcile",
            json={"dry_run": True},
            headers={"X-Admin-Secret": "wrong"},
        )
        assert response.status_code == 403

    def test_secret_header(self, secured_client):
        response = secured_client.post(
            "/v1/maintenance/reconcile",
            json={"dry_run": True},
            headers={"X-Admin-Secret": SECRET},
        )
        assert response.status_code == 200

    def test_secret_field(self, secured_client):
        response = secured_client.post(
            "/v1/maintenance/reconcile", json={"dry_run": True, "secret": SECRET}
        )
        assert response.status_code == 200

    def test_secret_checked_before_confirmation(self, secured_client):
        response = secured_client.post("/v1/maintenance/reconcile")
        assert response.status_code == 403

    def test_secret_checked_before_parameter_validation(self, secured_client):
        response = secured_client.post(
            "/v1/maintenance/reconcile", json={"dry_run": True, "batch_size": "abc"}
        )
        assert response.status_code == 403

    def test_non_string_secret_field_is_rejected(self, secured_client):
        response = secured_client.post(
            "/v1/maintenance/reconcile", json={"dry_run": True, "secret": 12345}
        )
        assert response.status_code == 403


class TestReadEndpoints:
    """Tests for the read path endpoints."""

    def test_shared_experiences_newest_first(self, client):
        response = client.get("/v1/users/u2/shared-experiences")

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == "u2"
        assert data["count"] == 2
        assert [item["experience_id"] for item in data["items"]] == ["e3", "e2"]
        assert data["items"][1]["secondary_categories"] == ["catA"]

    def test_shared_experiences_limit(self, client):
        response = client.get("/v1/users/u2/shared-experiences", params={"limit": 1})

        assert response.status_code == 200
        assert response.json()["count"] == 1

    @pytest.mark.parametrize("limit", [0, 501])
    def test_shared_experiences_limit_bounds(self, client, limit):
        response = client.get("/v1/users/u2/shared-experiences", params={"limit": limit})
        assert response.status_code == 422

    def test_shared_experiences_unknown_user(self, client):
        response = client.get("/v1/users/nobody/shared-experiences")

        assert response.status_code == 200
        assert response.json()["items"] == []

    def test_access_set(self, client):
        response = client.get("/v1/experiences/e3/access")

        assert response.status_code == 200
        assert response.json() == {
            "experience_id": "e3",
            "owner": "u1",
            "access_set": ["u2", "u3"],
        }

    def test_access_set_missing(self, client):
        response = client.get("/v1/experiences/ghost/access")
        assert response.status_code == 404

    def test_read_path_store_outage(self, client, store):
        store.fail_next(
            "experiences_shared_with",
            TransientStoreError("store down", operation="experiences_shared_with"),
        )

        response = client.get("/v1/users/u2/shared-experiences")

        assert response.status_code == 503
        assert response.json() == {"detail": "store down"}
