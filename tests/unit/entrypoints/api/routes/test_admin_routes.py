"""Tests for admin routes."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from gatekeeper.adapters.audit import AuditLogEntry, AuditRepository
from gatekeeper.core.domain_types import ReconciliationResult
from gatekeeper.entrypoints.api.deps import Settings, get_container, get_settings
from gatekeeper.entrypoints.api.routes.admin import router
from gatekeeper.services.billing_enforcement import SweepResult
from gatekeeper.services.flags import FeatureFlagCache

from tests.fixtures.mocks import FakeFlagSource

TOKEN = "s3cret"  # pragma: allowlist secret


@pytest.fixture
def flag_store() -> FakeFlagSource:
    """Flag storage behind the cache."""
    return FakeFlagSource({"maintenance_mode": True})


@pytest.fixture
def container(flag_store: FakeFlagSource) -> MagicMock:
    """Container with mocked services and a real flag cache."""
    container = MagicMock()
    container.flags = FeatureFlagCache(flag_store)
    container.reconciliation.run = AsyncMock(
        return_value=ReconciliationResult(
            run_id=uuid4(), issues_found=3, issues_fixed=0, auto_fix_enabled=False
        )
    )
    container.enforcer.sweep = AsyncMock(return_value=SweepResult(moved_to_debtor=1, expelled=2))
    container.audit = MagicMock(spec=AuditRepository)
    container.audit.list_for_entity = AsyncMock(return_value=[])
    return container


@pytest.fixture
def config() -> Settings:
    """Settings with an admin token configured."""
    config = Settings()
    config.admin_api_token = TOKEN
    return config


@pytest.fixture
def app(container: MagicMock, config: Settings) -> FastAPI:
    """Create test app with admin routes."""
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_container] = lambda: container
    app.dependency_overrides[get_settings] = lambda: config
    return app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Create test client."""
    return TestClient(app, headers={"X-Admin-Token": TOKEN})


class TestAdminAuth:
    """Tests for the admin token check."""

    def test_rejects_wrong_token(self, app: FastAPI) -> None:
        """A wrong token is a 401."""
        client = TestClient(app, headers={"X-Admin-Token": "nope"})

        assert client.post("/admin/reconciliation/run").status_code == 401

    def test_rejects_missing_token(self, app: FastAPI) -> None:
        """No token is a 401."""
        assert TestClient(app).get("/admin/feature-flags").status_code == 401

    def test_open_without_configured_token(self, app: FastAPI, config: Settings) -> None:
        """Without ADMIN_API_TOKEN the routes are open."""
        config.admin_api_token = None

        assert TestClient(app).get("/admin/feature-flags").status_code == 200


class TestManualTriggers:
    """Tests for manual reconciliation and sweep."""

    def test_run_reconciliation(self, client: TestClient, container: MagicMock) -> None:
        """The manual run returns the result."""
        response = client.post("/admin/reconciliation/run")

        assert response.status_code == 200
        assert response.json()["issues_found"] == 3
        container.reconciliation.run.assert_awaited_once_with(triggered_by="manual")

    def test_billing_sweep(self, client: TestClient, container: MagicMock) -> None:
        """The manual sweep ignores maintenance mode."""
        response = client.post("/admin/billing/sweep")

        assert response.json() == {
            "moved_to_debtor": 1,
            "expelled": 2,
            "failed": 0,
            "skipped": False,
        }
        container.enforcer.sweep.assert_awaited_once_with(triggered_by="manual")


class TestFeatureFlags:
    """Tests for the feature flag endpoints."""

    def test_list_flags(self, client: TestClient) -> None:
        """Every known flag is listed with its value."""
        response = client.get("/admin/feature-flags")

        assert {f["key"]: f["enabled"] for f in response.json()} == {
            "auto_fix_reconciliation": False,
            "maintenance_mode": True,
        }

    def test_toggle_flag(self, client: TestClient, flag_store: FakeFlagSource) -> None:
        """A toggle is stored and visible on the next read."""
        response = client.put(
            "/admin/feature-flags/auto_fix_reconciliation", json={"enabled": True}
        )

        assert response.status_code == 200
        assert flag_store.flags["auto_fix_reconciliation"] is True
        listed = {f["key"]: f["enabled"] for f in client.get("/admin/feature-flags").json()}
        assert listed["auto_fix_reconciliation"] is True

    def test_unknown_flag(self, client: TestClient) -> None:
        """Only known flags can be set."""
        response = client.put("/admin/feature-flags/make_everyone_lord", json={"enabled": True})

        assert response.status_code == 422


class TestAuditLogs:
    """Tests for the audit trail endpoint."""

    def test_lists_entries(self, client: TestClient, container: MagicMock) -> None:
        """Entries for an entity are returned newest first."""
        container.audit.list_for_entity.return_value = [
            AuditLogEntry(
                id=uuid4(),
                action="MEMBER_EXPELLED",
                entity_type="Member",
                entity_id="m1",
                performed_by="system",
                created_at=datetime.now(UTC),
            )
        ]

        response = client.get("/admin/audit-logs/Member/m1?limit=5")

        assert response.status_code == 200
        assert response.json()[0]["action"] == "MEMBER_EXPELLED"
        container.audit.list_for_entity.assert_awaited_once_with("Member", "m1", 5)

    def test_unavailable_without_repository(self, client: TestClient, container: MagicMock) -> None:
        """No audit repository configured means 503."""
        container.audit = None

        assert client.get("/admin/audit-logs/Member/m1").status_code == 503
