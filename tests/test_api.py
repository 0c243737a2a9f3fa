"""Tests for the Coinmeter admin API using FastAPI TestClient.

Covers: cache stats/clear/invalidate, billing config + status + manual run,
ledger reads and credits, manual suspend/resume, audit events, auth, health.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from api import create_app
from config import RuntimeSettings
from resources import ManagedResource, ResourceStatus, SuspendReason
from services import build_services


def _ok(status_code=204, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = b"" if body is None else b"{...}"
    resp.json.return_value = body
    return resp


@pytest.fixture
def session():
    s = MagicMock()
    s.request.return_value = _ok()
    return s


@pytest.fixture
def services(db_path, tmp_path, session):
    settings = RuntimeSettings(
        env="test",
        db_path=db_path,
        log_file=str(tmp_path / "coinmeter.log"),
        provisioning_url="https://panel.test",
        provisioning_api_key="k",
        max_retries=1,
    )
    svc = build_services(settings, session=session)
    yield svc
    svc.shutdown()


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def _seed(services, balance="10", status=ResourceStatus.ACTIVE, **kw):
    services.resources.create_owner("o1", name="Owner", balance=balance)
    services.resources.create_resource(ManagedResource(
        resource_id="r1", owner_id="o1", name="mc-server", ram_mb=2048,
        status=status, external_id="ext-1", **kw,
    ))


# ── Cache ─────────────────────────────────────────────────────────────


class TestCacheEndpoints:
    def test_stats_shape(self, client):
        r = client.get("/cache/stats")
        assert r.status_code == 200
        data = r.json()
        assert data["ok"] is True
        assert data["cache"] == {"hits": 0, "misses": 0, "errors": 0, "hit_rate": "0%"}
        assert data["queue"] == {"size": 0, "pending": 0, "is_paused": False}
        assert data["circuits"] == {}
        assert "timestamp" in data

    def test_clear_resets_stats(self, client, services):
        services.cache.get_or_fetch("resources:1", 60, lambda: [1])
        r = client.post("/cache/clear")
        assert r.status_code == 200
        assert r.json()["cleared"] == 1
        assert services.cache.get_stats()["misses"] == 0

    def test_invalidate_pattern(self, client, services):
        services.cache.set("status:1", "x", 60)
        services.cache.set("status:2", "y", 60)
        r = client.post("/cache/invalidate", json={"pattern": "status:*"})
        assert r.status_code == 200
        assert r.json()["invalidated"] == 2

    @pytest.mark.parametrize("body", [{}, {"pattern": ""}, {"pattern": "   "}])
    def test_invalidate_requires_pattern(self, client, body):
        r = client.post("/cache/invalidate", json=body)
        assert r.status_code == 400
        assert r.json()["ok"] is False
        assert r.json()["error"]["code"] == "http_error"


# ── Billing ───────────────────────────────────────────────────────────


class TestBillingEndpoints:
    def test_default_config(self, client):
        r = client.get("/billing/config")
        assert r.status_code == 200
        assert r.json()["config"]["enabled"] is False
        assert r.json()["config"]["interval_minutes"] == 1

    def test_update_config_restarts_scheduler(self, client, services):
        r = client.put("/billing/config", json={
            "enabled": True, "interval_minutes": 5, "rate_per_gb_hour": "60",
        })
        assert r.status_code == 200
        body = r.json()
        assert body["config"]["interval_minutes"] == 5
        assert body["config"]["rate_per_gb_hour"] == "60"
        assert body["scheduler"]["running"] is True
        assert services.scheduler.interval_minutes == 5

        r = client.put("/billing/config", json={"enabled": False})
        assert r.json()["scheduler"]["running"] is False

    def test_invalid_config_rejected(self, client):
        r = client.put("/billing/config", json={"interval_minutes": 0})
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "validation_error"

    def test_run_cycle_charges(self, client, services):
        _seed(services)
        client.put("/billing/config", json={"enabled": True, "rate_per_gb_hour": "60"})
        r = client.post("/billing/run")
        assert r.status_code == 200
        assert r.json()["last_report"]["charged"] == 1
        assert services.ledger.get_balance("o1") == Decimal("8.00")

        status = client.get("/billing/status").json()
        assert status["last_report"]["total_charged"] == "2.00"
        assert status["scheduler"]["running"] is True

    def test_status_before_any_cycle(self, client):
        r = client.get("/billing/status")
        assert r.json()["last_report"] is None


# ── Ledger ────────────────────────────────────────────────────────────


class TestLedgerEndpoints:
    def test_credit_and_read(self, client, services):
        _seed(services, balance="0")
        r = client.post("/ledger/o1/credit", json={"amount": "25.50", "actor": "admin:ann"})
        assert r.status_code == 200
        assert r.json()["entry"]["balance_after"] == "25.50"

        r = client.get("/ledger/o1")
        data = r.json()
        assert data["balance"] == "25.50"
        assert len(data["entries"]) == 1
        assert data["entries"][0]["entry_type"] == "credit"

        assert services.events.drain(timeout=2)
        events = client.get("/events/o1").json()["events"]
        assert events[0]["event_type"] == "billing.credited"
        assert events[0]["actor"] == "admin:ann"

    def test_unknown_owner(self, client):
        assert client.get("/ledger/ghost").status_code == 404
        r = client.post("/ledger/ghost/credit", json={"amount": "1"})
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "not_found"

    def test_non_positive_credit(self, client, services):
        _seed(services)
        assert client.post("/ledger/o1/credit", json={"amount": "0"}).status_code == 422

    def test_sub_unit_credit(self, client, services):
        _seed(services)
        r = client.post("/ledger/o1/credit", json={"amount": "0.001"})
        assert r.status_code == 400


# ── Resources ─────────────────────────────────────────────────────────


class TestResourceEndpoints:
    def test_manual_suspend_and_resume(self, client, services, session):
        _seed(services)
        r = client.post("/resources/r1/suspend", json={"actor": "admin:ann"})
        assert r.status_code == 200
        res = r.json()["resource"]
        assert res["status"] == "suspended"
        assert res["suspend_reason"] == "MANUAL"
        assert res["suspended_by"] == "admin:ann"
        assert session.request.call_args.args[1].endswith("/servers/ext-1/suspend")

        r = client.post("/resources/r1/unsuspend")
        assert r.json()["resource"]["status"] == "active"
        assert session.request.call_args.args[1].endswith("/servers/ext-1/unsuspend")

        assert services.events.drain(timeout=2)
        types = [e["event_type"] for e in client.get("/events/r1").json()["events"]]
        assert types == ["resource.suspended", "resource.resumed"]

    def test_suspend_survives_backend_failure(self, client, services, session):
        _seed(services)
        session.request.return_value = _ok(500)
        r = client.post("/resources/r1/suspend")
        assert r.status_code == 200
        assert r.json()["resource"]["status"] == "suspended"

    def test_unknown_resource(self, client):
        r = client.post("/resources/nope/suspend")
        assert r.status_code == 404

    def test_manual_suspension_survives_billing(self, client, services):
        _seed(services, balance="100", status=ResourceStatus.SUSPENDED,
              suspend_reason=SuspendReason.MANUAL)
        client.put("/billing/config", json={
            "enabled": True, "rate_per_gb_hour": "60", "auto_resume": True,
        })
        client.post("/billing/run")
        assert services.resources.get_resource("r1").status == "suspended"


# ── Auth & health ─────────────────────────────────────────────────────


class TestAuth:
    @pytest.fixture
    def prod_services(self, db_path, tmp_path, session):
        settings = RuntimeSettings(env="production", db_path=db_path, api_token="s3cret",
                                   log_file=str(tmp_path / "coinmeter.log"))
        svc = build_services(settings, session=session)
        yield svc
        svc.shutdown()

    def test_token_required(self, prod_services):
        c = TestClient(create_app(prod_services))
        r = c.get("/cache/stats")
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "unauthorized"

    def test_bearer_token_accepted(self, prod_services):
        c = TestClient(create_app(prod_services))
        r = c.get("/cache/stats", headers={"Authorization": "Bearer s3cret"})
        assert r.status_code == 200

    def test_healthz_is_public(self, prod_services):
        c = TestClient(create_app(prod_services))
        r = c.get("/healthz")
        assert r.status_code == 200
        assert r.json()["storage"]["ok"] is True

    def test_missing_token_config(self, db_path, session):
        svc = build_services(RuntimeSettings(env="production", db_path=db_path), session=session)
        r = TestClient(create_app(svc)).get("/healthz")
        assert r.status_code == 500
        assert r.json()["error"]["code"] == "auth_config_error"


class TestLifespan:
    def test_scheduler_follows_app_lifecycle(self, services):
        services.billing_settings.update_billing_config(enabled=True, rate_per_gb_hour="1")
        with TestClient(create_app(services)):
            assert services.scheduler.is_running is True
        assert services.scheduler.is_running is False
