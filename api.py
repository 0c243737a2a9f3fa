# Coinmeter Admin API
# FastAPI. Cache and queue visibility, billing config, ledger, manual
# suspend/resume, audit events. Thin: every route delegates to a service.

import hmac
import json
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from billing import ConfigurationError
from config import RuntimeSettings
from db import storage_healthcheck
from events import credit_applied
from ledger import LedgerWriteError
from resources import ResourceNotFound, SuspendReason
from scheduler import log, setup_logging
from services import Services, build_services

PUBLIC_PATHS = {"/docs", "/openapi.json", "/healthz"}


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": {"code": code, "message": message}},
    )


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token auth outside dev/test. Every request except public routes
    must carry COINMETER_API_TOKEN.
    """

    def __init__(self, app, settings: RuntimeSettings):
        super().__init__(app)
        self.settings = settings

    async def dispatch(self, request: Request, call_next):
        if not self.settings.auth_required:
            return await call_next(request)

        api_token = self.settings.api_token
        if not api_token:
            return _error(500, "auth_config_error",
                          "COINMETER_API_TOKEN must be set in non-dev environments")

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            token = auth[7:]
        else:
            token = request.query_params.get("token", "")

        if not token or not hmac.compare_digest(token, api_token):
            return _error(401, "unauthorized", "Unauthorized")

        return await call_next(request)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs for observability."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - started) * 1000, 2)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


# ── Request models ────────────────────────────────────────────────────


class InvalidateIn(BaseModel):
    pattern: str | None = None


class BillingConfigIn(BaseModel):
    enabled: bool | None = None
    interval_minutes: int | None = Field(default=None, gt=0)
    rate_per_gb_hour: Decimal | None = Field(default=None, ge=0)
    rate_per_gb_minute: Decimal | None = Field(default=None, ge=0)
    auto_suspend: bool | None = None
    auto_resume: bool | None = None
    require_online: bool | None = None


class CreditIn(BaseModel):
    amount: Decimal = Field(gt=0)
    description: str = Field(default="Coin top-up", max_length=256)
    actor: str = Field(default="admin", max_length=128)


class SuspendIn(BaseModel):
    actor: str = Field(default="admin", max_length=128)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(services: Services) -> FastAPI:
    """Build the admin API around an already-wired service graph."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        services.scheduler.start()
        log.info("API STARTED (env=%s)", services.settings.env)
        yield
        services.shutdown()
        log.info("API STOPPED")

    app = FastAPI(title="Coinmeter", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(TokenAuthMiddleware, settings=services.settings)
    app.add_middleware(RequestLogMiddleware)

    # ── Error envelope ───────────────────────────────────────────────

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_: Request, exc: HTTPException):
        return _error(exc.status_code, "http_error", str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "ok": False,
                "error": {
                    "code": "validation_error",
                    "message": "Request validation failed",
                    "details": json.loads(json.dumps(exc.errors(), default=str)),
                },
            },
        )

    @app.exception_handler(ResourceNotFound)
    async def not_found_handler(_: Request, exc: ResourceNotFound):
        return _error(404, "not_found", f"Not found: {exc.args[0] if exc.args else ''}")

    @app.exception_handler(ConfigurationError)
    async def config_error_handler(_: Request, exc: ConfigurationError):
        return _error(400, "invalid_config", str(exc))

    @app.exception_handler(LedgerWriteError)
    async def ledger_error_handler(_: Request, exc: LedgerWriteError):
        return _error(409, "ledger_error", str(exc))

    # ── Cache ────────────────────────────────────────────────────────

    @app.get("/cache/stats")
    def api_cache_stats():
        """Cache counters, queue depth and circuit breaker states."""
        return {
            "ok": True,
            "cache": services.cache.get_stats(),
            "queue": services.queue.get_stats(),
            "circuits": services.queue.get_circuit_states(),
            "timestamp": _now_iso(),
        }

    @app.post("/cache/clear")
    def api_cache_clear():
        cleared = services.cache.clear_all()
        services.cache.reset_stats()
        return {"ok": True, "cleared": cleared, "message": "Cache cleared and stats reset"}

    @app.post("/cache/invalidate")
    def api_cache_invalidate(body: InvalidateIn):
        pattern = (body.pattern or "").strip()
        if not pattern:
            raise HTTPException(status_code=400, detail="Pattern is required")
        removed = services.cache.invalidate(pattern)
        return {"ok": True, "pattern": pattern, "invalidated": removed}

    # ── Billing ──────────────────────────────────────────────────────

    @app.get("/billing/config")
    def api_get_billing_config():
        config = services.billing_settings.get_billing_config()
        return {
            "ok": True,
            "config": config.to_dict(),
            "effective_rate_per_gb_minute": str(config.effective_rate_per_gb_minute),
        }

    @app.put("/billing/config")
    def api_set_billing_config(body: BillingConfigIn):
        """Save settings and restart the scheduler with them."""
        updates = {k: v for k, v in body.model_dump().items() if v is not None}
        config = services.billing_settings.update_billing_config(**updates)
        services.scheduler.restart()
        return {"ok": True, "config": config.to_dict(), "scheduler": services.scheduler.status()}

    @app.get("/billing/status")
    def api_billing_status():
        report = services.engine.last_report
        return {
            "ok": True,
            "scheduler": services.scheduler.status(),
            "last_report": report.to_dict() if report else None,
        }

    @app.post("/billing/run")
    def api_billing_run():
        """Run one cycle now, under the same guard as the timer."""
        started = services.scheduler.run_now()
        if not started:
            raise HTTPException(status_code=409, detail="A billing cycle is already running")
        report = services.engine.last_report
        return {"ok": True, "last_report": report.to_dict() if report else None}

    # ── Ledger ───────────────────────────────────────────────────────

    @app.get("/ledger/{owner_id}")
    def api_get_ledger(owner_id: str, limit: int = 50):
        balance = services.ledger.get_balance(owner_id)
        if balance is None:
            raise ResourceNotFound(owner_id)
        entries = services.ledger.list_entries(owner_id, limit=max(1, min(limit, 500)))
        return {
            "ok": True,
            "owner_id": owner_id,
            "balance": str(balance),
            "entries": [e.to_dict() for e in entries],
        }

    @app.post("/ledger/{owner_id}/credit")
    def api_credit_owner(owner_id: str, body: CreditIn):
        if services.ledger.get_balance(owner_id) is None:
            raise ResourceNotFound(owner_id)
        try:
            entry = services.ledger.credit(owner_id, body.amount, description=body.description,
                                           metadata={"actor": body.actor})
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        services.events.emit(credit_applied(owner_id, entry.amount, entry.balance_after,
                                            entry.entry_id, actor=body.actor))
        return {"ok": True, "entry": entry.to_dict()}

    # ── Resources ────────────────────────────────────────────────────

    @app.post("/resources/{resource_id}/suspend")
    def api_suspend_resource(resource_id: str, body: SuspendIn | None = None):
        actor = body.actor if body else "admin"
        try:
            resource = services.engine.suspend_resource(resource_id, actor, SuspendReason.MANUAL)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"ok": True, "resource": resource.to_dict()}

    @app.post("/resources/{resource_id}/unsuspend")
    def api_unsuspend_resource(resource_id: str, body: SuspendIn | None = None):
        actor = body.actor if body else "admin"
        resource = services.engine.resume_resource(resource_id, actor)
        return {"ok": True, "resource": resource.to_dict()}

    # ── Audit ────────────────────────────────────────────────────────

    @app.get("/events/{entity_id}")
    def api_get_events(entity_id: str, limit: int = 100):
        events = services.event_store.get_events(entity_id=entity_id,
                                                 limit=max(1, min(limit, 1000)))
        return {"ok": True, "entity_id": entity_id, "events": [e.to_dict() for e in events]}

    @app.get("/healthz")
    def healthz():
        storage = storage_healthcheck(services.settings.db_path)
        return {"ok": storage["ok"], "status": "healthy" if storage["ok"] else "degraded",
                "env": services.settings.env, "storage": storage}

    return app


if __name__ == "__main__":
    import uvicorn

    settings = RuntimeSettings.from_env()
    setup_logging(settings.log_file, settings.log_level)
    log.info("API STARTING on port 8000")
    uvicorn.run(create_app(build_services(settings)), host="0.0.0.0", port=8000)
