"""
FastAPI + Uvicorn ASGI application.

Runs the client as a web service: the AsyncIOScheduler drives the periodic
sync on Uvicorn's event loop, and the inbound operations are exposed as
JSON endpoints for the surrounding application.

  GET  /health           liveness (scheduler running, no startup error)
  GET  /ready            readiness
  GET  /info             metadata
  POST /sync             run a sync now, for every tenant or one
  POST /connection-test  authenticate a credential end to end
  POST /submissions      validate, deduplicate and submit one document
  PUT  /tenants/{id}/integration  store a tenant's Exchange token (encrypted)
  DELETE /tenants/{id}/cursors    rewind sync cursors so the next run re-reads history

Entry point for production: uvicorn ksef_client.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ksef_client import __version__
from ksef_client.adapters.schema import apply_schema
from ksef_client.config import AppSettings
from ksef_client.domain.models import (
    ConnectionTestResult,
    Counterparty,
    Credential,
    Environment,
    Invoice,
    InvoiceLine,
    IssuerProfile,
    SubjectType,
    SubmitResult,
    SyncRunResult,
)
from ksef_client.main import Services, configure_structlog, create_services
from ksef_client.scheduler import create_scheduler

# ─────────────────────── Global State ───────────────────────
# Set during app startup and read by the probes and endpoints.

_scheduler: AsyncIOScheduler | None = None
_services: Services | None = None
_scheduler_ready = False
_error_message: str | None = None
log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup: load settings, wire services, start the scheduler on this loop.
    Shutdown: stop the scheduler and close the Exchange clients.
    """
    global _scheduler, _services, _scheduler_ready, _error_message

    try:
        settings = AppSettings()
    except Exception as e:
        _error_message = f"Configuration error: {e}"
        log.error("asgi.startup_error", error=_error_message)
        raise

    configure_structlog(settings.log_level)
    log.info(
        "asgi.startup_config",
        version=__version__,
        environment=settings.exchange.environment.value,
        interval_minutes=settings.sync.interval_minutes,
        run_on_startup=settings.run_on_startup,
    )

    try:
        if settings.database.apply_schema:
            await apply_schema(settings.database.get_dsn())
            log.info("asgi.schema_applied")
        _services = create_services(settings)
        _scheduler = create_scheduler(
            sync_fn=_services.sync.run,
            interval_minutes=settings.sync.interval_minutes,
            run_on_startup=settings.run_on_startup,
            purge_fn=_services.detector.purge_expired,
        )
        _scheduler.start()
    except Exception as e:
        _error_message = f"Failed to initialize services/scheduler: {e}"
        log.error("asgi.init_error", error=_error_message)
        raise

    _scheduler_ready = True
    log.info("asgi.startup_complete")

    yield

    log.info("asgi.shutdown", reason="SIGTERM or server stop")
    try:
        _scheduler.shutdown(wait=False)
    except Exception as e:
        log.warning("asgi.scheduler_shutdown_error", error=str(e))
    await _services.registry.aclose()
    _scheduler_ready = False
    log.info("asgi.shutdown_complete")


# ─────────────────────── Request models ───────────────────────


class CredentialBody(BaseModel):
    issuer_tax_id: str
    token: str = Field(repr=False)
    environment: Environment = Environment.TEST

    def to_domain(self) -> Credential:
        return Credential(self.issuer_tax_id, self.token, self.environment)


class LineBody(BaseModel):
    name: str
    quantity: Decimal
    unit_price: Decimal
    vat_rate: str = "23"
    unit: str | None = None


class DocumentBody(BaseModel):
    number: str
    issue_date: date | None = None
    kind: str = "VAT"
    currency: str = "PLN"
    sale_date: date | None = None
    lines: list[LineBody] = Field(default_factory=list)
    total_net: Decimal | None = None
    total_gross: Decimal | None = None
    has_attachments: bool = False


class IssuerBody(BaseModel):
    tax_id: str
    name: str
    address_line: str | None = None
    city: str | None = None
    postal_code: str | None = None
    country_code: str = "PL"


class CounterpartyBody(BaseModel):
    name: str
    tax_id: str | None = None
    address_line: str | None = None
    city: str | None = None
    postal_code: str | None = None
    country_code: str = "PL"


class SubmissionBody(BaseModel):
    document: DocumentBody
    issuer: IssuerBody
    counterparty: CounterpartyBody
    credential: CredentialBody

    def to_domain(self) -> tuple[Invoice, IssuerProfile, Counterparty, Credential]:
        d = self.document
        document = Invoice(
            number=d.number,
            issue_date=d.issue_date,
            lines=tuple(InvoiceLine(**line.model_dump()) for line in d.lines),
            kind=d.kind,
            currency=d.currency,
            sale_date=d.sale_date,
            total_net=d.total_net,
            total_gross=d.total_gross,
            has_attachments=d.has_attachments,
        )
        return (
            document,
            IssuerProfile(**self.issuer.model_dump()),
            Counterparty(**self.counterparty.model_dump()),
            self.credential.to_domain(),
        )


class SyncBody(BaseModel):
    tenant_id: str | None = None


class IntegrationBody(CredentialBody):
    active: bool = True


# ─────────────────────── Response bodies ───────────────────────


def _run_body(run: SyncRunResult) -> dict[str, Any]:
    return {
        "tenant_id": run.tenant_id,
        "started_at": run.started_at.isoformat(),
        "finished_at": run.finished_at.isoformat(),
        "per_subject_counts": run.per_subject_counts,
        "total_documents": run.total_documents,
        "errors": run.errors,
    }


def _submit_body(result: SubmitResult) -> dict[str, Any]:
    return {
        "success": result.success,
        "reference_number": result.reference_number,
        "ksef_number": result.ksef_number,
        "session_reference": result.session_reference,
        "confirmation_url": result.confirmation_url,
        "errors": result.errors,
        "warnings": result.warnings,
        "error_code": result.error_code.value if result.error_code else None,
        "existing_reference": result.existing_reference,
        "verification_url": result.verification_url,
    }


def _connection_body(result: ConnectionTestResult) -> dict[str, Any]:
    return {"success": result.success, "environment": result.environment.value, "error": result.error}


def _unavailable() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"status": "unavailable", "reason": "Services not initialized"},
    )


# ─────────────────────── FastAPI Application ───────────────────────

app = FastAPI(
    title="ksef-sync",
    description="e-invoicing Exchange client: submission, connection test and scheduled sync",
    version=__version__,
    lifespan=lifespan,
)


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness probe: 200 while the scheduler runs and startup raised no error."""
    if _error_message:
        log.warning("health.check_failed", error=_error_message)
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": _error_message})

    if _scheduler is None or not _scheduler.running:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "scheduler not running"},
        )
    return JSONResponse(status_code=200, content={"status": "healthy", "scheduler_running": True})


@app.get("/ready")
async def ready() -> JSONResponse:
    """
    Readiness probe.

    Returns 202 while starting, 503 after a startup error, 200 once the
    services are wired and the scheduler is running.
    """
    if _error_message:
        return JSONResponse(status_code=503, content={"status": "error", "error": _error_message})
    if not _scheduler_ready or _services is None:
        return JSONResponse(status_code=202, content={"status": "starting"})
    return JSONResponse(
        status_code=200,
        content={"status": "ready", "scheduler_running": _scheduler is not None and _scheduler.running},
    )


@app.get("/info")
async def info() -> dict[str, Any]:
    next_run = None
    if _scheduler is not None:
        job = _scheduler.get_job("ksef_sync")
        if job is not None and job.next_run_time is not None:
            next_run = job.next_run_time.isoformat()
    return {
        "name": "ksef-sync",
        "version": __version__,
        "scheduler_running": _scheduler is not None and _scheduler.running,
        "scheduler_ready": _scheduler_ready,
        "next_sync": next_run,
        "has_error": _error_message is not None,
    }


@app.post("/sync")
async def sync(body: SyncBody | None = None) -> JSONResponse:
    """
    Run a sync immediately, for every active tenant or only `tenant_id`.

    Returns 200 when every tenant synced cleanly, 207 when some tenant or
    subject recorded errors, 503 before startup completes.
    """
    if _services is None:
        return _unavailable()

    tenant_id = body.tenant_id if body else None
    runs = await _services.sync.run_manual_sync(tenant_id)
    status = 200 if all(r.succeeded for r in runs) else 207
    return JSONResponse(status_code=status, content={"runs": [_run_body(r) for r in runs]})


@app.post("/connection-test")
async def connection_test(body: CredentialBody) -> JSONResponse:
    if _services is None:
        return _unavailable()

    result = await _services.submissions.test_connection(body.to_domain())
    return JSONResponse(status_code=200 if result.success else 502, content=_connection_body(result))


_STATUS_BY_CODE = {
    "VALIDATION_ERROR": 422,
    "DUPLICATE_ERROR": 409,
    "AUTHENTICATION_ERROR": 401,
    "RATE_LIMIT_ERROR": 429,
    "TIMEOUT_ERROR": 504,
    "DATABASE_ERROR": 503,
}


@app.post("/submissions")
async def submissions(body: SubmissionBody) -> JSONResponse:
    """
    Submit one document.

    Status mirrors the outcome: 201 accepted, 422 invalid, 409 duplicate,
    401 authentication, 429 rate limited, 504 polling timeout, 502 any other
    Exchange failure.
    """
    if _services is None:
        return _unavailable()

    document, issuer, counterparty, credential = body.to_domain()
    result = await _services.submissions.submit_document(document, issuer, counterparty, credential)
    if result.success:
        status = 201
    else:
        code = result.error_code.value if result.error_code else ""
        status = _STATUS_BY_CODE.get(code, 502)
    return JSONResponse(status_code=status, content=_submit_body(result))


@app.put("/tenants/{tenant_id}/integration")
async def register_integration(tenant_id: str, body: IntegrationBody) -> JSONResponse:
    if _services is None:
        return _unavailable()

    registered = await _services.tenants.register(tenant_id, body.to_domain(), body.active)
    if registered.is_failure():
        return JSONResponse(status_code=503, content={"error": registered.error().message})
    return JSONResponse(
        status_code=200,
        content={"tenant_id": tenant_id, "environment": body.environment.value, "active": body.active},
    )


@app.delete("/tenants/{tenant_id}/cursors")
async def reset_cursors(tenant_id: str, subject_type: SubjectType | None = None) -> JSONResponse:
    """Delete the tenant's cursors (one subject or all); the next sync starts from the lookback window."""
    if _services is None:
        return _unavailable()

    removed = await _services.cursors.reset(tenant_id, subject_type)
    if removed.is_failure():
        return JSONResponse(status_code=503, content={"error": removed.error().message})
    return JSONResponse(status_code=200, content={"tenant_id": tenant_id, "removed": removed.value()})


if __name__ == "__main__":
    # For local testing: python -m uvicorn ksef_client.asgi:app --reload
    import uvicorn

    uvicorn.run("ksef_client.asgi:app", host="0.0.0.0", port=8000, reload=False, log_level="info")
