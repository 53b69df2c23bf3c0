from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from fieldflow.core.config import settings
from fieldflow.core.observability import (
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fieldflow.db.session import SessionLocal, engine, init_db
from fieldflow.routers import appointments, automation, cron, projects, quotes
from fieldflow.services.automation_actions import build_action_services
from fieldflow.services.automation_bus import AutomationEventBus
from fieldflow.services.automation_worker import AutomationWorker, SchedulerSweeper, realtime_dead_letter_alert


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    bus = AutomationEventBus(SessionLocal)
    services = build_action_services()
    app.state.automation_bus = bus
    app.state.automation_services = services

    threads: list[AutomationWorker | SchedulerSweeper] = []
    if settings.automation_workers_enabled:
        alert = realtime_dead_letter_alert(services.realtime)
        for index in range(settings.automation_worker_count):
            threads.append(AutomationWorker(SessionLocal, services, worker_id=f"w{index + 1}", alert=alert))
        threads.append(SchedulerSweeper(SessionLocal, bus))
        for thread in threads:
            thread.start()
    try:
        yield
    finally:
        for thread in threads:
            thread.stop()
        for thread in threads:
            thread.join(timeout=10)


app = FastAPI(
    title=settings.app_name,
    version="0.3.0",
    description=(
        "Automation engine API for FieldFlow.\n\n"
        "Swagger quick test flow:\n"
        "1. Click **Authorize** and paste a bearer token issued for your location.\n"
        "2. Install a template with `POST /automations/templates/install` or create a rule with "
        "`POST /automations/rules`.\n"
        "3. Trigger it through `POST /automations/events`, `POST /quotes/{id}/sign` or "
        "`PATCH /appointments/{id}` and inspect `/automations/runs`."
    ),
    swagger_ui_parameters={
        "persistAuthorization": True,
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "automation", "description": "Rules engine runtime, templates, queue and workflow run logs."},
        {"name": "quotes", "description": "Quote signature and view tracking."},
        {"name": "appointments", "description": "Appointment reschedule and status changes."},
        {"name": "projects", "description": "Project pipeline stage moves."},
        {"name": "cron", "description": "Scheduler, queue drain and cleanup hooks for external cron."},
    ],
    lifespan=lifespan,
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

LOCAL_ORIGIN_REGEX = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"


def _cors_options() -> dict:
    origins = settings.cors_origins or ["http://localhost:3000"]
    wildcard = "*" in origins
    origin_regex = settings.cors_origin_regex
    if not origin_regex and settings.env.lower().strip() in {"dev", "development", "staging", "stage"}:
        origin_regex = LOCAL_ORIGIN_REGEX
    return {
        "allow_origins": ["*"] if wildcard else origins,
        "allow_origin_regex": origin_regex,
        "allow_credentials": not wildcard,
        "allow_methods": ["*"],
        "allow_headers": ["*"],
    }


app.add_middleware(CORSMiddleware, **_cors_options())

for module in (automation, quotes, appointments, projects, cron):
    app.include_router(module.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
        "rules": "/automations/rules",
        "templates": "/automations/templates",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True, "workers_enabled": settings.automation_workers_enabled}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:  # noqa: BLE001
        return {"ok": False, "database": "unreachable"}
    return {"ok": True, "database": "ok"}
