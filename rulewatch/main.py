"""
RuleWatch - Main Application Entry Point

Polls watched accounts on a schedule, scores new posts against each rule's
criteria, and sends one aggregated notification per rule per cycle.

The HTTP surface is a thin admin layer: every handler calls straight into
the scheduler registry, the Scheduler or the BootOrchestrator.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .analyst import RelevanceClassifier
from .archivist import RuleStore, SqlRuleStore, close_db, init_db
from .common.errors import AccountNotFoundError
from .common.timers import APSchedulerTimers, TimerService
from .config import settings
from .harvester import ContentFetcher, PlatformClient, TwitterClient
from .scheduler import (
    BootOrchestrator,
    NotificationDispatcher,
    Scheduler,
    SchedulerRegistry,
)

logger = logging.getLogger(__name__)


# ----- Runtime wiring -----

@dataclass
class Runtime:
    """Everything built once per process and shared by the handlers."""
    registry: SchedulerRegistry
    scheduler: Scheduler
    boot: BootOrchestrator
    store: RuleStore
    timers: TimerService
    platform: Optional[PlatformClient] = None


def build_runtime(
    store: Optional[RuleStore] = None,
    timers: Optional[TimerService] = None,
    platform: Optional[PlatformClient] = None,
    classifier: Optional[RelevanceClassifier] = None,
) -> Runtime:
    """Construct the registry and everything that hangs off it."""
    store = store or SqlRuleStore()
    timers = timers or APSchedulerTimers(AsyncIOScheduler(timezone="UTC"))
    platform = platform or TwitterClient()

    registry = SchedulerRegistry(timers)
    fetcher = ContentFetcher(platform, registry.rate_limits)
    dispatcher = NotificationDispatcher(registry.notified, store)
    scheduler = Scheduler(
        registry,
        fetcher,
        classifier or RelevanceClassifier(),
        dispatcher,
        store=store,
    )
    boot = BootOrchestrator(scheduler, store)
    return Runtime(
        registry=registry,
        scheduler=scheduler,
        boot=boot,
        store=store,
        timers=timers,
        platform=platform,
    )


# ----- API Key Security -----

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)):
    """Verify API key for protected endpoints."""
    if not api_key:
        raise HTTPException(status_code=401, detail="API key required")
    if api_key not in settings.valid_api_keys:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return api_key


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialized")
    return runtime


# ----- Response Models -----

class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    active_rules: int
    initializing: bool


class RuleActionResponse(BaseModel):
    success: bool
    rule_id: str
    state: str
    message: str
    details: Dict[str, Any] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    if getattr(app.state, "runtime", None) is not None:
        # Runtime injected by the caller, which owns its lifecycle
        yield
        return

    print("Starting RuleWatch...")
    runtime = build_runtime()
    app.state.runtime = runtime

    try:
        await init_db()
        print("Database tables ready")
    except Exception as e:
        print(f"Warning: Could not initialize database: {e}")

    runtime.timers.start()

    try:
        report = await runtime.boot.initialize(force=True)
        print(f"Rule tracking initialized: {len(report.started)} rules polling, {len(report.failed)} failed")
    except Exception as e:
        print(f"Warning: Rule tracking initialization failed: {e}")

    runtime.boot.start_health_loop()

    yield

    # Graceful shutdown - close all resources
    print("Shutting down...")
    await runtime.boot.stop_health_loop()
    runtime.registry.stop_all()
    runtime.timers.shutdown()

    if isinstance(runtime.platform, TwitterClient):
        try:
            await runtime.platform.close()
        except Exception as e:
            print(f"Warning: Error closing platform client: {e}")

    try:
        await close_db()
        print("Database connections closed")
    except Exception as e:
        print(f"Warning: Error closing database: {e}")


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    app = FastAPI(
        title="RuleWatch",
        description="Rule-driven account polling with LLM relevance scoring",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        runtime = getattr(request.app.state, "runtime", None)
        return HealthResponse(
            status="healthy" if runtime is not None else "starting",
            timestamp=datetime.now(timezone.utc),
            active_rules=len(runtime.registry.get_active_rule_ids()) if runtime else 0,
            initializing=runtime.boot.initializing if runtime else True,
        )

    @app.get("/system/status")
    async def system_status(
        runtime: Runtime = Depends(get_runtime),
        _: str = Depends(verify_api_key),
    ):
        status = runtime.registry.status()
        status["initializing"] = runtime.boot.initializing
        return status

    @app.post("/system/initialize")
    async def system_initialize(
        force: bool = False,
        runtime: Runtime = Depends(get_runtime),
        _: str = Depends(verify_api_key),
    ):
        report = await runtime.boot.initialize(force=force)
        return report.to_dict()

    @app.post("/system/health-check")
    async def system_health_check(
        runtime: Runtime = Depends(get_runtime),
        _: str = Depends(verify_api_key),
    ):
        report = await runtime.boot.health_check(force=True)
        return report.to_dict()

    @app.post("/system/clear-all-polling")
    async def clear_all_polling(
        runtime: Runtime = Depends(get_runtime),
        _: str = Depends(verify_api_key),
    ):
        stopped = runtime.registry.stop_all()
        return {"success": True, "stopped": stopped}

    @app.post("/rules/{rule_id}/start", response_model=RuleActionResponse)
    async def start_rule(
        rule_id: str,
        runtime: Runtime = Depends(get_runtime),
        _: str = Depends(verify_api_key),
    ):
        rule = await runtime.store.get_rule(rule_id)
        if rule is None:
            raise HTTPException(status_code=404, detail="Rule not found")
        if not rule.is_active:
            raise HTTPException(status_code=409, detail="Rule is not active")
        try:
            state = await runtime.scheduler.start(rule)
        except AccountNotFoundError as e:
            await runtime.store.deactivate_rule(rule_id)
            raise HTTPException(status_code=422, detail=str(e))
        return RuleActionResponse(
            success=True,
            rule_id=rule_id,
            state=state.value,
            message="Polling started",
        )

    @app.post("/rules/{rule_id}/force-stop", response_model=RuleActionResponse)
    async def force_stop_rule(
        rule_id: str,
        runtime: Runtime = Depends(get_runtime),
        _: str = Depends(verify_api_key),
    ):
        rule = await runtime.store.get_rule(rule_id)
        if rule is None:
            raise HTTPException(status_code=404, detail="Rule not found")
        was_polling = runtime.scheduler.stop(rule_id)
        residual = runtime.registry.force_cleanup(rule_id)
        await runtime.store.deactivate_rule(rule_id)
        return RuleActionResponse(
            success=True,
            rule_id=rule_id,
            state=runtime.scheduler.poll_state(rule_id).value,
            message="Polling force-stopped",
            details={"was_polling": was_polling, "residual_timers": residual},
        )

    @app.post("/rules/{rule_id}/reset-notification", response_model=RuleActionResponse)
    async def reset_rule_notification(
        rule_id: str,
        runtime: Runtime = Depends(get_runtime),
        _: str = Depends(verify_api_key),
    ):
        rule = await runtime.store.get_rule(rule_id)
        if rule is None:
            raise HTTPException(status_code=404, detail="Rule not found")
        item_ids = await runtime.store.reset_notifications(rule_id)
        removed = runtime.registry.notified.discard_many(item_ids)
        return RuleActionResponse(
            success=True,
            rule_id=rule_id,
            state=runtime.scheduler.poll_state(rule_id).value,
            message="Notification state reset",
            details={"database_updated": len(item_ids), "memory_reset": removed},
        )

    @app.post("/admin/reset-notifications")
    async def reset_all_notifications(
        rule_id: Optional[str] = None,
        runtime: Runtime = Depends(get_runtime),
        _: str = Depends(verify_api_key),
    ):
        item_ids = await runtime.store.reset_notifications(rule_id)
        if rule_id is None:
            removed = runtime.registry.notified.clear()
        else:
            removed = runtime.registry.notified.discard_many(item_ids)
        return {
            "success": True,
            "rule_id": rule_id,
            "database_updated": len(item_ids),
            "memory_reset": removed,
        }

    return app


app = create_app()


# ----- CLI Runner -----

def run_server():
    """Run the FastAPI server."""
    import uvicorn
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "rulewatch.main:app",
        host="0.0.0.0",
        port=8000,
    )


if __name__ == "__main__":
    run_server()
