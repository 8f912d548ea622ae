import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response
import pytz
import structlog

from .config import Settings, WEBHOOK_PATH
from .locks import AdvisoryLock
from .notifier import create_notifier
from .scheduler import SyncScheduler
from .services.base import AuthenticationError, CalendarServiceError
from .sync_engine import SyncEngine

log = structlog.get_logger(__name__)


class SyncRuntime:
    def __init__(self, settings: Settings, engine: Optional[SyncEngine] = None):
        self.settings = settings
        self.engine = engine or SyncEngine(settings)
        self.lock = AdvisoryLock(self.engine.db_manager, lease_seconds=settings.sync_config.lock_lease_seconds)
        self.scheduler = SyncScheduler(settings, self.engine, self.lock, create_notifier(settings))
        self.started_at: Optional[datetime] = None

    async def start(self):
        await self.engine.initialize()
        self.scheduler.start()
        self.started_at = datetime.now(pytz.UTC)
        log.info(
            "runtime.started",
            polling=self.settings.sync_config.enable_polling_fallback,
            webhook=self.settings.webhook_address,
        )

    async def stop(self):
        await self.scheduler.stop()
        log.info("runtime.stopped")


def create_app(settings: Optional[Settings] = None, engine: Optional[SyncEngine] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = SyncRuntime(settings or Settings(), engine)
        app.state.runtime = runtime
        await runtime.start()
        try:
            yield
        finally:
            await asyncio.wait_for(runtime.stop(), timeout=5)

    app = FastAPI(title="CareSync Google Sync", version="1.0", lifespan=lifespan)

    @app.get("/health")
    async def health():
        rt: SyncRuntime = app.state.runtime
        return {
            "ok": True,
            "started_at": rt.started_at.isoformat() if rt.started_at else None,
            "runs_started": rt.scheduler.runs_started,
            "scheduled_users": len(rt.scheduler.registry),
        }

    @app.post("/users/{user_id}/sync", status_code=202)
    async def schedule_user_sync(user_id: str, debounce_ms: Optional[int] = None):
        scheduler = app.state.runtime.scheduler
        if debounce_ms is not None and debounce_ms < 0:
            raise HTTPException(status_code=400, detail="debounce_ms must be >= 0")
        scheduler.schedule_sync(user_id, debounce_ms=debounce_ms)
        return {"scheduled": user_id not in scheduler.suppressed, "user_id": user_id}

    @app.post("/items/{item_id}/pending", status_code=202)
    async def mark_item_pending(item_id: str):
        link = app.state.runtime.scheduler.mark_item_changed(item_id)
        return {"queued": link is not None, "item_id": item_id}

    @app.post("/users/{user_id}/reauthorized", status_code=204)
    async def reauthorized(user_id: str):
        app.state.runtime.scheduler.reauthorized(user_id)
        return Response(status_code=204)

    @app.post("/users/{user_id}/managed-calendar")
    async def provision_managed_calendar(user_id: str):
        rt: SyncRuntime = app.state.runtime
        async with rt.lock.hold(user_id) as acquired:
            if not acquired:
                raise HTTPException(status_code=409, detail="sync in progress")
            try:
                result = await rt.engine.provision_managed_calendar(user_id)
            except AuthenticationError as e:
                raise HTTPException(status_code=401, detail=e.code)
            except CalendarServiceError as e:
                raise HTTPException(status_code=502, detail=e.message)
        return result.model_dump()

    @app.post(WEBHOOK_PATH)
    async def google_webhook(request: Request):
        rt: SyncRuntime = app.state.runtime
        user_id = rt.engine.watches.handle_notification(request.headers)
        if user_id is not None:
            rt.scheduler.schedule_sync(user_id, debounce_ms=0)
        # Acknowledge every delivery, trusted or not
        return Response(status_code=200)

    @app.delete("/users/{user_id}/watches")
    async def stop_watches(user_id: str):
        stopped = await app.state.runtime.engine.stop_calendar_watches(user_id)
        return {"stopped": stopped, "user_id": user_id}

    @app.get("/users/{user_id}/status")
    async def integration_status(user_id: str):
        db = app.state.runtime.engine.db_manager
        with db.get_session() as session:
            status = db.get_integration_status(session, user_id)
        return status.model_dump(mode='json')

    return app


app = create_app()
