"""
main.py
───────
Appointment reminder service: FastAPI entry point.

Exposes:
  REST  /api/reminders                               every owner's reminders
  REST  /api/users/{phone}/reminders                 list / replace one contact's reminders
  REST  /api/users/{phone}/reminders/{id}            out-of-band patch (notes, category ...)
  REST  /api/users/{phone}/send-reminder             send one reminder right now
  REST  /api/scheduler, /api/health                  status
  WS    /ws                                          reminder_sent / reminder_failed pushes

The scheduler runs on its own thread for the lifetime of the app; delivery
events cross back onto the event loop with run_coroutine_threadsafe().
"""

import asyncio
import os
import platform
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clock import Clock, SystemClock
from config import Settings, load_settings
from dispatch import ClientNotReadyError, Dispatcher, ReminderNotFoundError
from identity import DeliveryError, ResolutionError
from logger import logger, setup_logging
from messaging import HttpMessagingClient, MessagingClient, StubMessagingClient
from models import ReminderPatch, SaveRemindersRequest, SendReminderRequest, dump_reminder
from reminder_service import ReminderValidationError, patch_reminder, save_reminders
from scheduler import DeliveryEvent, ReminderScheduler
from storage import JsonReminderStore, RecordStore
from templates import SettingsFileTemplateSource, TemplateSource

# ── WebSocket connection registry ─────────────────────────────────────────────

class ConnectionManager:
    def __init__(self):
        self.active: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, ws: WebSocket):
        await ws.accept()
        async with self._lock:
            self.active.append(ws)

    async def disconnect(self, ws: WebSocket):
        async with self._lock:
            self.active = [c for c in self.active if c is not ws]

    async def broadcast(self, data: dict):
        async with self._lock:
            alive = []
            for ws in self.active:
                try:
                    await ws.send_json(data)
                    alive.append(ws)
                except Exception as e:
                    logger.debug(f"Dropping websocket client: {e}")
            self.active = alive


def build_messaging_client(settings: Settings) -> MessagingClient:
    if settings.messaging_backend == "http":
        return HttpMessagingClient(
            settings.messaging_api_base_url,
            api_key=settings.messaging_api_key,
            timeout=settings.delivery_timeout_seconds,
        )
    logger.warning("Using the stub messaging client; reminders are logged, not sent")
    return StubMessagingClient()


# ── App factory ───────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[RecordStore] = None,
    client: Optional[MessagingClient] = None,
    clock: Optional[Clock] = None,
    templates: Optional[TemplateSource] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """
    Build the app. Collaborators left as None are created from `settings` when
    the app starts; run_scheduler=False leaves the tick thread off so callers
    can drive app.state.scheduler.tick() themselves.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_file or None, console_level=settings.log_level)
        loop = asyncio.get_running_loop()

        app_clock      = clock or SystemClock(settings.timezone)
        app_store      = store or JsonReminderStore(settings.reminders_file)
        app_client     = client or build_messaging_client(settings)
        app_templates  = templates or SettingsFileTemplateSource(settings.settings_file)
        dispatcher     = Dispatcher(
            app_store, app_client, app_templates, app_clock,
            settings.country_code, settings.catch_up_grace_seconds,
        )

        def _on_event(event: DeliveryEvent):
            """Called by the scheduler (on its thread) after each delivery attempt."""
            payload = {
                "event":       "reminder_sent" if event.ok else "reminder_failed",
                "phone":       event.owner,
                "reminder_id": event.reminder_id,
                "target":      event.target,
            }
            if event.error:
                payload["error"] = event.error
            asyncio.run_coroutine_threadsafe(app.state.ws_manager.broadcast(payload), loop)

        scheduler = ReminderScheduler(
            app_store, dispatcher, app_clock,
            interval=settings.check_interval_seconds,
            delivery_timeout=settings.delivery_timeout_seconds,
            max_workers=settings.max_workers,
            catch_up_grace=settings.catch_up_grace_seconds,
            purge_expired=settings.purge_expired,
            purge_after=settings.purge_after_seconds,
            max_retries=settings.max_retries,
            retry_backoff=settings.retry_backoff_seconds,
            on_event=_on_event,
        )

        app.state.settings   = settings
        app.state.clock      = app_clock
        app.state.store      = app_store
        app.state.dispatcher = dispatcher
        app.state.scheduler  = scheduler

        logger.info(f"Reminder service starting (PID={os.getpid()}, timezone={settings.timezone})")
        if run_scheduler:
            scheduler.start()

        yield   # Application runs here

        scheduler.stop(timeout=settings.delivery_timeout_seconds)
        if client is None and isinstance(app_client, HttpMessagingClient):
            app_client.close()
        logger.info("Reminder service shut down")

    app = FastAPI(title="Appointment Reminders", version="1.0.0", lifespan=lifespan)
    app.state.ws_manager = ConnectionManager()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    app.include_router(router)
    return app


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ReminderValidationError)
    async def _invalid_reminders(request: Request, exc: ReminderValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})

    @app.exception_handler(ClientNotReadyError)
    async def _not_ready(request: Request, exc: ClientNotReadyError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(ReminderNotFoundError)
    async def _not_found(request: Request, exc: ReminderNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ResolutionError)
    async def _unresolvable(request: Request, exc: ResolutionError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(DeliveryError)
    async def _delivery_failed(request: Request, exc: DeliveryError):
        return JSONResponse(status_code=502, content={"detail": str(exc)})


router = APIRouter()


# ── WebSocket endpoint ────────────────────────────────────────────────────────

@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    manager: ConnectionManager = ws.app.state.ws_manager
    await manager.connect(ws)
    try:
        while True:
            data = await ws.receive_json()
            # Handle ping keepalive
            if isinstance(data, dict) and data.get("type") == "ping":
                await ws.send_json({"type": "pong"})
    except WebSocketDisconnect:
        await manager.disconnect(ws)


# ── Reminder endpoints ────────────────────────────────────────────────────────

@router.get("/api/reminders")
def list_all_reminders(request: Request):
    store: RecordStore = request.app.state.store
    return {
        owner: [dump_reminder(r) for r in reminders]
        for owner, reminders in store.load_all().items()
    }


@router.get("/api/users/{phone}/reminders")
def list_reminders(phone: str, request: Request):
    return [dump_reminder(r) for r in request.app.state.store.load(phone)]


@router.put("/api/users/{phone}/reminders")
def replace_reminders(phone: str, body: SaveRemindersRequest, request: Request):
    state = request.app.state
    saved = save_reminders(
        state.store, phone, body.reminders,
        now=state.clock.now(),
        grace=timedelta(seconds=state.settings.catch_up_grace_seconds),
    )
    return [dump_reminder(r) for r in saved]


@router.patch("/api/users/{phone}/reminders/{reminder_id}")
def update_reminder(phone: str, reminder_id: str, body: ReminderPatch, request: Request):
    updated = patch_reminder(request.app.state.store, phone, reminder_id, body)
    if updated is None:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return dump_reminder(updated)


@router.post("/api/users/{phone}/send-reminder")
def send_reminder(phone: str, body: SendReminderRequest, request: Request):
    reminder = request.app.state.dispatcher.send_now(phone, body.reminder_id)
    return {"success": True, "reminder": dump_reminder(reminder)}


# ── Status / health ───────────────────────────────────────────────────────────

@router.get("/api/scheduler")
def scheduler_status(request: Request):
    return request.app.state.scheduler.status()


@router.get("/api/health")
def health(request: Request):
    return {
        "status": "ok",
        "pid": os.getpid(),
        "platform": platform.system(),
        "python": platform.python_version(),
        "messaging_ready": request.app.state.dispatcher.is_ready(),
    }


app = create_app()


# ── Entry point ───────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
