import json
import logging

import uvicorn
from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocket, WebSocketDisconnect

from fallhelp.db.directory import DeviceDirectory
from fallhelp.db.event_store import EventStore
from fallhelp.db.notifications import NotificationStore
from fallhelp.db.pool import create_pool
from fallhelp.dispatcher.dispatcher import AlertDispatcher
from fallhelp.dispatcher.push_sender import ExpoPushClient
from fallhelp.ingest_iot.handlers import TelemetryHandlers
from fallhelp.ingest_iot.ingest import TelemetryRouter
from fallhelp.live.publisher import LivePublisher
from fallhelp.live.ws_manager import ConnectionManager
from fallhelp.shared.config import optional_env
from fallhelp.shared.logging import configure_logging, log_event
from fallhelp.shared.sampled_logger import get_sampled_logger
from fallhelp.shared.utils import format_timestamp, utcnow

SERVICE_NAME = "fallhelp-core"
HTTP_HOST = optional_env("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(optional_env("HTTP_PORT", "8080"))
CORS_ALLOWED_ORIGINS = optional_env("CORS_ALLOWED_ORIGINS", "http://localhost:8081")

logger = logging.getLogger(__name__)

manager = ConnectionManager()

app = FastAPI(title="FallHelp telemetry core")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    configure_logging(SERVICE_NAME)
    pool = await create_pool()
    directory = DeviceDirectory(pool)
    publisher = LivePublisher(manager)
    dispatcher = AlertDispatcher(
        publisher=publisher,
        directory=directory,
        notifications=NotificationStore(pool),
        push_client=ExpoPushClient(),
    )
    handlers = TelemetryHandlers(directory, EventStore(pool), dispatcher, publisher)
    router = TelemetryRouter(handlers)
    await router.start()

    app.state.pool = pool
    app.state.publisher = publisher
    app.state.router = router
    log_event(logger, "telemetry core started", workers=len(router.queues))


@app.on_event("shutdown")
async def shutdown():
    router = getattr(app.state, "router", None)
    if router is not None:
        await router.stop()
    await manager.close_all()
    pool = getattr(app.state, "pool", None)
    if pool is not None:
        await pool.close()
    get_sampled_logger().shutdown()


@app.get("/health")
async def health():
    body = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "live_connections": manager.connection_count,
    }
    router = getattr(app.state, "router", None)
    if router is not None:
        body.update(router.stats())
    return body


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def _optional_str(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


@app.websocket("/ws")
async def live_websocket(websocket: WebSocket):
    """Live channel for caregiver apps.

    Client messages:
        {"event": "authenticate", "data": {"userId": "...", "elderId": "..."}}
        {"event": "ping"}

    Server messages:
        {"event": "authenticated", "data": {"success": true}}
        {"event": "pong", "data": {"timestamp": "..."}}
        {"event": "fall_detected" | "heart_rate_alert" | "heart_rate_update" |
                  "device_status_update" | "event_status_changed" |
                  "system_message", "data": {...}}
    """
    conn = await manager.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await manager.send(conn, "error", {"message": "invalid JSON"})
                continue
            if not isinstance(message, dict):
                await manager.send(conn, "error", {"message": "expected a JSON object"})
                continue
            event = message.get("event")
            data = message.get("data") or {}
            if not isinstance(data, dict):
                data = {}

            if event == "authenticate":
                await manager.authenticate(
                    conn,
                    user_id=_optional_str(data.get("userId")),
                    elder_id=_optional_str(data.get("elderId")),
                )
                await manager.send(conn, "authenticated", {"success": True})
            elif event == "ping":
                await manager.send(conn, "pong", {"timestamp": format_timestamp(utcnow())})
            else:
                await manager.send(conn, "error", {"message": f"unknown event: {event}"})
    except WebSocketDisconnect:
        pass
    except RuntimeError:
        # socket closed from our side (session replaced or shutdown)
        pass
    finally:
        await manager.disconnect(conn)


def main() -> None:
    configure_logging(SERVICE_NAME)
    uvicorn.run(app, host=HTTP_HOST, port=HTTP_PORT, log_config=None)


if __name__ == "__main__":
    main()
