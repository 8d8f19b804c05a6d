#!/usr/bin/env python3
"""
HTTP + WebSocket + Server-Sent Events binding for the relay, using FastAPI.

Pull endpoints live under /v1; push subscriptions are offered both as a
WebSocket (/ws, accepts {"kind": "ping"} heartbeats) and as an SSE stream
(/v1/events, heartbeats via POST /v1/stations/heartbeat).
"""
import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from . import __version__, errors
from .channel_log import InMemoryChannelLog
from .config_loader import RECENT_LIMIT_DEFAULT, Config
from .errors import RelayError
from .logging_setup import get_logger
from .models import normalize_channel, now_ms
from .relay import RelayService, Subscriber

logger = get_logger(__name__)

SSE_PING_SECONDS = 15
WS_POLICY_VIOLATION = 1008


class RegisterRequest(BaseModel):
    """Request model for station registration."""

    callsign: str | None = None


class HeartbeatRequest(BaseModel):
    """Request model for HTTP heartbeats (SSE subscribers)."""

    callsign: str | None = None


class SubmitMessageRequest(BaseModel):
    """Request model for message submission."""

    fromCallsign: str | None = None
    toCallsign: str | None = None
    channel: str | None = None
    type: str | None = None
    payload: dict[str, Any] | None = None


class RelayServer:
    """
    Serves a RelayService over HTTP.

    The FastAPI app is built by create_app(); start_server() runs it under
    uvicorn as a background task.
    """

    def __init__(
        self,
        relay: RelayService,
        host: str = "127.0.0.1",
        port: int = 3000,
        cors_origins: list[str] | None = None,
    ):
        self.relay = relay
        self.host = host
        self.port = port
        self.cors_origins = cors_origins or ["*"]
        self.app: FastAPI | None = None
        self.server: Any = None
        self._server_task: asyncio.Task | None = None
        self._start_time = time.time()

    def create_app(self) -> FastAPI:
        """Create and configure the FastAPI application."""
        relay = self.relay

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            """Handle startup and shutdown."""
            logger.info("Relay API starting up")
            yield
            logger.info("Relay API shutting down")
            await relay.close()

        app = FastAPI(
            title="WorldMorse Relay API",
            version=__version__,
            description="Channel relay for Morse messages between amateur stations",
            lifespan=lifespan,
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

        @app.exception_handler(RelayError)
        async def relay_error_handler(request: Request, exc: RelayError):
            return JSONResponse(status_code=400, content={"ok": False, "error": exc.code})

        @app.exception_handler(RequestValidationError)
        async def validation_error_handler(request: Request, exc: RequestValidationError):
            logger.debug("Rejected request to %s: %s", request.url.path, exc.errors())
            return JSONResponse(
                status_code=400, content={"ok": False, "error": errors.INVALID_REQUEST}
            )

        @app.get("/health")
        async def health_check():
            """Health check endpoint for load balancers."""
            return {"ok": True, "ts": now_ms()}

        @app.get("/v1/status")
        async def get_status():
            """Relay status."""
            return {
                "ok": True,
                "version": __version__,
                "subscribers": relay.subscriber_count(),
                "uptime_seconds": int(time.time() - self._start_time),
            }

        @app.post("/v1/stations/register")
        async def register_station(request: RegisterRequest):
            """Register a call-sign; an existing registration is overwritten."""
            station = await relay.register_station(request.callsign)
            return {"ok": True, "station": station.to_dict()}

        @app.post("/v1/stations/heartbeat")
        async def heartbeat(request: HeartbeatRequest):
            """Refresh presence of a registered station."""
            await relay.heartbeat(request.callsign)
            return {"ok": True}

        @app.get("/v1/stations/online")
        async def online_stations(channel: str = ""):
            """Stations seen on a channel within the presence timeout."""
            stations = await relay.online_stations(channel)
            return {"ok": True, "stations": [s.to_dict() for s in stations]}

        @app.post("/v1/messages")
        async def submit_message(request: SubmitMessageRequest):
            """Store a message and push it to the channel's subscribers."""
            message = await relay.submit_message(
                from_callsign=request.fromCallsign,
                channel=request.channel,
                type=request.type,
                payload=request.payload,
                to_callsign=request.toCallsign,
            )
            return {"ok": True, "message": message.to_dict()}

        @app.get("/v1/messages/recent")
        async def recent_messages(channel: str = "", limit: int = RECENT_LIMIT_DEFAULT):
            """Most recent messages of a channel, oldest first."""
            messages = await relay.recent_messages(channel, limit)
            return {"ok": True, "messages": [m.to_dict() for m in messages]}

        @app.get("/v1/events")
        async def sse_endpoint(request: Request, callsign: str = "", channel: str = ""):
            """
            Server-Sent Events push subscription.

            Same events as the WebSocket; heartbeats go through
            POST /v1/stations/heartbeat.
            """
            if not normalize_channel(channel):
                raise RelayError(errors.CHANNEL_REQUIRED)

            async def event_generator():
                # Attach inside the stream; finally detaches
                subscriber = await relay.attach(callsign, channel)
                try:
                    while subscriber.connected:
                        if await request.is_disconnected():
                            break
                        event = await subscriber.next_event()
                        if event is None:
                            break
                        yield {"event": event["kind"], "data": json.dumps(event)}
                except asyncio.CancelledError:
                    pass
                finally:
                    await relay.detach(subscriber)

            return EventSourceResponse(
                event_generator(),
                ping=SSE_PING_SECONDS,
                headers={"X-Accel-Buffering": "no"},  # Disable nginx buffering
            )

        @app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket, callsign: str = "", channel: str = ""):
            """WebSocket push subscription: /ws?callsign=JA1ABC&channel=7.050"""
            try:
                subscriber = await relay.attach(callsign, channel)
            except RelayError as e:
                await websocket.close(code=WS_POLICY_VIOLATION, reason=e.code)
                return

            try:
                await websocket.accept()
                await self._pump_websocket(websocket, subscriber)
            finally:
                await relay.detach(subscriber)

        return app

    async def _pump_websocket(self, websocket: WebSocket, subscriber: Subscriber) -> None:
        """Run writer and reader until either side ends."""

        async def writer():
            while True:
                event = await subscriber.next_event()
                if event is None:
                    return
                await websocket.send_json(event)

        async def reader():
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    return
                raw = frame.get("text") or frame.get("bytes")
                if raw:
                    await self.relay.handle_client_frame(subscriber, raw)

        tasks = [asyncio.create_task(writer()), asyncio.create_task(reader())]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, WebSocketDisconnect):
                pass
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                logger.warning("WebSocket %s closed with error: %s", subscriber, exc)

    async def start_server(self) -> None:
        """Start the uvicorn server in a background task."""
        self.app = self.create_app()
        self._start_time = time.time()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",  # Reduce uvicorn logging noise
            access_log=False,
        )
        self.server = uvicorn.Server(config)

        self._server_task = asyncio.create_task(self._run_server())
        logger.info("📡 Relay listening on http://%s:%d", self.host, self.port)

    async def _run_server(self) -> None:
        """Run the uvicorn server."""
        try:
            await self.server.serve()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Relay server error: %s", e)

    async def stop_server(self) -> None:
        """Stop the uvicorn server."""
        if self.server:
            self.server.should_exit = True

            if self._server_task:
                try:
                    await asyncio.wait_for(self._server_task, timeout=5.0)
                except asyncio.TimeoutError:
                    self._server_task.cancel()
                    try:
                        await self._server_task
                    except asyncio.CancelledError:
                        pass

        await self.relay.close()
        logger.info("Relay server stopped")


def create_relay_server(cfg: Config) -> RelayServer:
    """Build relay service and HTTP server from configuration."""
    relay = RelayService(
        channel_log=InMemoryChannelLog(cfg.relay.max_messages_per_channel),
        presence_timeout_ms=int(cfg.relay.presence_timeout_s * 1000),
        subscriber_queue_size=cfg.relay.subscriber_queue_size,
    )
    return RelayServer(
        relay,
        host=cfg.relay.host,
        port=cfg.relay.port,
        cors_origins=cfg.relay.cors_origins,
    )
