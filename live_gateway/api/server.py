"""
API server for the Live Gateway: health probes, deduplication stats and
clear, per-room statistics, raw event injection, and a WebSocket feed of
canonical events for dashboards and overlays.
"""

import asyncio
import json
import structlog
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from uvicorn import Config, Server

from ..ingestion.sources import SourceClosed
from ..models import CanonicalEvent

logger = structlog.get_logger(__name__)


class EventBroadcaster:
    """
    Fans canonical events out to connected WebSocket clients. Registered
    as a catch-all dispatcher handler: the handler only schedules the send,
    so dispatch returns immediately.
    """

    def __init__(self):
        self._clients: set[WebSocket] = set()
        self._tasks: set[asyncio.Task] = set()

    def attach(self, pipeline) -> None:
        pipeline.dispatcher.register_all(partial(self.publish, pipeline.room_id))

    def publish(self, room_id: str, event: CanonicalEvent) -> None:
        if not self._clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        payload = json.dumps({
            "type": "live_event",
            "room_id": room_id,
            "data": event.to_dict(),
            "server_timestamp": datetime.now(timezone.utc).isoformat(),
        }, default=str)

        task = loop.create_task(self._broadcast(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _broadcast(self, payload: str):
        disconnected = []
        clients = list(self._clients)
        results = await asyncio.gather(
            *(client.send_text(payload) for client in clients),
            return_exceptions=True,
        )
        for client, result in zip(clients, results):
            if isinstance(result, Exception):
                disconnected.append(client)

        for client in disconnected:
            self._clients.discard(client)

    def add(self, websocket: WebSocket):
        self._clients.add(websocket)

    def remove(self, websocket: WebSocket):
        self._clients.discard(websocket)

    @property
    def client_count(self) -> int:
        return len(self._clients)


def create_app(gateway) -> FastAPI:
    """Build the FastAPI app over a gateway's rooms and broadcaster."""
    app = FastAPI(title="Live Gateway", version="1.0.0")

    def get_room(room_id: str):
        room = gateway.rooms.get(room_id)
        if room is None:
            raise HTTPException(status_code=404, detail=f"Unknown room: {room_id}")
        return room

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": "live-gateway",
            "gateway_id": gateway.gateway_id,
            "rooms": {
                room_id: {"connected": room.pipeline.connected}
                for room_id, room in gateway.rooms.items()
            },
            "websocket_clients": gateway.broadcaster.client_count,
        }

    @app.get("/ready")
    async def readiness():
        return {"status": "ready" if gateway.running else "starting"}

    @app.get("/api/deduplication-stats")
    async def deduplication_stats():
        return {
            "rooms": {
                room_id: room.pipeline.deduplication_stats()
                for room_id, room in gateway.rooms.items()
            },
        }

    @app.post("/api/deduplication-clear")
    async def deduplication_clear(room_id: Optional[str] = None):
        targets = [get_room(room_id)] if room_id else list(gateway.rooms.values())
        for room in targets:
            room.pipeline.clear_deduplication()
        return {"success": True, "cleared_rooms": [room.pipeline.room_id for room in targets]}

    @app.get("/api/rooms/{room_id}/stats")
    async def room_stats(room_id: str):
        return get_room(room_id).pipeline.snapshot()

    @app.post("/api/rooms/{room_id}/events/{kind}", status_code=202)
    async def inject_event(room_id: str, kind: str, payload: dict[str, Any] = Body(default={})):
        room = get_room(room_id)
        if not room.source.accepts_push:
            raise HTTPException(status_code=409, detail=f"Room {room_id} does not accept pushed events")
        try:
            await room.source.push(kind, payload)
        except SourceClosed:
            raise HTTPException(status_code=409, detail=f"Room {room_id} source is not running")
        return {"accepted": True, "room_id": room_id, "kind": kind}

    @app.websocket("/ws/events")
    async def events_websocket(websocket: WebSocket):
        await websocket.accept()
        gateway.broadcaster.add(websocket)
        logger.info("websocket_client_connected", clients=gateway.broadcaster.client_count)
        try:
            while True:
                message = json.loads(await websocket.receive_text())
                if isinstance(message, dict) and message.get("action") == "ping":
                    await websocket.send_json({"action": "pong"})
        except (WebSocketDisconnect, json.JSONDecodeError):
            pass
        finally:
            gateway.broadcaster.remove(websocket)
            logger.info("websocket_client_disconnected", clients=gateway.broadcaster.client_count)

    return app


class ApiServer:
    """Serves the API app with uvicorn inside the gateway's event loop."""

    def __init__(self, app: FastAPI, config: dict):
        self.app = app
        self.enabled = config.get("enabled", True)
        self.host = config.get("host", "127.0.0.1")
        self.port = config.get("port", 8080)
        self._server: Optional[Server] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if not self.enabled:
            logger.info("api_server_disabled")
            return
        config = Config(app=self.app, host=self.host, port=self.port, log_level="warning")
        self._server = Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("api_server_started", host=self.host, port=self.port)

    async def stop(self):
        if self._server:
            self._server.should_exit = True
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)
