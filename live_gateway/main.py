"""
Live Gateway: Main Entry Point

Companion-app backend that:
1. Receives raw events from one live source per room
2. Deduplicates redelivered events (event and message layers)
3. Normalizes inconsistent payloads into canonical events
4. Computes gift coin values, counting streaks once
5. Dispatches canonical events to plugin handlers and WebSocket clients
"""

import asyncio
import signal
import structlog
from dataclasses import dataclass, field
from typing import Optional

from .api.server import ApiServer, EventBroadcaster, create_app
from .config import load_config, merge_defaults, validate_config
from .ingestion.sources import LiveEventSource, create_source
from .logging_setup import configure_logging
from .metrics import CONNECTED_ROOMS, MetricsServer
from .normalization.gift_catalog import GiftCatalog
from .pipeline import LivePipeline
from .recording.session_recorder import SessionRecorder

logger = structlog.get_logger(__name__)


@dataclass
class Room:
    """One room connection: its source, its pipeline and its consumer task."""
    room_id: str
    source: LiveEventSource
    pipeline: LivePipeline
    recorder: Optional[SessionRecorder] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class LiveGateway:
    """
    Owns one pipeline per configured room. Each room is consumed by its
    own task; inside a room, signals are processed strictly in order.
    """

    def __init__(self, config: Optional[dict] = None, config_path: Optional[str] = None):
        if config is None:
            self.config = load_config(config_path)
        else:
            self.config = merge_defaults(config)
            validate_config(self.config)

        self.gateway_id = self.config["gateway"]["id"]
        self.running = False

        self.gift_catalog = GiftCatalog()
        catalog_path = self.config["gift_catalog"].get("path")
        if catalog_path:
            self.gift_catalog.load(catalog_path)

        self.broadcaster = EventBroadcaster()
        self.rooms: dict[str, Room] = {}
        for room_conf in self.config["rooms"]:
            self.add_room(room_conf)

        # Infrastructure
        self.api_server = ApiServer(create_app(self), self.config["api"])
        self.metrics_server = MetricsServer(self.config["metrics"])

        logger.info(
            "live_gateway_initialized",
            gateway_id=self.gateway_id,
            rooms=list(self.rooms),
        )

    def add_room(self, room_conf: dict) -> Room:
        room_id = room_conf["id"]
        pipeline = LivePipeline.from_config(room_id, self.config, gift_catalog=self.gift_catalog)
        self.broadcaster.attach(pipeline)

        recorder = None
        recording_conf = self.config["recording"]
        if recording_conf.get("enabled"):
            recorder = SessionRecorder(recording_conf["directory"], room_id)

        room = Room(
            room_id=room_id,
            source=create_source(room_conf.get("source", {})),
            pipeline=pipeline,
            recorder=recorder,
        )
        self.rooms[room_id] = room
        return room

    async def start(self):
        """Start infrastructure, then one consumer task per room."""
        self.running = True

        await self.api_server.start()
        await self.metrics_server.start()

        for room in self.rooms.values():
            await room.source.start()
            room.task = asyncio.create_task(self._consume(room), name=f"room-{room.room_id}")

        CONNECTED_ROOMS.set(len(self.rooms))
        logger.info("all_rooms_started", count=len(self.rooms))

    async def run(self):
        """Start and wait until every room's source is exhausted or stopped."""
        await self.start()
        tasks = [room.task for room in self.rooms.values() if room.task]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _consume(self, room: Room):
        """
        Main loop for one room: receive signal -> record -> pipeline.
        Processing is synchronous per signal, preserving arrival order.
        """
        logger.info("room_consumer_started", room_id=room.room_id)

        async for live_signal in room.source.signals():
            try:
                if room.recorder is not None:
                    await room.recorder.record(live_signal)
                room.pipeline.handle_signal(live_signal)
            except Exception as e:
                logger.error(
                    "room_consumer_error",
                    room_id=room.room_id,
                    signal_kind=live_signal.kind,
                    error=str(e),
                )

        logger.info("room_consumer_stopped", room_id=room.room_id)

    async def stop(self):
        """Graceful shutdown."""
        logger.info("gateway_shutdown_started")
        self.running = False

        for room in self.rooms.values():
            await room.source.stop()
        tasks = [room.task for room in self.rooms.values() if room.task]
        await asyncio.gather(*tasks, return_exceptions=True)

        for room in self.rooms.values():
            if room.recorder is not None:
                await room.recorder.close()

        CONNECTED_ROOMS.set(0)
        await self.api_server.stop()
        await self.metrics_server.stop()
        logger.info("gateway_shutdown_completed")


async def main(config_path: Optional[str] = None):
    config = load_config(config_path)
    configure_logging(config["logging"]["level"], config["logging"]["json"])
    gateway = LiveGateway(config=config)

    # Handle graceful shutdown
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(gateway.stop()))

    await gateway.run()
    if gateway.running:
        await gateway.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
