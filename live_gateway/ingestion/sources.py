"""
Live Event Sources: where raw room events come from.

A source yields LiveSignal items one at a time: data events (chat, gift,
like, ...) and control signals (connected, disconnected, streamEnd,
roomUser). Vendor SDK clients plug in behind the same interface.

In-tree sources:
- QueueSource: push-based, fed by the HTTP inject endpoint or by tests
- ReplaySource: replays a recorded JSONL session file
"""

import asyncio
import json
import structlog
import aiofiles
from pathlib import Path
from typing import AsyncIterator, Optional

from ..models import LiveSignal
from ..normalization.resolvers import coerce_int

logger = structlog.get_logger(__name__)


class SourceClosed(Exception):
    """Raised when pushing to a source that has been stopped."""


class LiveEventSource:
    """Interface every live event source implements."""

    accepts_push = False

    async def start(self):
        pass

    async def stop(self):
        pass

    def signals(self) -> AsyncIterator[LiveSignal]:
        raise NotImplementedError


class QueueSource(LiveEventSource):
    """
    Source backed by an asyncio queue. Producers call push(); the room
    consumer iterates signals() until the source is stopped.
    """

    accepts_push = True

    def __init__(self, maxsize: int = 10000):
        self.queue: asyncio.Queue[Optional[LiveSignal]] = asyncio.Queue(maxsize=maxsize)
        self._running = False

    async def start(self):
        self._running = True
        await self.queue.put(LiveSignal(kind="connected"))
        logger.info("source_started", source="queue")

    async def push(self, kind: str, payload: Optional[dict] = None):
        if not self._running:
            raise SourceClosed("source is not running")
        await self.queue.put(LiveSignal(kind=kind, payload=dict(payload or {})))

    async def stop(self):
        if not self._running:
            return
        self._running = False
        await self.queue.put(LiveSignal(kind="disconnected"))
        await self.queue.put(None)
        logger.info("source_stopped", source="queue")

    async def signals(self) -> AsyncIterator[LiveSignal]:
        while True:
            signal = await self.queue.get()
            if signal is None:
                return
            yield signal


class ReplaySource(LiveEventSource):
    """
    Replays a session file written by the SessionRecorder: one JSON object
    per line with `kind`, `payload` and `offset_ms`. With speed > 0 the
    original pacing is reproduced (speed 2.0 plays twice as fast); speed 0
    replays as fast as possible. Corrupt lines are skipped.
    """

    def __init__(self, path: str | Path, speed: float = 0.0):
        self.path = Path(path)
        self.speed = speed
        self._running = False

    async def start(self):
        if not self.path.exists():
            raise FileNotFoundError(f"Replay file not found: {self.path}")
        self._running = True
        logger.info("source_started", source="replay", path=str(self.path), speed=self.speed)

    async def stop(self):
        self._running = False

    async def signals(self) -> AsyncIterator[LiveSignal]:
        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            contents = await f.read()

        yield LiveSignal(kind="connected", payload={"replay": str(self.path)})

        replayed = 0
        last_offset_ms = 0
        for line in contents.splitlines():
            if not self._running:
                break
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
                kind = entry["kind"]
                offset_ms = coerce_int(entry.get("offset_ms") or 0)
                if not isinstance(kind, str) or offset_ms is None:
                    raise ValueError("invalid kind or offset")
            except (json.JSONDecodeError, KeyError, TypeError, AttributeError, ValueError):
                logger.warning("replay_corrupt_entry", line=line[:100])
                continue

            # The replay emits its own session boundaries
            if kind in ("connected", "disconnected"):
                continue

            if self.speed > 0 and offset_ms > last_offset_ms:
                await asyncio.sleep((offset_ms - last_offset_ms) / 1000 / self.speed)
            last_offset_ms = max(last_offset_ms, offset_ms)

            payload = entry.get("payload")
            yield LiveSignal(kind=kind, payload=payload if isinstance(payload, dict) else {})
            replayed += 1

        logger.info("replay_completed", path=str(self.path), replayed=replayed)
        yield LiveSignal(kind="disconnected")


def create_source(config: dict) -> LiveEventSource:
    """Build a source from a room's `source` config section."""
    source_type = config.get("type", "queue")
    if source_type == "queue":
        return QueueSource(maxsize=config.get("max_queue_size", 10000))
    if source_type == "replay":
        return ReplaySource(config["path"], speed=config.get("speed", 0.0))
    raise ValueError(f"Unsupported source type: {source_type}")
