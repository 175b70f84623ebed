"""
Session Recorder: journals every inbound source signal to disk.

Signals are appended as newline-delimited JSON before they enter the
pipeline, so a live session can be replayed later through ReplaySource
(debugging duplicate bursts, testing plugins against real traffic).
"""

import json
import asyncio
import structlog
import aiofiles
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional

from ..models import LiveSignal

logger = structlog.get_logger(__name__)


class SessionRecorder:
    """
    Append-only JSONL journal, one file per room session:
    <directory>/<room_id>-<YYYYMMDD-HHMMSS>.jsonl

    Each line: {"kind", "payload", "offset_ms", "received_at", "control"}
    where offset_ms is relative to the first recorded signal.
    """

    def __init__(self, directory: str | Path, room_id: str):
        self.directory = Path(directory)
        self.room_id = room_id
        self.path: Optional[Path] = None
        self._started_at: Optional[datetime] = None
        self._recorded = 0
        self._lock = asyncio.Lock()

    async def open(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._started_at = datetime.now(timezone.utc)
        stamp = self._started_at.strftime("%Y%m%d-%H%M%S")
        self.path = self.directory / f"{self.room_id}-{stamp}.jsonl"
        logger.info("session_recording_started", room_id=self.room_id, path=str(self.path))
        return self.path

    async def record(self, signal: LiveSignal) -> None:
        if self.path is None:
            await self.open()

        async with self._lock:
            offset = signal.received_at - self._started_at
            entry = {
                "kind": signal.kind,
                "payload": signal.payload,
                "offset_ms": max(int(offset.total_seconds() * 1000), 0),
                "received_at": signal.received_at.isoformat(),
                "control": signal.is_control,
            }

            async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                await f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

            self._recorded += 1

    async def close(self) -> None:
        logger.info(
            "session_recording_closed",
            room_id=self.room_id,
            path=str(self.path) if self.path else None,
            recorded=self._recorded,
        )

    @property
    def recorded_count(self) -> int:
        return self._recorded
