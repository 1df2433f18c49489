"""Heartbeat writer for external monitoring of the queue."""

import asyncio
import json
import os
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from scriptqueue.config import settings

logger = structlog.get_logger()


class HeartbeatWriter:
    """Periodically writes queue status to a file."""

    def __init__(
        self,
        status_callback: Optional[Callable[[], dict]] = None,
        file_path: Optional[str] = None,
        interval: Optional[float] = None,
    ):
        """Initialize heartbeat writer.

        Args:
            status_callback: Returns the queue status to embed in each heartbeat
            file_path: Heartbeat file location
            interval: Seconds between writes
        """
        self.file_path = file_path or settings.HEARTBEAT_FILE
        self.interval = interval if interval is not None else settings.HEARTBEAT_INTERVAL
        self.status_callback = status_callback
        self.running = False
        self.pid = os.getpid()

    async def run(self) -> None:
        """Main heartbeat loop."""
        self.running = True
        logger.info("Heartbeat writer started", file=self.file_path, interval=self.interval)

        while self.running:
            try:
                self.write_heartbeat()
            except OSError as e:
                logger.error("Heartbeat write failed", error=str(e))

            await asyncio.sleep(self.interval)

        logger.info("Heartbeat writer stopped")

    async def stop(self) -> None:
        self.running = False

    def write_heartbeat(self) -> None:
        """Write one heartbeat atomically."""
        data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "pid": self.pid,
            "status": "running",
        }

        if self.status_callback:
            try:
                queue = self.status_callback()
            except Exception as e:
                logger.error("Status callback failed", error=str(e))
            else:
                data["queue"] = queue
                data["active_workers"] = sum(
                    1 for w in queue.get("workers", []) if w.get("status") != "disabled"
                )

        temp_path = f"{self.file_path}.tmp"
        with open(temp_path, "w") as f:
            json.dump(data, f, default=str)

        os.replace(temp_path, self.file_path)
