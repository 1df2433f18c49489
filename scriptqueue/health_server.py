"""HTTP health endpoint exposing the queue status."""

import asyncio
import json
from functools import partial
from typing import Callable, Optional

import structlog
from aiohttp import web

from scriptqueue.config import settings

logger = structlog.get_logger()


def is_stalled(details: dict) -> bool:
    """Jobs are waiting on a running queue but every worker is disabled."""
    if not details.get("is_running") or not details.get("queue"):
        return False
    return all(w.get("status") == "disabled" for w in details.get("workers", []))


class HealthServer:
    """Serves `GET /health` with the current queue status.

    Answers 503 with status "degraded" while the queue is stalled, so
    container health checks notice a pool of rejected credentials.
    """

    def __init__(self, status_callback: Optional[Callable[[], dict]] = None, port: Optional[int] = None):
        self.status_callback = status_callback
        self.port = port if port is not None else settings.HEALTH_PORT
        self.app = web.Application()
        self.app.router.add_get("/health", self.health_handler)
        self.runner: Optional[web.AppRunner] = None
        self.running = False

    async def health_handler(self, request: web.Request) -> web.Response:
        body = {"status": "ok"}
        http_status = 200

        if self.status_callback:
            try:
                details = self.status_callback()
            except Exception as e:
                logger.warning("Failed to get queue status", error=str(e))
            else:
                body["queue_running"] = details.get("is_running", False)
                body["details"] = details
                if is_stalled(details):
                    body["status"] = "degraded"
                    http_status = 503

        return web.json_response(body, status=http_status, dumps=partial(json.dumps, default=str))

    async def run(self) -> None:
        self.running = True
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "0.0.0.0", self.port)
        await site.start()
        logger.info("Health server started", port=self.port)

        while self.running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        self.running = False
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            logger.info("Health server stopped")
