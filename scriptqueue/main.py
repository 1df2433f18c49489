"""Main entry point for the generation service."""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional, Sequence

import structlog

from scriptqueue.config import settings
from scriptqueue.heartbeat import HeartbeatWriter
from scriptqueue.health_server import HealthServer
from scriptqueue.integrations.generation import GenerationClient
from scriptqueue.log_routing import JobLogRegistry, LogCallback
from scriptqueue.pipeline import Agent, ScriptPipeline, ScriptResult
from scriptqueue.queue_manager import QueueManager
from scriptqueue.waiter import JobWaiter
from scriptqueue.worker import GenerateFn

logger = structlog.get_logger()


def configure_logging() -> None:
    """Configure stdlib logging and structlog from settings."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.LOG_FORMAT == "json" else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class GenerationService:
    """Owns the queue manager and everything that talks to it."""

    def __init__(
        self,
        generate: Optional[GenerateFn] = None,
        queue: Optional[QueueManager] = None,
        registry: Optional[JobLogRegistry] = None,
        waiter: Optional[JobWaiter] = None,
    ):
        self.queue = queue if queue is not None else QueueManager(generate or GenerationClient())
        self.registry = registry if registry is not None else JobLogRegistry()
        self.waiter = waiter if waiter is not None else JobWaiter(self.queue, self.registry)
        self.heartbeat = HeartbeatWriter(status_callback=self.queue.get_status)
        self.health = HealthServer(status_callback=self.queue.get_status)
        self.queue.on_worker_status_change(self.registry.handle_worker_status)
        self.tasks: List[asyncio.Task] = []

    async def start_monitoring(self) -> None:
        self.tasks = [
            asyncio.create_task(self.heartbeat.run(), name="heartbeat"),
            asyncio.create_task(self.health.run(), name="health"),
        ]
        logger.info("Monitoring started", components=[t.get_name() for t in self.tasks])

    async def run_generation(
        self,
        credentials: Sequence[str],
        titles: List[str],
        agent: Agent,
        log_callback: Optional[LogCallback] = None,
    ) -> List[ScriptResult]:
        """Run one generation with a fresh worker pool.

        Args:
            credentials: API keys, one worker each
            titles: Titles (or source contents) to write scripts for
            agent: Prompt configuration
            log_callback: Receives progress messages

        Returns:
            One result per (title, language)
        """
        self.queue.initialize_workers(credentials)
        self.registry.clear()
        self.queue.start()

        try:
            pipeline = ScriptPipeline(self.queue, self.waiter, log_callback)
            return await pipeline.run(titles, agent)
        finally:
            self.queue.stop()
            await self.queue.drain()
            self.queue.discard_pending()
            self.registry.clear()

    def cancel(self) -> None:
        """Cancel the running generation."""
        logger.info("Generation cancelled")
        self.queue.stop()

    async def stop(self) -> None:
        """Stop all service components gracefully."""
        logger.info("Stopping generation service")
        self.queue.stop()
        await self.queue.drain()

        await asyncio.gather(
            self.heartbeat.stop(),
            self.health.stop(),
        )

        for task in self.tasks:
            if not task.done():
                task.cancel()

        logger.info("Generation service stopped")


def load_titles(path: str) -> List[str]:
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip()]


def load_agent(path: str) -> Agent:
    with open(path, encoding="utf-8") as f:
        return Agent.from_dict(json.load(f))


def console_log(message: str, level: str = "info") -> None:
    logger.info(message, level=level)


async def main() -> None:
    """Main entry point."""
    configure_logging()

    if not settings.AGENT_FILE or not settings.TITLES_FILE:
        logger.error("AGENT_FILE and TITLES_FILE must be set")
        sys.exit(1)
    if not settings.GEMINI_API_KEYS:
        logger.error("GEMINI_API_KEYS is empty")
        sys.exit(1)

    agent = load_agent(settings.AGENT_FILE)
    titles = load_titles(settings.TITLES_FILE)

    service = GenerationService()

    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        service.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_handler)

    await service.start_monitoring()
    try:
        results = await service.run_generation(settings.GEMINI_API_KEYS, titles, agent, console_log)
    except Exception as e:
        logger.error("Generation service error", error=str(e), exc_info=True)
        await service.stop()
        sys.exit(1)

    with open(settings.OUTPUT_FILE, "w", encoding="utf-8") as f:
        json.dump([r.to_dict() for r in results], f, ensure_ascii=False, indent=2)

    logger.info(
        "Results written",
        file=settings.OUTPUT_FILE,
        scripts=len(results),
        failed=sum(1 for r in results if not r.success),
    )
    await service.stop()


if __name__ == "__main__":
    asyncio.run(main())
