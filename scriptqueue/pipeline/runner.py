"""Runs the premise, adaptation and script stages for a batch of titles."""

import asyncio
from typing import Dict, List, Optional

import structlog

from scriptqueue.log_routing import LogCallback
from scriptqueue.pipeline.adaptation import AdaptationStage
from scriptqueue.pipeline.base import Agent, ScriptResult, StageResult, prefixed
from scriptqueue.pipeline.premise import PremiseStage
from scriptqueue.pipeline.script import ScriptStage
from scriptqueue.queue_manager import QueueManager
from scriptqueue.waiter import JobWaiter

logger = structlog.get_logger()


class ScriptPipeline:
    """Generates one script per (title, language) through the queue.

    Premises are generated for every title first, then adapted to each
    additional language, then every script is written. Titles and
    languages run concurrently; blocks within one script do not.
    """

    def __init__(
        self,
        queue: QueueManager,
        waiter: JobWaiter,
        log_callback: Optional[LogCallback] = None,
    ):
        self.premise = PremiseStage(queue, waiter)
        self.adaptation = AdaptationStage(queue, waiter)
        self.script = ScriptStage(queue, waiter)
        self.log_callback = log_callback

    async def run(self, titles: List[str], agent: Agent) -> List[ScriptResult]:
        languages = agent.languages
        logger.info("Pipeline started", titles=len(titles), languages=languages)

        premises = await asyncio.gather(
            *(
                self.premise.run(title, agent, self._log(title, agent.primary_language))
                for title in titles
            )
        )

        premise_by_pair: Dict[tuple, StageResult] = {}
        adaptations = []
        for title, premise in zip(titles, premises):
            premise_by_pair[(title, agent.primary_language)] = premise
            for language in languages[1:]:
                if premise.success:
                    adaptations.append((title, language))
                else:
                    premise_by_pair[(title, language)] = premise

        adapted = await asyncio.gather(
            *(
                self.adaptation.run(
                    title,
                    premise_by_pair[(title, agent.primary_language)].text,
                    language,
                    agent,
                    self._log(title, language),
                )
                for title, language in adaptations
            )
        )
        for pair, result in zip(adaptations, adapted):
            premise_by_pair[pair] = result

        pairs = [(title, language) for title in titles for language in languages]
        results = await asyncio.gather(
            *(
                self._write_script(title, language, premise_by_pair[(title, language)], agent)
                for title, language in pairs
            )
        )

        logger.info(
            "Pipeline finished",
            scripts=len(results),
            successful=sum(1 for r in results if r.success),
        )
        return list(results)

    async def _write_script(
        self,
        title: str,
        language: str,
        premise: StageResult,
        agent: Agent,
    ) -> ScriptResult:
        log = self._log(title, language)

        if not premise.success:
            if log and not premise.cancelled:
                log("Script skipped because the premise failed", "error")
            return ScriptResult(
                title=title,
                language=language,
                error=f"Premise not generated: {premise.error}",
                cancelled=premise.cancelled,
            )

        script = await self.script.run(title, premise.text, language, agent, log)
        if log and script.success:
            log("Script completed", "success")

        return ScriptResult(
            title=title,
            language=language,
            premise=premise.text,
            script=script.text,
            error=script.error,
            cancelled=script.cancelled,
        )

    def _log(self, title: str, language: str) -> Optional[LogCallback]:
        return prefixed(self.log_callback, f"{title[:50]} / {language}")
