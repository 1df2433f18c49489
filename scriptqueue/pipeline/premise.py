"""Premise stage: one premise per title in the agent's primary language."""

from string import Template
from typing import Optional

from scriptqueue.log_routing import LogCallback
from scriptqueue.pipeline.base import Agent, BaseStage, StageResult

PREMISE_PROMPT = Template(
    "$premise_template\n\n"
    "GENERATE THE PREMISE IN LANGUAGE: $language\n\n"
    "SOURCE CONTENT:\n$content"
)


class PremiseStage(BaseStage):
    """Generates the base premise of a story."""

    stage_type = "premise"

    async def run(
        self,
        title: str,
        agent: Agent,
        log_callback: Optional[LogCallback] = None,
    ) -> StageResult:
        prompt = PREMISE_PROMPT.safe_substitute(
            premise_template=agent.premise_template,
            language=agent.primary_language,
            content=title,
        )

        if log_callback:
            log_callback(f'Generating premise for "{title}"...', "info")

        result = await self.submit(
            f'Premise for "{title}"',
            prompt,
            metadata={"task_title": title, "language": agent.primary_language},
            log_callback=log_callback,
        )

        if log_callback:
            if result.success:
                log_callback("Premise generated successfully!", "success")
            elif not result.cancelled:
                log_callback(f"Premise generation failed: {result.error}", "error")
        return result
