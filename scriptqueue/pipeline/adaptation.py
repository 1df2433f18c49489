"""Adaptation stage: translates a premise to another language and culture."""

import re
from string import Template
from typing import Optional

from scriptqueue.log_routing import LogCallback
from scriptqueue.pipeline.base import Agent, BaseStage, StageResult

ADAPTATION_PROMPT = Template(
    "$adaptation_template\n\n"
    "ORIGINAL PREMISE (TO ADAPT):\n$premise\n\n"
    "ADAPT TO THE LANGUAGE AND CULTURE OF: $language"
)

# Anti-cache prefixes the backend sometimes leaks into replies
LEAKED_PREFIXES = [
    re.compile(r"^Hello,?\s*I'm\s*\d+\s*-\s*", re.IGNORECASE),
    re.compile(r"^ignore this prefix.*?-\s*", re.IGNORECASE),
    re.compile(r"^\.+\s*"),
]


def clean_adapted_premise(text: str) -> str:
    """Strip leaked anti-cache prefixes from an adapted premise."""
    for pattern in LEAKED_PREFIXES:
        text = pattern.sub("", text)
    return text.strip()


class AdaptationStage(BaseStage):
    """Adapts a primary-language premise to a target language."""

    stage_type = "adaptation"

    async def run(
        self,
        title: str,
        premise: str,
        language: str,
        agent: Agent,
        log_callback: Optional[LogCallback] = None,
    ) -> StageResult:
        prompt = ADAPTATION_PROMPT.safe_substitute(
            adaptation_template=agent.adaptation_template,
            premise=premise,
            language=language,
        )

        if log_callback:
            log_callback(f"Adapting premise to {language}...", "info")

        result = await self.submit(
            f"Adaptation to {language}",
            prompt,
            metadata={"task_title": title, "language": language},
            log_callback=log_callback,
        )

        if result.success:
            result.text = clean_adapted_premise(result.text)
        elif log_callback and not result.cancelled:
            log_callback(f"Premise adaptation failed: {result.error}", "error")
        return result
