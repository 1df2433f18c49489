"""Base stage and data types of the script generation pipeline."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from scriptqueue.errors import QueueError, QueueNotActiveError
from scriptqueue.log_routing import LogCallback
from scriptqueue.queue_manager import QueueManager
from scriptqueue.waiter import JobWaiter


@dataclass
class Agent:
    """Prompt configuration of a script-writing agent."""

    premise_template: str
    script_template: str
    script_structure: str
    primary_language: str
    adaptation_template: str = ""
    additional_languages: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Agent":
        return cls(
            premise_template=data["premise_template"],
            script_template=data["script_template"],
            script_structure=data["script_structure"],
            primary_language=data["primary_language"],
            adaptation_template=data.get("adaptation_template", ""),
            additional_languages=list(data.get("additional_languages") or []),
        )

    @property
    def languages(self) -> List[str]:
        """Primary language first, then additional languages without duplicates."""
        languages = [self.primary_language]
        for language in self.additional_languages:
            if language and language not in languages:
                languages.append(language)
        return languages


@dataclass
class StageResult:
    """Text produced by one stage, or why it is missing."""

    text: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.text is not None and self.error is None


@dataclass
class ScriptResult:
    title: str
    language: str
    premise: Optional[str] = None
    script: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.script is not None and self.error is None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "language": self.language,
            "premise": self.premise,
            "script": self.script,
            "error": self.error,
            "cancelled": self.cancelled,
        }


def prefixed(log_callback: Optional[LogCallback], prefix: str) -> Optional[LogCallback]:
    """Wrap a log callback so every message carries a context prefix."""
    if log_callback is None:
        return None

    def log(message: str, level: str = "info") -> None:
        log_callback(f"[{prefix}] {message}", level)

    return log


class BaseStage:
    """Submits one kind of generation job and waits for its result."""

    # Override in subclasses
    stage_type: str = "base"

    def __init__(self, queue: QueueManager, waiter: JobWaiter):
        """Initialize stage.

        Args:
            queue: Queue manager that runs the jobs
            waiter: Waiter used to await each job
        """
        self.queue = queue
        self.waiter = waiter
        self.logger = structlog.get_logger().bind(stage=self.stage_type)

    async def submit(
        self,
        title: str,
        prompt: str,
        metadata: Optional[Dict[str, Any]] = None,
        log_callback: Optional[LogCallback] = None,
    ) -> StageResult:
        """Queue one job and wait for it.

        Queue errors are folded into the returned StageResult.
        """
        job_ids = self.queue.add_jobs(
            [
                {
                    "title": title,
                    "prompt": prompt,
                    "metadata": {"type": self.stage_type, **(metadata or {})},
                }
            ]
        )

        try:
            text = await self.waiter.wait(job_ids[0], log_callback=log_callback)
        except QueueNotActiveError as e:
            self.logger.info("Stage cancelled", job_id=job_ids[0], title=title)
            return StageResult(error=str(e), cancelled=True)
        except QueueError as e:
            self.logger.warning("Stage failed", job_id=job_ids[0], title=title, error=str(e))
            return StageResult(error=str(e))

        return StageResult(text=text)

