"""Script stage: writes a script block by block from a premise."""

import re
from dataclasses import dataclass
from string import Template
from typing import List, Optional

from scriptqueue.log_routing import LogCallback
from scriptqueue.pipeline.base import Agent, BaseStage, StageResult

BLOCK_PROMPT = Template(
    "[LANGUAGE INSTRUCTION - CRITICAL AND MANDATORY]\n"
    "THE TEXT FOR THIS BLOCK MUST BE WRITTEN IN THE LANGUAGE: $language\n\n"
    "[MASTER SCRIPTWRITER PROMPT]\n$script_template\n\n"
    "[STORY CONTEXT SO FAR]\n$context\n\n"
    "[CURRENT TASK]\n# $block_name\n$instruction\n\n"
    "Use the following PREMISE (written in $language) as the basis for the whole story:\n"
    "--- PREMISE ---\n$premise\n--- END OF PREMISE ---\n\n"
    "Write ONLY the text for the block '$block_name' in $language."
)

FIRST_BLOCK_CONTEXT = "This is the first block."

_BLOCK_SEPARATOR = re.compile(r"[\r\n]*#")


@dataclass
class ScriptBlock:
    name: str
    instruction: str


def parse_block_structure(structure: str) -> List[ScriptBlock]:
    """Parse `# Name` headed sections into script blocks."""
    if not structure:
        return []

    blocks = []
    for section in _BLOCK_SEPARATOR.split(structure):
        if not section.strip():
            continue
        name, _, instruction = section.partition("\n")
        if not name.strip():
            continue
        blocks.append(ScriptBlock(name=name.strip(), instruction=instruction.strip()))
    return blocks


class ScriptStage(BaseStage):
    """Generates the blocks of one script sequentially.

    Each block prompt carries the text of every block written before it.
    """

    stage_type = "script-block"

    async def run(
        self,
        title: str,
        premise: str,
        language: str,
        agent: Agent,
        log_callback: Optional[LogCallback] = None,
    ) -> StageResult:
        blocks = parse_block_structure(agent.script_structure)
        if not blocks:
            return StageResult(error="No block structure defined for the agent")

        script = ""
        for block in blocks:
            prompt = BLOCK_PROMPT.safe_substitute(
                language=language,
                script_template=agent.script_template,
                context=script or FIRST_BLOCK_CONTEXT,
                block_name=block.name,
                instruction=block.instruction,
                premise=premise,
            )

            result = await self.submit(
                f"Block '{block.name}' for \"{title}\"",
                prompt,
                metadata={"task_title": title, "language": language, "block_name": block.name},
                log_callback=log_callback,
            )
            if not result.success:
                self.logger.warning(
                    "Script aborted",
                    title=title,
                    language=language,
                    block=block.name,
                    error=result.error,
                )
                return StageResult(error=result.error, cancelled=result.cancelled)

            script += ("\n\n" if script else "") + result.text

        return StageResult(text=script)
