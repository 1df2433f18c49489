"""Script generation pipeline.

The stages submit jobs to the queue in order:

1. PremiseStage - premise per title in the primary language
2. AdaptationStage - premise adapted to each additional language
3. ScriptStage - script written block by block from the premise
"""

from .adaptation import AdaptationStage
from .base import Agent, BaseStage, ScriptResult, StageResult
from .premise import PremiseStage
from .runner import ScriptPipeline
from .script import ScriptStage, parse_block_structure

__all__ = [
    "AdaptationStage",
    "Agent",
    "BaseStage",
    "PremiseStage",
    "ScriptPipeline",
    "ScriptResult",
    "ScriptStage",
    "StageResult",
    "parse_block_structure",
]
