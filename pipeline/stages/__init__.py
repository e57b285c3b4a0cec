"""
The fixed chain of pipeline stages.
"""

from pipeline.stages.base import PipelineStage, StageResult
from pipeline.stages.initial_fetch import InitialFetchStage
from pipeline.stages.incremental_fetch import IncrementalFetchStage
from pipeline.stages.normalize import NormalizeStage
from pipeline.stages.enrich import EnrichStage
from pipeline.stages.publish import PublishStage
from pipeline.stages.retry import RetryStage

__all__ = [
    "PipelineStage",
    "StageResult",
    "InitialFetchStage",
    "IncrementalFetchStage",
    "NormalizeStage",
    "EnrichStage",
    "PublishStage",
    "RetryStage",
]
