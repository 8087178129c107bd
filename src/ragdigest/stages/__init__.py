"""Pipeline stages, one module per stage."""

from .analysis import AnalysisStage
from .budget import BudgetEnforcer
from .consolidation import ConsolidationStreamer, parse_sse_line
from .relevance import RelevanceFilter, RelevanceResult
from .segmentation import LogicalSegmentation
from .synthesis import SynthesisStage, group_analyses

__all__ = [
    "AnalysisStage",
    "BudgetEnforcer",
    "ConsolidationStreamer",
    "LogicalSegmentation",
    "RelevanceFilter",
    "RelevanceResult",
    "SynthesisStage",
    "group_analyses",
    "parse_sse_line",
]
