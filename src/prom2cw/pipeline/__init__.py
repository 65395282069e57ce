# pyright: strict
"""Pipeline package.

Filters, transformers and the engine that runs one scrape-and-publish cycle
per scheduler tick.
"""

from .core import Pipeline, Scheduler
from .errors import (
    ConfigurationError,
    DecodeError,
    FetchError,
    FilterError,
    PipelineError,
    PipelineErrorEvent,
    PipelineErrorHandler,
    PublishError,
    TransformerError,
)
from .filters import DimensionPolicy, Filter, MetricFilter
from .patterns import GlobPattern, MatcherRule, compile_pattern, parse_matcher_rules
from .stats import CycleStats, PipelineStatsCollector
from .transformers import DataPointTransformer, TransformResult, Transformer, transform_families
from .types import PipelineStage, SchedulerState

__all__ = [  # noqa: RUF022
    # Base interfaces
    "Filter",
    "Transformer",
    # Core pipeline components
    "Pipeline",
    "Scheduler",
    "MetricFilter",
    "DimensionPolicy",
    "DataPointTransformer",
    "TransformResult",
    "transform_families",
    "GlobPattern",
    "MatcherRule",
    "compile_pattern",
    "parse_matcher_rules",
    # Errors
    "PipelineError",
    "ConfigurationError",
    "FetchError",
    "DecodeError",
    "FilterError",
    "TransformerError",
    "PublishError",
    "PipelineErrorEvent",
    "PipelineErrorHandler",
    # Statistics and types
    "CycleStats",
    "PipelineStatsCollector",
    "PipelineStage",
    "SchedulerState",
]
