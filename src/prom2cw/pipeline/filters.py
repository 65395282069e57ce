# pyright: strict
"""Filters deciding which metrics and which labels get published."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from prom2cw.models.metrics import RESERVED_LABELS

from .errors import FilterError
from .patterns import any_pattern_matches, find_matching_labels

if TYPE_CHECKING:
    from collections.abc import Sequence

    from prom2cw.models.config import PipelineConfig
    from prom2cw.models.metrics import Sample

    from .patterns import GlobPattern, MatcherRule


class Filter(ABC):
    """Base class for sample filters with decision logging."""

    def __init__(self, filter_id: str) -> None:
        """Initialize the filter with an identifier."""
        self.filter_id = filter_id

    @abstractmethod
    def should_process(self, sample: Sample) -> bool:
        """Determine if the sample should continue through the pipeline.

        Args:
            sample: The decoded sample to evaluate.

        Returns:
            True to keep the sample, False to drop it.

        """

    def __call__(self, sample: Sample) -> bool:
        """Apply the filter, wrapping unexpected failures in FilterError."""
        start_time = time.time()
        try:
            result = self.should_process(sample)
        except Exception as e:
            logger.error(
                "Filter error",
                filter_id=self.filter_id,
                metric=sample.name,
                error=str(e),
            )
            msg = f"Filter {self.filter_id} failed: {e}"
            raise FilterError(msg, self.filter_id) from e

        logger.trace(
            "Filter applied",
            filter_id=self.filter_id,
            metric=sample.name,
            result=result,
            duration_ms=(time.time() - start_time) * 1000,
        )
        return result


@dataclass(frozen=True)
class DimensionPolicy:
    """Which labels of one metric may become dimensions.

    ``None`` on either axis means that axis imposes no restriction.
    """

    include: frozenset[str] | None = None
    exclude: frozenset[str] | None = None

    def allows(self, label: str) -> bool:
        """Check whether a label may be published as a dimension."""
        if label in RESERVED_LABELS:
            return False
        # Exclusions take priority over inclusions
        if self.exclude is not None and label in self.exclude:
            return False
        if self.include is None:
            return True
        return label in self.include


class MetricFilter(Filter):
    """Include/exclude filter on metric names plus per-metric label rules."""

    def __init__(  # noqa: PLR0913
        self,
        filter_id: str = "metric-filter",
        *,
        include_metrics: Sequence[GlobPattern] = (),
        exclude_metrics: Sequence[GlobPattern] = (),
        include_dimensions: Sequence[MatcherRule] = (),
        exclude_dimensions: Sequence[MatcherRule] = (),
    ) -> None:
        """Initialize the filter with compiled patterns and matcher rules.

        Args:
            filter_id: Unique identifier for this filter.
            include_metrics: Only publish metrics matching one of these patterns.
                No patterns means every metric is eligible.
            exclude_metrics: Never publish metrics matching one of these patterns.
            include_dimensions: Ordered rules restricting a metric's dimensions
                to a label set; the first matching rule wins.
            exclude_dimensions: Ordered rules removing labels from a metric's
                dimensions; the first matching rule wins.

        """
        super().__init__(filter_id)
        self.include_metrics = tuple(include_metrics)
        self.exclude_metrics = tuple(exclude_metrics)
        self.include_dimensions = tuple(include_dimensions)
        self.exclude_dimensions = tuple(exclude_dimensions)

    @classmethod
    def from_config(cls, config: PipelineConfig) -> MetricFilter:
        """Build the filter from a resolved pipeline configuration."""
        return cls(
            include_metrics=config.include_metrics,
            exclude_metrics=config.exclude_metrics,
            include_dimensions=config.include_dimensions_for_metrics,
            exclude_dimensions=config.exclude_dimensions_for_metrics,
        )

    def should_publish_metric(self, name: str) -> bool:
        """Decide whether a metric name is eligible for publication."""
        if any_pattern_matches(self.exclude_metrics, name):
            return False
        if not self.include_metrics:
            return True
        return any_pattern_matches(self.include_metrics, name)

    def dimension_policy(self, metric_name: str) -> DimensionPolicy:
        """Look up the label rules that apply to a metric."""
        return DimensionPolicy(
            include=find_matching_labels(self.include_dimensions, metric_name),
            exclude=find_matching_labels(self.exclude_dimensions, metric_name),
        )

    def should_process(self, sample: Sample) -> bool:
        """Keep samples whose metric name is eligible for publication."""
        return self.should_publish_metric(sample.name)
