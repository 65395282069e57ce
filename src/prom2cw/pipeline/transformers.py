# pyright: strict
"""Conversion of decoded samples into CloudWatch data points."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from prom2cw.models.metrics import (
    DEFAULT_UNIT,
    HIGH_RES_LABEL,
    HIGH_RESOLUTION,
    MAX_DIMENSIONS,
    STANDARD_RESOLUTION,
    UNIT_LABEL,
    DataPoint,
    Dimension,
)

from .errors import FilterError, TransformerError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from prom2cw.models.config import PipelineConfig
    from prom2cw.models.metrics import MetricFamily, Sample

    from .filters import MetricFilter

# CloudWatch rejects values outside 2e-360 to 2e360 (base 2) and the special
# values NaN, +Infinity and -Infinity.
VALUE_TOO_SMALL = 2.0**-260
VALUE_TOO_LARGE = 2.0**260


def valid_value(value: float) -> bool:
    """Check that CloudWatch will accept the value."""
    if math.isnan(value) or math.isinf(value):
        return False
    # Zero first, so it is not mistaken for a value that is too small
    if value == 0.0:
        return True
    magnitude = abs(value)
    return VALUE_TOO_SMALL < magnitude < VALUE_TOO_LARGE


def get_resolution(sample: Sample, *, force_high_res: bool = False) -> int:
    """Return 1 for high-resolution samples, 60 otherwise."""
    if force_high_res or sample.has_label(HIGH_RES_LABEL):
        return HIGH_RESOLUTION
    return STANDARD_RESOLUTION


def get_unit(sample: Sample) -> str:
    """Return the unit requested through the unit label, or the unitless marker."""
    return sample.labels.get(UNIT_LABEL, DEFAULT_UNIT)


class Transformer(ABC):
    """Base class for sample transformers."""

    def __init__(self, transformer_id: str) -> None:
        """Initialize the transformer with an identifier."""
        self.transformer_id = transformer_id

    @abstractmethod
    def transform(self, sample: Sample) -> list[DataPoint]:
        """Transform one sample into zero or more data points.

        Raises:
            TransformerError: If an error occurs during transformation.

        """

    def __call__(self, sample: Sample) -> list[DataPoint]:
        """Make the transformer callable."""
        try:
            return self.transform(sample)
        except TransformerError:
            raise
        except Exception as e:
            logger.error(
                "Transformer error",
                transformer_id=self.transformer_id,
                metric=sample.name,
                error=str(e),
            )
            msg = f"Transformer {self.transformer_id} failed: {e}"
            raise TransformerError(msg, self.transformer_id) from e


class DataPointTransformer(Transformer):
    """Turns a Prometheus sample into CloudWatch data points.

    The output is a pure function of the sample and the configuration: label
    names are sorted before truncation, so a metric with more labels than
    CloudWatch accepts always keeps the same, lexicographically first ones.
    """

    def __init__(
        self,
        metric_filter: MetricFilter,
        *,
        additional_dimensions: Mapping[str, str] | None = None,
        replace_dimensions: Mapping[str, str] | None = None,
        force_high_res: bool = False,
        transformer_id: str = "datapoint",
    ) -> None:
        """Initialize the transformer.

        Args:
            metric_filter: Supplies the per-metric dimension policy.
            additional_dimensions: Dimensions appended to every data point.
            replace_dimensions: Dimension name to substitute value. When set,
                every sample also produces an aggregate data point carrying the
                substituted values.
            force_high_res: Publish everything at 1 second resolution.
            transformer_id: Unique identifier for this transformer.

        """
        super().__init__(transformer_id)
        self.metric_filter = metric_filter
        self.additional_dimensions = tuple(
            Dimension(name, value)
            for name, value in sorted((additional_dimensions or {}).items())
        )
        self._additional_names = frozenset(d.name for d in self.additional_dimensions)
        self.replace_dimensions = dict(replace_dimensions or {})
        self.force_high_res = force_high_res
        self.max_label_dimensions = MAX_DIMENSIONS - len(self.additional_dimensions)

    @classmethod
    def from_config(
        cls, config: PipelineConfig, metric_filter: MetricFilter
    ) -> DataPointTransformer:
        """Build the transformer from a resolved pipeline configuration."""
        return cls(
            metric_filter,
            additional_dimensions=config.additional_dimensions,
            replace_dimensions=config.replace_dimensions,
            force_high_res=config.force_high_res,
        )

    def label_dimensions(self, sample: Sample) -> tuple[Dimension, ...]:
        """Select, order and truncate the sample's labels as dimensions."""
        policy = self.metric_filter.dimension_policy(sample.name)
        # Additional dimensions override labels of the same name
        names = sorted(
            label
            for label in sample.labels
            if policy.allows(label) and label not in self._additional_names
        )
        dimensions = [
            Dimension(name, sample.labels[name]) for name in names if sample.labels[name]
        ]
        return tuple(dimensions[: self.max_label_dimensions])

    def replaced_dimensions(self, dimensions: tuple[Dimension, ...]) -> tuple[Dimension, ...]:
        """Substitute configured values into an aggregate dimension set."""
        return tuple(
            Dimension(dimension.name, self.replace_dimensions.get(dimension.name, dimension.value))
            for dimension in dimensions
        )

    def transform(self, sample: Sample) -> list[DataPoint]:
        """Convert one sample into one or two data points.

        Samples without a metric name or with a value CloudWatch rejects produce
        no data points.
        """
        if not sample.name:
            return []

        if not valid_value(sample.value):
            logger.debug("Rejected sample value", metric=sample.name, value=sample.value)
            return []

        labels = self.label_dimensions(sample)
        datapoint = DataPoint(
            metric_name=sample.name,
            value=sample.value,
            timestamp=sample.timestamp,
            dimensions=labels + self.additional_dimensions,
            storage_resolution=get_resolution(sample, force_high_res=self.force_high_res),
            unit=get_unit(sample),
        )

        if not self.replace_dimensions or not labels:
            return [datapoint]

        aggregate = datapoint.with_dimensions(
            self.replaced_dimensions(labels) + self.additional_dimensions
        )
        return [datapoint, aggregate]


@dataclass
class TransformResult:
    """Data points produced from one scrape, with bookkeeping counts."""

    datapoints: list[DataPoint] = field(default_factory=list)
    families: int = 0
    samples: int = 0
    filtered: int = 0
    rejected: int = 0
    errors: int = 0


def transform_family(
    family: MetricFamily,
    metric_filter: MetricFilter,
    transformer: Transformer,
    result: TransformResult,
) -> None:
    """Filter and transform the samples of one family into ``result``.

    A sample whose filter or transformer fails is skipped; the rest of the
    family is still converted.
    """
    result.families += 1
    for sample in family.samples:
        result.samples += 1
        try:
            if not metric_filter(sample):
                result.filtered += 1
                continue
            datapoints = transformer(sample)
        except (FilterError, TransformerError) as e:
            result.errors += 1
            logger.warning(
                "Skipping sample after component failure",
                metric=sample.name,
                stage_id=e.stage_id,
                error=str(e),
            )
            continue

        if not datapoints:
            result.rejected += 1
        result.datapoints.extend(datapoints)


def transform_families(
    families: Iterable[MetricFamily],
    metric_filter: MetricFilter,
    transformer: Transformer,
) -> TransformResult:
    """Filter and transform every sample of the scraped families, in order."""
    result = TransformResult()
    for family in families:
        transform_family(family, metric_filter, transformer, result)
    return result
