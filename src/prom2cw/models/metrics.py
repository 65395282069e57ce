# pyright: strict
"""Value types flowing through the scrape, transform and publish stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

METRIC_NAME_LABEL = "__name__"
HIGH_RES_LABEL = "__cw_high_res"
UNIT_LABEL = "__cw_unit"

RESERVED_LABELS = frozenset({METRIC_NAME_LABEL, HIGH_RES_LABEL, UNIT_LABEL})
"""Labels that never become CloudWatch dimensions."""

DEFAULT_UNIT = "None"
HIGH_RESOLUTION = 1
STANDARD_RESOLUTION = 60
MAX_DIMENSIONS = 10


@dataclass(frozen=True)
class Sample:
    """A single observed measurement extracted from a scrape."""

    name: str
    """Metric name (the value of the ``__name__`` label)."""

    labels: Mapping[str, str] = field(default_factory=dict)
    """Label name to label value, without the metric-name label."""

    value: float = 0.0
    """Sampled value."""

    timestamp: float = 0.0
    """Observation time in seconds since the epoch."""

    def __post_init__(self) -> None:
        """Freeze the label mapping so samples stay immutable."""
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))

    def has_label(self, label: str) -> bool:
        """Check whether the sample carries a label, whatever its value."""
        return label in self.labels


@dataclass(frozen=True)
class MetricFamily:
    """Samples sharing a metric family name, as decoded from one scrape."""

    name: str
    type: str = "untyped"
    help: str = ""
    samples: tuple[Sample, ...] = ()

    def __len__(self) -> int:
        """Return the number of samples in the family."""
        return len(self.samples)


@dataclass(frozen=True, order=True)
class Dimension:
    """A name/value pair attached to a published data point."""

    name: str
    value: str

    def to_cloudwatch(self) -> dict[str, str]:
        """Render the dimension in the shape PutMetricData expects."""
        return {"Name": self.name, "Value": self.value}


@dataclass(frozen=True)
class DataPoint:
    """A CloudWatch metric datum ready to be batched."""

    metric_name: str
    value: float
    timestamp: float
    dimensions: tuple[Dimension, ...] = ()
    storage_resolution: int = STANDARD_RESOLUTION
    unit: str = DEFAULT_UNIT

    def __post_init__(self) -> None:
        """Enforce the CloudWatch dimension ceiling."""
        if len(self.dimensions) > MAX_DIMENSIONS:
            msg = (
                f"Data point {self.metric_name} has {len(self.dimensions)} dimensions, "
                f"at most {MAX_DIMENSIONS} are allowed"
            )
            raise ValueError(msg)

    def with_dimensions(self, dimensions: tuple[Dimension, ...]) -> DataPoint:
        """Return a copy of this data point carrying different dimensions."""
        return DataPoint(
            metric_name=self.metric_name,
            value=self.value,
            timestamp=self.timestamp,
            dimensions=dimensions,
            storage_resolution=self.storage_resolution,
            unit=self.unit,
        )

    def to_cloudwatch(self) -> dict[str, Any]:
        """Render the data point as a ``MetricDatum`` for boto3."""
        return {
            "MetricName": self.metric_name,
            "Dimensions": [dimension.to_cloudwatch() for dimension in self.dimensions],
            "Timestamp": datetime.fromtimestamp(self.timestamp, tz=UTC),
            "Value": self.value,
            "StorageResolution": self.storage_resolution,
            "Unit": self.unit,
        }
