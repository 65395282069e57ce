# pyright: strict
"""Tests for sample to data point transformation."""

from __future__ import annotations

import math
from collections.abc import Callable

import pytest

from conftest import NOW, make_family
from prom2cw.models.metrics import DataPoint, Dimension, Sample
from prom2cw.pipeline.errors import TransformerError
from prom2cw.pipeline.filters import MetricFilter
from prom2cw.pipeline.transformers import (
    VALUE_TOO_LARGE,
    VALUE_TOO_SMALL,
    DataPointTransformer,
    get_resolution,
    get_unit,
    transform_families,
    valid_value,
)


def dims(datapoint: DataPoint) -> list[tuple[str, str]]:
    """Return the dimensions as plain tuples."""
    return [(d.name, d.value) for d in datapoint.dimensions]


class TestValidValue:
    """Test CloudWatch value validation."""

    @pytest.mark.parametrize(
        "value",
        [math.nan, math.inf, -math.inf, VALUE_TOO_LARGE, -VALUE_TOO_LARGE, VALUE_TOO_SMALL, 1e-300],
    )
    def test_rejected(self, value: float) -> None:
        """Test values CloudWatch would not accept."""
        assert not valid_value(value)

    @pytest.mark.parametrize("value", [0.0, -0.0, 1.0, -42.5, 1e50, 1e-50])
    def test_accepted(self, value: float) -> None:
        """Test values CloudWatch accepts, including zero."""
        assert valid_value(value)


class TestResolutionAndUnit:
    """Test control labels."""

    def test_high_res_label(self) -> None:
        """Test that the high resolution label selects 1 second storage."""
        assert get_resolution(Sample("foo", {"__cw_high_res": ""}, 1.0)) == 1
        assert get_resolution(Sample("foo", {}, 1.0)) == 60

    def test_force_high_res(self) -> None:
        """Test that the global flag forces 1 second storage."""
        assert get_resolution(Sample("foo", {}, 1.0), force_high_res=True) == 1

    def test_unit(self) -> None:
        """Test the unit label and its default."""
        assert get_unit(Sample("foo", {"__cw_unit": "Seconds"}, 1.0)) == "Seconds"
        assert get_unit(Sample("foo", {}, 1.0)) == "None"


class TestDataPointTransformer:
    """Test DataPointTransformer."""

    def test_no_labels(self, transformer: DataPointTransformer) -> None:
        """Test that a sample without labels yields a dimensionless data point."""
        datapoints = transformer(Sample("foo", {}, 3.0, NOW))

        assert len(datapoints) == 1
        assert datapoints[0].metric_name == "foo"
        assert datapoints[0].dimensions == ()
        assert datapoints[0].value == 3.0
        assert datapoints[0].timestamp == NOW
        assert datapoints[0].storage_resolution == 60
        assert datapoints[0].unit == "None"

    def test_reserved_labels_only(self, transformer: DataPointTransformer) -> None:
        """Test that reserved labels never become dimensions."""
        sample = Sample("foo", {"__cw_high_res": "1", "__cw_unit": "Bytes"}, 3.0, NOW)

        (datapoint,) = transformer(sample)

        assert datapoint.dimensions == ()
        assert datapoint.storage_resolution == 1
        assert datapoint.unit == "Bytes"

    def test_labels_sorted(self, transformer: DataPointTransformer) -> None:
        """Test that dimensions come out in label name order."""
        (datapoint,) = transformer(Sample("foo", {"vpc": "v1", "host": "h1"}, 1.0, NOW))

        assert dims(datapoint) == [("host", "h1"), ("vpc", "v1")]

    def test_truncated_to_first_ten(self, transformer: DataPointTransformer) -> None:
        """Test that only the lexicographically first ten labels survive."""
        labels = {f"label_{i:02d}": str(i) for i in reversed(range(15))}

        (datapoint,) = transformer(Sample("foo", labels, 1.0, NOW))

        assert [d.name for d in datapoint.dimensions] == [f"label_{i:02d}" for i in range(10)]

    def test_additional_dimensions_reserve_slots(self, metric_filter: MetricFilter) -> None:
        """Test that global dimensions take slots away from labels."""
        transformer = DataPointTransformer(
            metric_filter, additional_dimensions={"env": "prod", "cluster": "c1"}
        )
        labels = {f"label_{i:02d}": str(i) for i in range(12)}

        (datapoint,) = transformer(Sample("foo", labels, 1.0, NOW))

        names = [d.name for d in datapoint.dimensions]
        assert len(names) == 10
        assert names[:8] == [f"label_{i:02d}" for i in range(8)]
        assert names[8:] == ["cluster", "env"]

    def test_additional_dimension_overrides_label(self, metric_filter: MetricFilter) -> None:
        """Test that a label named like a global dimension is not duplicated."""
        transformer = DataPointTransformer(metric_filter, additional_dimensions={"env": "prod"})

        (datapoint,) = transformer(Sample("foo", {"env": "dev", "host": "h1"}, 1.0, NOW))

        assert dims(datapoint) == [("host", "h1"), ("env", "prod")]

    def test_empty_label_values_dropped(self, transformer: DataPointTransformer) -> None:
        """Test that labels with empty values are not published."""
        (datapoint,) = transformer(Sample("foo", {"host": "", "vpc": "v1"}, 1.0, NOW))

        assert dims(datapoint) == [("vpc", "v1")]

    def test_dimension_policy_applied(self, make_filter: Callable[..., MetricFilter]) -> None:
        """Test per-metric include and exclude rules."""
        transformer = DataPointTransformer(
            make_filter(include_dims="http_*=method,code,path", exclude_dims="http_*=path")
        )
        sample = Sample(
            "http_requests_total",
            {"method": "GET", "code": "200", "path": "/", "instance": "a"},
            1.0,
            NOW,
        )

        (datapoint,) = transformer(sample)

        assert dims(datapoint) == [("code", "200"), ("method", "GET")]

    def test_infinite_value_dropped(self, transformer: DataPointTransformer) -> None:
        """Test that a rejected value yields no data points."""
        assert transformer(Sample("foo", {"host": "h1"}, math.inf, NOW)) == []

    def test_nameless_sample_dropped(self, transformer: DataPointTransformer) -> None:
        """Test that a sample without a metric name yields no data points."""
        assert transformer(Sample("", {"host": "h1"}, 1.0, NOW)) == []

    def test_replace_dimensions_emits_aggregate(self, metric_filter: MetricFilter) -> None:
        """Test that substitution adds a rolled-up data point."""
        transformer = DataPointTransformer(metric_filter, replace_dimensions={"host": "ALL"})

        original, aggregate = transformer(Sample("foo", {"host": "h1", "vpc": "v1"}, 2.0, NOW))

        assert dims(original) == [("host", "h1"), ("vpc", "v1")]
        assert dims(aggregate) == [("host", "ALL"), ("vpc", "v1")]
        assert aggregate.metric_name == original.metric_name
        assert aggregate.value == original.value
        assert aggregate.timestamp == original.timestamp
        assert aggregate.storage_resolution == original.storage_resolution
        assert aggregate.unit == original.unit

    def test_replace_dimensions_without_labels(self, metric_filter: MetricFilter) -> None:
        """Test that a dimensionless sample gets no aggregate."""
        transformer = DataPointTransformer(metric_filter, replace_dimensions={"host": "ALL"})

        assert len(transformer(Sample("foo", {}, 2.0, NOW))) == 1

    def test_idempotent(self, metric_filter: MetricFilter) -> None:
        """Test that the same sample always yields identical data points."""
        transformer = DataPointTransformer(
            metric_filter,
            additional_dimensions={"env": "prod"},
            replace_dimensions={"host": "ALL"},
        )
        sample = Sample("foo", {"host": "h1", "a": "1", "z": "2"}, 5.0, NOW)

        assert transformer(sample) == transformer(sample)

    def test_dimension_names_unique_and_sorted_when_sorted(
        self, metric_filter: MetricFilter
    ) -> None:
        """Test that sorted dimension names are strictly increasing."""
        transformer = DataPointTransformer(
            metric_filter, additional_dimensions={"host": "override", "env": "prod"}
        )
        labels = {f"l{i}": "v" for i in range(12)} | {"host": "h1"}

        for datapoint in transformer(Sample("foo", labels, 1.0, NOW)):
            names = sorted(d.name for d in datapoint.dimensions)
            assert all(a < b for a, b in zip(names, names[1:], strict=False))

    def test_unexpected_failure_wrapped(self, transformer: DataPointTransformer) -> None:
        """Test that unexpected errors surface as TransformerError."""
        sample = Sample("foo", {}, 1.0, NOW)
        object.__setattr__(sample, "labels", None)

        with pytest.raises(TransformerError) as exc_info:
            transformer(sample)

        assert exc_info.value.stage_id == "datapoint"


class TestTransformFamilies:
    """Test transforming whole scrapes."""

    def test_counts(self, make_filter: Callable[..., MetricFilter]) -> None:
        """Test the bookkeeping across several families."""
        metric_filter = make_filter(exclude="go_*")
        transformer = DataPointTransformer(metric_filter)
        families = [
            make_family(
                "node_load1",
                Sample("node_load1", {}, 0.5, NOW),
                Sample("node_load1", {"cpu": "1"}, math.nan, NOW),
            ),
            make_family("go_goroutines", Sample("go_goroutines", {}, 12.0, NOW)),
        ]

        result = transform_families(families, metric_filter, transformer)

        assert result.families == 2
        assert result.samples == 3
        assert result.filtered == 1
        assert result.rejected == 1
        assert result.errors == 0
        assert [d.metric_name for d in result.datapoints] == ["node_load1"]

    def test_order_preserved(
        self, metric_filter: MetricFilter, transformer: DataPointTransformer
    ) -> None:
        """Test that data points follow sample order."""
        families = [
            make_family("b", Sample("b", {}, 1.0, NOW)),
            make_family("a", Sample("a", {}, 1.0, NOW), Sample("a", {"x": "1"}, 2.0, NOW)),
        ]

        result = transform_families(families, metric_filter, transformer)

        assert [(d.metric_name, d.value) for d in result.datapoints] == [
            ("b", 1.0),
            ("a", 1.0),
            ("a", 2.0),
        ]
        assert result.datapoints[2].dimensions == (Dimension("x", "1"),)

    def test_failing_sample_skipped(self, metric_filter: MetricFilter) -> None:
        """Test that one broken sample does not stop the rest."""
        transformer = DataPointTransformer(metric_filter)
        broken = Sample("broken", {}, 1.0, NOW)
        object.__setattr__(broken, "labels", None)
        family = make_family("mixed", broken, Sample("fine", {}, 1.0, NOW))

        result = transform_families([family], metric_filter, transformer)

        assert result.errors == 1
        assert [d.metric_name for d in result.datapoints] == ["fine"]
