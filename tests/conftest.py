# pyright: strict
"""Shared pytest fixtures for prom2cw tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from unittest.mock import AsyncMock, MagicMock

import pytest
from loguru import logger

from prom2cw.models.config import PipelineConfig
from prom2cw.models.metrics import MetricFamily, Sample
from prom2cw.outputs.cloudwatch import Output, PublishResult
from prom2cw.pipeline.errors import FetchError
from prom2cw.pipeline.filters import MetricFilter
from prom2cw.pipeline.patterns import compile_patterns, parse_matcher_rules
from prom2cw.pipeline.transformers import DataPointTransformer

NOW = 1_700_000_000.0


class FakeScrapeClient:
    """Scrape client that yields canned families, optionally failing midway."""

    def __init__(
        self,
        families: Sequence[MetricFamily] = (),
        *,
        error_after: int | None = None,
    ) -> None:
        self.url = "http://exporter:9100/metrics"
        self.families = list(families)
        self.error_after = error_after
        self.started = False
        self.fetches = 0
        self.start = AsyncMock(side_effect=self._start)
        self.stop = AsyncMock(side_effect=self._stop)

    async def _start(self) -> None:
        self.started = True

    async def _stop(self) -> None:
        self.started = False

    async def fetch(self) -> AsyncIterator[MetricFamily]:
        self.fetches += 1
        for index, family in enumerate(self.families):
            if self.error_after is not None and index == self.error_after:
                msg = f"GET request for URL {self.url!r} returned HTTP status 500"
                raise FetchError(msg, self.url, 500)
            yield family
        if self.error_after is not None and self.error_after >= len(self.families):
            msg = f"executing GET request for URL {self.url!r} failed"
            raise FetchError(msg, self.url)


def make_family(name: str, *samples: Sample, family_type: str = "gauge") -> MetricFamily:
    """Build a family from samples."""
    return MetricFamily(name=name, type=family_type, samples=tuple(samples))


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Capture loguru output, one formatted line per record."""
    messages: list[str] = []
    handler_id = logger.add(messages.append, level="TRACE", format="{level} {message}")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Create a minimal pipeline configuration."""
    return PipelineConfig(
        namespace="Test/Namespace",
        region="us-east-1",
        scrape_url="http://exporter:9100/metrics",
    )


@pytest.fixture
def metric_filter() -> MetricFilter:
    """Create a filter with no restrictions."""
    return MetricFilter()


@pytest.fixture
def transformer(metric_filter: MetricFilter) -> DataPointTransformer:
    """Create a transformer with no extra dimensions."""
    return DataPointTransformer(metric_filter)


@pytest.fixture
def make_filter() -> Callable[..., MetricFilter]:
    """Create a filter from configuration-style strings."""

    def _make(
        include: str = "",
        exclude: str = "",
        include_dims: str = "",
        exclude_dims: str = "",
    ) -> MetricFilter:
        return MetricFilter(
            include_metrics=compile_patterns(include),
            exclude_metrics=compile_patterns(exclude),
            include_dimensions=parse_matcher_rules(include_dims),
            exclude_dimensions=parse_matcher_rules(exclude_dims),
        )

    return _make


@pytest.fixture
def gauge_family() -> MetricFamily:
    """Create a gauge family with two samples."""
    return make_family(
        "temperature_celsius",
        Sample("temperature_celsius", {"room": "kitchen"}, 21.5, NOW),
        Sample("temperature_celsius", {"room": "garage"}, 12.0, NOW),
    )


@pytest.fixture
def mock_output() -> MagicMock:
    """Create mock output that accepts every data point."""
    output_mock = MagicMock(spec=Output)
    output_mock.output_id = "test-output"
    output_mock.start = AsyncMock()
    output_mock.stop = AsyncMock()

    async def _publish(datapoints: Sequence[object]) -> PublishResult:
        return PublishResult(
            published=len(datapoints),
            batches=(len(datapoints) + 9) // 10,
        )

    output_mock.publish = AsyncMock(side_effect=_publish)
    return output_mock
