# pyright: strict
"""Per-cycle statistics and running totals for the bridge pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from loguru import logger


@dataclass
class CycleStats:
    """What one scrape-and-publish cycle did."""

    started_at: float = field(default_factory=time.time)
    families: int = 0
    samples: int = 0
    filtered: int = 0
    rejected: int = 0
    datapoints: int = 0
    published: int = 0
    failed: int = 0
    batches: int = 0
    failed_batches: int = 0
    duration_seconds: float = 0.0
    error: str | None = None
    """Why the cycle ended early, if it did."""

    @property
    def succeeded(self) -> bool:
        """Check whether the cycle fetched and published without any error."""
        return self.error is None and self.failed_batches == 0

    def as_log_context(self) -> dict[str, Any]:
        """Flatten the stats for structured logging."""
        return {
            "families": self.families,
            "samples": self.samples,
            "filtered": self.filtered,
            "rejected": self.rejected,
            "datapoints": self.datapoints,
            "published": self.published,
            "failed": self.failed,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
            "duration_ms": round(self.duration_seconds * 1000, 1),
        }


class PipelineStatsCollector:
    """Accumulates cycle statistics over the lifetime of a pipeline."""

    def __init__(self, pipeline_id: str = "pipeline") -> None:
        """Initialize empty totals for the pipeline."""
        self.pipeline_id = pipeline_id
        self.cycles = 0
        self.failed_cycles = 0
        self.published = 0
        self.failed = 0
        self.rejected = 0
        self.last_cycle: CycleStats | None = None

    def record_cycle(self, stats: CycleStats) -> None:
        """Add one finished cycle to the running totals."""
        self.cycles += 1
        if stats.error is not None:
            self.failed_cycles += 1
        self.published += stats.published
        self.failed += stats.failed
        self.rejected += stats.rejected
        self.last_cycle = stats
        logger.trace(
            "Cycle recorded",
            pipeline_id=self.pipeline_id,
            cycle=self.cycles,
            **stats.as_log_context(),
        )

    def get_summary(self) -> dict[str, Any]:
        """Get the running totals."""
        return {
            "pipeline_id": self.pipeline_id,
            "cycles": self.cycles,
            "failed_cycles": self.failed_cycles,
            "published": self.published,
            "failed": self.failed,
            "rejected": self.rejected,
        }
