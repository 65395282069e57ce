# pyright: strict
"""Type definitions for the pipeline package."""

from __future__ import annotations

from enum import Enum
from typing import TypeAlias

# Type aliases
StageId: TypeAlias = str
Timestamp: TypeAlias = float


class PipelineStage(Enum):
    """Pipeline processing stages."""

    INGEST = "ingest"
    FILTER = "filter"
    TRANSFORM = "transform"
    OUTPUT = "output"


class SchedulerState(Enum):
    """Lifecycle states of the scrape scheduler.

    The scheduler alternates between IDLE and RUNNING for as long as it lives
    and ends in the terminal STOPPED state.
    """

    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
