# pyright: strict
"""Pipeline error types and error bookkeeping."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from .types import PipelineStage, StageId, Timestamp


class PipelineError(Exception):
    """Base exception for pipeline-related errors."""

    def __init__(
        self,
        message: str,
        stage: PipelineStage | None = None,
        stage_id: str | None = None,
    ) -> None:
        """Initialize pipeline error with context."""
        super().__init__(message)
        self.stage = stage
        self.stage_id = stage_id


class ConfigurationError(PipelineError):
    """Invalid or missing configuration, detected once at startup."""

    def __init__(self, message: str, setting: str | None = None) -> None:
        """Initialize configuration error for the offending setting."""
        super().__init__(message, None, setting)
        self.setting = setting


class FetchError(PipelineError):
    """The scrape endpoint could not be read; ends the current cycle only."""

    def __init__(self, message: str, url: str, status: int | None = None) -> None:
        """Initialize fetch error with the scraped URL and HTTP status, if any."""
        super().__init__(message, PipelineStage.INGEST, "scrape")
        self.url = url
        self.status = status


class DecodeError(PipelineError):
    """A metric family could not be decoded; only that family is skipped."""

    def __init__(self, message: str, family: str | None = None) -> None:
        """Initialize decode error, naming the family when it is known."""
        super().__init__(message, PipelineStage.INGEST, "decode")
        self.family = family


class FilterError(PipelineError):
    """Error during filter processing."""

    def __init__(self, message: str, filter_id: str) -> None:
        """Initialize filter error."""
        super().__init__(message, PipelineStage.FILTER, filter_id)


class TransformerError(PipelineError):
    """Error during transformation processing."""

    def __init__(self, message: str, transformer_id: str) -> None:
        """Initialize transformer error."""
        super().__init__(message, PipelineStage.TRANSFORM, transformer_id)


class PublishError(PipelineError):
    """CloudWatch did not accept a batch; the remaining batches still go out."""

    def __init__(self, message: str, output_id: str, batch_size: int = 0) -> None:
        """Initialize publish error with the size of the failed batch."""
        super().__init__(message, PipelineStage.OUTPUT, output_id)
        self.batch_size = batch_size


@dataclass(frozen=True)
class PipelineErrorEvent:
    """Record of an error that occurred during a pipeline cycle."""

    stage: PipelineStage
    """Pipeline stage where the error occurred."""

    stage_id: StageId
    """Specific component ID within the stage."""

    error_type: str
    """Type of error that occurred."""

    error_message: str
    """Human-readable error message."""

    timestamp: Timestamp = field(default_factory=time.time)
    """When this error occurred."""

    details: dict[str, Any] = field(default_factory=dict)
    """Additional error details and context."""


class PipelineErrorHandler:
    """Logs pipeline errors with context and keeps per-component counts.

    Errors are never retried here: the next scheduled cycle is the only retry
    the bridge performs.
    """

    def __init__(self) -> None:
        """Initialize empty error tracking."""
        self._error_counts: dict[str, int] = {}
        self._last_errors: dict[str, PipelineErrorEvent] = {}

    def handle_error(
        self,
        stage: PipelineStage,
        stage_id: StageId,
        exception: BaseException,
        **details: Any,
    ) -> PipelineErrorEvent:
        """Record and log an error, returning the error event."""
        error_key = f"{stage.value}.{stage_id}"
        self._error_counts[error_key] = self._error_counts.get(error_key, 0) + 1

        error_event = PipelineErrorEvent(
            stage=stage,
            stage_id=stage_id,
            error_type=type(exception).__name__,
            error_message=str(exception),
            details=details,
        )
        self._last_errors[error_key] = error_event

        logger.error(
            "Pipeline error occurred",
            error_type=error_event.error_type,
            error_message=error_event.error_message,
            stage=stage.value,
            stage_id=stage_id,
            error_count=self._error_counts[error_key],
            **details,
        )
        return error_event

    def get_total_errors(self) -> int:
        """Get the total number of errors across all stages."""
        return sum(self._error_counts.values())

    def get_error_summary(self) -> dict[str, Any]:
        """Get a summary of all errors."""
        return {
            "total_errors": self.get_total_errors(),
            "errors_by_stage": self._error_counts.copy(),
            "last_errors": {
                key: {
                    "error_type": error.error_type,
                    "error_message": error.error_message,
                    "timestamp": error.timestamp,
                }
                for key, error in self._last_errors.items()
            },
        }
