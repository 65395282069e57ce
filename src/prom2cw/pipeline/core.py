# pyright: strict
"""Core pipeline engine and its fixed-interval scheduler."""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING, Self

from loguru import logger

from .errors import FetchError, PipelineError, PipelineErrorHandler
from .stats import CycleStats, PipelineStatsCollector
from .transformers import TransformResult, transform_family
from .types import PipelineStage, SchedulerState

if TYPE_CHECKING:
    from prom2cw.models.metrics import MetricFamily
    from prom2cw.outputs.cloudwatch import Output
    from prom2cw.receiver.scrape import ScrapeClient

    from .filters import MetricFilter
    from .transformers import Transformer

# Enough room for every family of a typical scrape, so the fetch never waits
# on extraction.
QUEUE_SIZE = 1024


class Pipeline:
    """One scrape-filter-transform-publish pathway.

    The pipeline owns its scrape client and its output: ``start`` opens both,
    ``stop`` releases both, and every ``run_cycle`` in between reuses them.
    A cycle is the unit of failure. A broken scrape ends the cycle without
    publishing anything, a rejected batch only loses that batch.
    """

    def __init__(  # noqa: PLR0913
        self,
        scrape_client: ScrapeClient,
        metric_filter: MetricFilter,
        transformer: Transformer,
        output: Output,
        *,
        pipeline_id: str = "prom2cw",
        stats_collector: PipelineStatsCollector | None = None,
        error_handler: PipelineErrorHandler | None = None,
    ) -> None:
        """Initialize the pipeline with its processing components.

        Args:
            scrape_client: Fetches and decodes the exposition payload.
            metric_filter: Decides which samples are published.
            transformer: Turns samples into CloudWatch data points.
            output: Delivers the data points of each cycle.
            pipeline_id: Identifier used in logging and statistics.
            stats_collector: Running totals across cycles.
            error_handler: Records errors raised while running cycles.

        """
        self.pipeline_id = pipeline_id
        self.scrape_client = scrape_client
        self.metric_filter = metric_filter
        self.transformer = transformer
        self.output = output
        self.stats_collector = stats_collector or PipelineStatsCollector(pipeline_id)
        self.error_handler = error_handler or PipelineErrorHandler()
        self._is_started = False

    @property
    def is_started(self) -> bool:
        """Check if the pipeline is started."""
        return self._is_started

    async def start(self) -> None:
        """Open the scrape session and the CloudWatch client.

        Raises:
            PipelineError: If either component fails to start. Whatever was
                already started is released again.

        """
        if self._is_started:
            return

        logger.info("Starting pipeline", pipeline_id=self.pipeline_id)
        try:
            await self.scrape_client.start()
            await self.output.start()
        except PipelineError:
            await self._release()
            raise
        except (OSError, ValueError, RuntimeError) as e:
            await self._release()
            logger.error(
                "Failed to start pipeline component",
                pipeline_id=self.pipeline_id,
                error=str(e),
            )
            msg = f"Failed to start pipeline {self.pipeline_id}: {e}"
            raise PipelineError(msg) from e

        self._is_started = True
        logger.info("Pipeline started successfully", pipeline_id=self.pipeline_id)

    async def stop(self) -> None:
        """Release the scrape session and the CloudWatch client."""
        if not self._is_started:
            return

        logger.info("Stopping pipeline", pipeline_id=self.pipeline_id)
        await self._release()
        self._is_started = False
        logger.info("Pipeline stopped", **self.stats_collector.get_summary())
        error_summary = self.error_handler.get_error_summary()
        if error_summary["total_errors"]:
            logger.info(
                "Pipeline errors since start",
                pipeline_id=self.pipeline_id,
                total_errors=error_summary["total_errors"],
                errors_by_stage=error_summary["errors_by_stage"],
                last_errors=error_summary["last_errors"],
            )

    async def _release(self) -> None:
        try:
            await self.scrape_client.stop()
        except (OSError, RuntimeError) as e:
            logger.warning(
                "Error stopping scrape client", pipeline_id=self.pipeline_id, error=str(e)
            )
        try:
            await self.output.stop()
        except (OSError, RuntimeError) as e:
            logger.warning(
                "Error stopping output",
                pipeline_id=self.pipeline_id,
                output_id=self.output.output_id,
                error=str(e),
            )

    async def _receive(self, queue: asyncio.Queue[MetricFamily | None]) -> None:
        """Feed fetched families into the queue, ending with None."""
        try:
            async with contextlib.aclosing(self.scrape_client.fetch()) as families:
                async for family in families:
                    await queue.put(family)
        except Exception:
            await queue.put(None)
            raise
        await queue.put(None)

    async def _extract(self, stats: CycleStats) -> TransformResult:
        """Fetch the families and transform them as they arrive.

        Raises:
            FetchError: If the scrape fails at any point.

        """
        result = TransformResult()
        queue: asyncio.Queue[MetricFamily | None] = asyncio.Queue(maxsize=QUEUE_SIZE)
        producer = asyncio.create_task(self._receive(queue))
        try:
            while (family := await queue.get()) is not None:
                transform_family(family, self.metric_filter, self.transformer, result)
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer
            stats.families = result.families
            stats.samples = result.samples
            stats.filtered = result.filtered
            stats.rejected = result.rejected
        return result

    async def run_cycle(self) -> CycleStats:
        """Run one complete scrape-and-publish cycle.

        Returns:
            What the cycle did. When the scrape failed, ``error`` holds the
            reason and nothing was published.

        Raises:
            PipelineError: If the pipeline is not started.

        """
        if not self._is_started:
            msg = f"Pipeline {self.pipeline_id} not started"
            raise PipelineError(msg)

        stats = CycleStats()
        start_time = time.perf_counter()
        try:
            try:
                result = await self._extract(stats)
            except FetchError as e:
                self.error_handler.handle_error(
                    PipelineStage.INGEST,
                    e.stage_id or "scrape",
                    e,
                    pipeline_id=self.pipeline_id,
                    url=e.url,
                    status=e.status,
                    families_discarded=stats.families,
                )
                stats.error = str(e)
                return stats

            stats.datapoints = len(result.datapoints)
            if not result.datapoints:
                logger.debug("No data points to publish", pipeline_id=self.pipeline_id)
                return stats

            published = await self.output.publish(result.datapoints)
            for error in published.errors:
                self.error_handler.handle_error(
                    PipelineStage.OUTPUT,
                    error.stage_id or self.output.output_id,
                    error,
                    pipeline_id=self.pipeline_id,
                    batch_size=error.batch_size,
                )
            stats.published = published.published
            stats.failed = published.failed
            stats.batches = published.batches
            stats.failed_batches = published.failed_batches
            return stats
        finally:
            stats.duration_seconds = time.perf_counter() - start_time
            self.stats_collector.record_cycle(stats)

    async def __aenter__(self) -> Self:
        """Start the pipeline on entering the context."""
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        """Stop the pipeline on leaving the context."""
        await self.stop()


class Scheduler:
    """Runs a pipeline cycle on every tick of a fixed-interval timer.

    Ticks fall on multiples of ``interval`` from the moment ``run`` starts.
    A cycle that outlasts the interval absorbs the ticks it missed, so cycles
    never overlap and never pile up. A stop request is only honored between
    cycles.
    """

    def __init__(self, pipeline: Pipeline, interval: float) -> None:
        """Initialize the scheduler.

        Args:
            pipeline: The pipeline to drive.
            interval: Seconds between ticks.

        """
        if interval <= 0:
            msg = f"scheduler interval must be positive (got {interval})"
            raise ValueError(msg)
        self.pipeline = pipeline
        self.interval = interval
        self.skipped_ticks = 0
        self._state = SchedulerState.IDLE
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> SchedulerState:
        """Current scheduler state."""
        return self._state

    def request_stop(self) -> None:
        """Ask the scheduler to stop once the current cycle, if any, is done."""
        if not self._stop_event.is_set():
            logger.info("Scheduler stop requested", pipeline_id=self.pipeline.pipeline_id)
        self._stop_event.set()

    async def _wait_for_tick(self, delay: float) -> bool:
        """Sleep until the tick, returning False if a stop was requested first."""
        if self._stop_event.is_set():
            return False
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(delay, 0.0))
        return not self._stop_event.is_set()

    def _next_tick(self, scheduled: float, now: float) -> float:
        following = scheduled + self.interval
        if now > following:
            missed = int((now - following) // self.interval) + 1
            self.skipped_ticks += missed
            logger.warning(
                "Cycle overran the scrape interval, skipping missed ticks",
                pipeline_id=self.pipeline.pipeline_id,
                interval=self.interval,
                missed_ticks=missed,
            )
            following += missed * self.interval
        return following

    async def run_once(self) -> CycleStats | None:
        """Run a single cycle and log its outcome.

        Returns:
            The cycle statistics, or None if the cycle failed unexpectedly.

        """
        self._state = SchedulerState.RUNNING
        try:
            stats = await self.pipeline.run_cycle()
        except Exception as e:  # noqa: BLE001
            logger.exception(
                "Unexpected error during cycle",
                pipeline_id=self.pipeline.pipeline_id,
                error=str(e),
            )
            return None
        finally:
            self._state = SchedulerState.IDLE

        if stats.error is not None:
            logger.error(
                "Cycle failed",
                pipeline_id=self.pipeline.pipeline_id,
                error=stats.error,
            )
        else:
            logger.info(
                f"published {stats.published} metrics to CloudWatch",
                pipeline_id=self.pipeline.pipeline_id,
                **stats.as_log_context(),
            )
        return stats

    async def run(self) -> None:
        """Drive the pipeline until a stop is requested.

        The pipeline is started first and always stopped on exit.
        """
        if self._state is SchedulerState.STOPPED:
            msg = "Scheduler already stopped"
            raise PipelineError(msg)

        loop = asyncio.get_running_loop()
        logger.info(
            "Scheduler started",
            pipeline_id=self.pipeline.pipeline_id,
            interval=self.interval,
        )
        try:
            await self.pipeline.start()
            tick = loop.time() + self.interval
            while await self._wait_for_tick(tick - loop.time()):
                await self.run_once()
                tick = self._next_tick(tick, loop.time())
        finally:
            self._state = SchedulerState.STOPPED
            await self.pipeline.stop()
            logger.info(
                "Scheduler stopped",
                pipeline_id=self.pipeline.pipeline_id,
                skipped_ticks=self.skipped_ticks,
            )
