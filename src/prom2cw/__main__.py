"""Prometheus to CloudWatch bridge entry point."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import TYPE_CHECKING, Self

from dotenv import load_dotenv
from loguru import logger

from prom2cw.models import Config, PipelineConfig
from prom2cw.outputs import CloudWatchOutput
from prom2cw.pipeline import (
    ConfigurationError,
    DataPointTransformer,
    MetricFilter,
    Pipeline,
    PipelineErrorHandler,
    PipelineStatsCollector,
    Scheduler,
)
from prom2cw.receiver import ScrapeClient
from prom2cw.utils import LoggingConfig

if TYPE_CHECKING:
    from types import TracebackType


def build_pipeline(config: PipelineConfig) -> Pipeline:
    """Wire the scrape client, filter, transformer and output for one pipeline."""
    metric_filter = MetricFilter.from_config(config)
    return Pipeline(
        ScrapeClient.from_config(config),
        metric_filter,
        DataPointTransformer.from_config(config, metric_filter),
        CloudWatchOutput.from_config(config),
        pipeline_id=config.namespace,
        stats_collector=PipelineStatsCollector(config.namespace),
        error_handler=PipelineErrorHandler(),
    )


class BridgeApp:
    """Scrapes one Prometheus endpoint and publishes it to CloudWatch forever."""

    def __init__(self, config: PipelineConfig) -> None:
        """Build the pipeline and its scheduler from the resolved configuration."""
        self.config = config
        self.pipeline = build_pipeline(config)
        self.scheduler = Scheduler(self.pipeline, config.scrape_interval)

    async def __aenter__(self) -> Self:
        """Install the shutdown signal handlers."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._signal_handler, signum)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Remove the signal handlers again."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)

    def _signal_handler(self, signum: int) -> None:
        logger.info("Received shutdown signal, initiating graceful shutdown", signal=signum)
        self.shutdown()

    def shutdown(self) -> None:
        """Stop after the cycle in flight, if any, has finished."""
        self.scheduler.request_stop()

    async def run(self) -> None:
        """Run scheduled cycles until shutdown."""
        logger.info(
            "Running Prometheus to CloudWatch bridge",
            namespace=self.config.namespace,
            region=self.config.region,
            scrape_url=self.config.scrape_url,
            interval=self.config.scrape_interval,
        )
        await self.scheduler.run()


async def main() -> int:
    """Load the configuration and run the bridge.

    Returns:
        The process exit code: 0 after a clean shutdown, 1 if the configuration
        is invalid or the bridge failed.

    """
    load_dotenv()
    settings = Config.from_env()
    try:
        LoggingConfig.configure(settings.log_level, settings.log_file)
    except ValueError as e:
        LoggingConfig.configure()
        logger.error("Configuration error - invalid LOG_LEVEL", error=str(e))
        return 1

    try:
        config = settings.to_pipeline_config()
        logger.info(
            "Starting Prometheus to CloudWatch bridge with configuration",
            namespace=config.namespace,
            region=config.region,
            scrape_url=config.scrape_url,
            scrape_interval=config.scrape_interval,
            additional_dimensions=dict(config.additional_dimensions),
            force_high_res=config.force_high_res,
        )
        async with BridgeApp(config) as app:
            await app.run()
    except ConfigurationError as e:
        logger.error(
            "Configuration error - application startup failed",
            error=str(e),
            setting=e.setting,
        )
        return 1
    except Exception as e:  # noqa: BLE001
        logger.error(
            "Runtime error - application failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        return 1
    finally:
        logger.info("Prometheus to CloudWatch bridge shutdown completed")
    return 0


def cli() -> None:
    """Console script entry point."""
    try:
        exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Application terminated by user")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
