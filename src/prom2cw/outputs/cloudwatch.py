# pyright: strict
"""CloudWatch output: batches data points into PutMetricData calls."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from prom2cw.models.config import DEFAULT_PUBLISH_TIMEOUT
from prom2cw.pipeline.errors import PublishError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

    from prom2cw.models.config import PipelineConfig
    from prom2cw.models.metrics import DataPoint

# CloudWatch limits each PutMetricData request to 40 KB (before gzip) and a
# bounded number of data points; ten data points with ten dimensions each
# stays well inside both.
BATCH_SIZE = 10


def chunk_datapoints(
    datapoints: Iterable[DataPoint], size: int = BATCH_SIZE
) -> Iterator[list[DataPoint]]:
    """Group data points into batches of at most ``size``, in order."""
    if size <= 0:
        msg = f"batch size must be positive (got {size})"
        raise ValueError(msg)
    batch: list[DataPoint] = []
    for datapoint in datapoints:
        batch.append(datapoint)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


@dataclass
class PublishResult:
    """Outcome of publishing one cycle's data points."""

    published: int = 0
    failed: int = 0
    batches: int = 0
    failed_batches: int = 0
    errors: list[PublishError] = field(default_factory=list)


class Output(ABC):
    """Base class for data point outputs."""

    def __init__(self, output_id: str) -> None:
        """Initialize the output with an identifier."""
        self.output_id = output_id
        self._is_started = False

    @abstractmethod
    async def publish(self, datapoints: Sequence[DataPoint]) -> PublishResult:
        """Deliver the data points of one cycle."""

    async def start(self) -> None:
        """Start the output (e.g., connect to external services)."""
        self._is_started = True
        logger.debug("Output started", output_id=self.output_id)

    async def stop(self) -> None:
        """Stop the output (e.g., disconnect from external services)."""
        self._is_started = False
        logger.debug("Output stopped", output_id=self.output_id)

    @property
    def is_started(self) -> bool:
        """Check if the output is started."""
        return self._is_started


class CloudWatchOutput(Output):
    """Publishes data points to one CloudWatch namespace.

    Every flush is an independent ``PutMetricData`` call with a gzip-compressed
    body. A batch that CloudWatch rejects is logged and counted; later batches
    of the same cycle are still sent.
    """

    def __init__(  # noqa: PLR0913
        self,
        namespace: str,
        region: str,
        *,
        publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT,
        batch_size: int = BATCH_SIZE,
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
        aws_session_token: str | None = None,
        endpoint_url: str | None = None,
        client: Any = None,
        output_id: str = "cloudwatch",
    ) -> None:
        """Initialize the CloudWatch output.

        Args:
            namespace: CloudWatch namespace for every published metric.
            region: AWS region of the CloudWatch endpoint.
            publish_timeout: Upper bound in seconds for one PutMetricData call.
            batch_size: Maximum data points per request.
            aws_access_key_id: Static access key. When unset, credentials come
                from the SDK's default provider chain.
            aws_secret_access_key: Static secret key.
            aws_session_token: Session token for temporary credentials.
            endpoint_url: Endpoint override, e.g. for a local emulator.
            client: Ready-made CloudWatch client; skips client creation.
            output_id: Unique identifier for this output.

        """
        super().__init__(output_id)
        self.namespace = namespace
        self.region = region
        self.publish_timeout = publish_timeout
        self.batch_size = batch_size
        self.endpoint_url = endpoint_url
        self._credentials = {
            "aws_access_key_id": aws_access_key_id,
            "aws_secret_access_key": aws_secret_access_key,
            "aws_session_token": aws_session_token,
        }
        self._client: Any = client
        self._owns_client = client is None

    @classmethod
    def from_config(cls, config: PipelineConfig) -> CloudWatchOutput:
        """Build the output from a resolved pipeline configuration."""
        return cls(
            config.namespace,
            config.region,
            publish_timeout=config.publish_timeout,
            aws_access_key_id=config.aws_access_key_id,
            aws_secret_access_key=config.aws_secret_access_key,
            aws_session_token=config.aws_session_token,
            endpoint_url=config.endpoint_url,
        )

    def create_client(self) -> Any:
        """Create the boto3 CloudWatch client.

        Request compression is forced on for every payload size so each
        PutMetricData body goes out gzip-encoded with ``Content-Encoding: gzip``.
        Retries are left to the next scheduled cycle.
        """
        session_kwargs: dict[str, str] = {"region_name": self.region}
        # Static keys only when both halves are present, otherwise the SDK chain
        if self._credentials["aws_access_key_id"] and self._credentials["aws_secret_access_key"]:
            session_kwargs.update(
                {key: value for key, value in self._credentials.items() if value}
            )
        session = boto3.Session(**session_kwargs)
        boto_config = BotoConfig(
            connect_timeout=self.publish_timeout,
            read_timeout=self.publish_timeout,
            retries={"total_max_attempts": 1, "mode": "standard"},
            disable_request_compression=False,
            request_min_compression_size_bytes=1,
        )
        return session.client("cloudwatch", config=boto_config, endpoint_url=self.endpoint_url)

    async def start(self) -> None:
        """Create the CloudWatch client."""
        if self._client is None:
            self._client = self.create_client()
        await super().start()
        logger.info(
            "CloudWatch output started",
            output_id=self.output_id,
            namespace=self.namespace,
            region=self.region,
            batch_size=self.batch_size,
        )

    async def stop(self) -> None:
        """Release the CloudWatch client."""
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
        await super().stop()

    def _put_metric_data(self, metric_data: list[dict[str, Any]]) -> None:
        self._client.put_metric_data(Namespace=self.namespace, MetricData=metric_data)

    async def flush(self, batch: list[DataPoint]) -> None:
        """Send one batch.

        Raises:
            PublishError: If a data point cannot be encoded, CloudWatch rejects
                the batch or the call times out.

        """
        if not batch:
            return
        try:
            metric_data = [datapoint.to_cloudwatch() for datapoint in batch]
        except (OSError, OverflowError, ValueError) as e:
            msg = f"error encoding data points for CloudWatch: {e}"
            raise PublishError(msg, self.output_id, len(batch)) from e
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._put_metric_data, metric_data),
                timeout=self.publish_timeout,
            )
        except (ClientError, BotoCoreError) as e:
            msg = f"error publishing to CloudWatch: {e}"
            raise PublishError(msg, self.output_id, len(batch)) from e
        except TimeoutError as e:
            msg = f"publishing to CloudWatch timed out after {self.publish_timeout}s"
            raise PublishError(msg, self.output_id, len(batch)) from e

    async def publish(self, datapoints: Sequence[DataPoint]) -> PublishResult:
        """Publish all data points, batch by batch, in generation order."""
        result = PublishResult()
        if not self._is_started or self._client is None:
            logger.warning(
                "Output not started, skipping publish",
                output_id=self.output_id,
                datapoints=len(datapoints),
            )
            result.failed = len(datapoints)
            return result

        for batch in chunk_datapoints(datapoints, self.batch_size):
            result.batches += 1
            try:
                await self.flush(batch)
            except PublishError as e:
                result.failed += len(batch)
                result.failed_batches += 1
                result.errors.append(e)
                logger.warning(
                    "Error publishing batch to CloudWatch",
                    output_id=self.output_id,
                    namespace=self.namespace,
                    batch=result.batches,
                    batch_size=len(batch),
                    error=str(e),
                )
                continue
            result.published += len(batch)
            logger.debug(
                "Batch published",
                output_id=self.output_id,
                batch=result.batches,
                batch_size=len(batch),
            )
        return result
