# pyright: strict
"""HTTP scraping of a Prometheus exposition endpoint."""

from __future__ import annotations

import ssl
import time
from typing import TYPE_CHECKING

import aiohttp
from aiohttp import hdrs
from loguru import logger

from prom2cw.models.config import DEFAULT_SCRAPE_TIMEOUT
from prom2cw.pipeline.errors import ConfigurationError, DecodeError, FetchError

from .exposition import decode_delimited, decode_text, is_delimited_protobuf

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from prom2cw.models.config import PipelineConfig
    from prom2cw.models.metrics import MetricFamily

ACCEPT_HEADER = (
    "application/vnd.google.protobuf;proto=io.prometheus.client.MetricFamily;"
    "encoding=delimited;q=0.7,text/plain;version=0.0.4;q=0.3"
)


class ScrapeClient:
    """Fetches and decodes one exposition payload per call to ``fetch``.

    The underlying ``aiohttp.ClientSession`` is created by ``start`` and reused
    for every scrape until ``stop`` closes it.
    """

    def __init__(
        self,
        url: str,
        *,
        cert_path: str | None = None,
        key_path: str | None = None,
        skip_server_cert_check: bool = False,
        timeout: float = DEFAULT_SCRAPE_TIMEOUT,
        receiver_id: str = "scrape",
    ) -> None:
        """Initialize the scrape client.

        Args:
            url: Exposition endpoint to scrape.
            cert_path: Client certificate for mutual TLS.
            key_path: Private key matching ``cert_path``.
            skip_server_cert_check: Accept any server certificate. Insecure,
                use only for testing.
            timeout: Upper bound in seconds for one complete scrape.
            receiver_id: Identifier used in logs.

        """
        self.url = url
        self.cert_path = cert_path
        self.key_path = key_path
        self.skip_server_cert_check = skip_server_cert_check
        self.timeout = timeout
        self.receiver_id = receiver_id
        self._session: aiohttp.ClientSession | None = None

    @classmethod
    def from_config(cls, config: PipelineConfig) -> ScrapeClient:
        """Build the scrape client from a resolved pipeline configuration."""
        return cls(
            config.scrape_url,
            cert_path=config.cert_path,
            key_path=config.key_path,
            skip_server_cert_check=config.skip_server_cert_check,
            timeout=config.scrape_timeout,
        )

    @property
    def is_started(self) -> bool:
        """Check if the client holds an open session."""
        return self._session is not None

    def build_ssl_context(self) -> ssl.SSLContext:
        """Create the TLS context used for HTTPS scrape URLs.

        Raises:
            ConfigurationError: If the client certificate or key cannot be loaded.

        """
        context = ssl.create_default_context()
        if self.skip_server_cert_check:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        if self.cert_path and self.key_path:
            try:
                context.load_cert_chain(self.cert_path, self.key_path)
            except (OSError, ssl.SSLError) as e:
                msg = f"cannot load client certificate {self.cert_path}: {e}"
                raise ConfigurationError(msg, "cert_path") from e
        return context

    async def start(self) -> None:
        """Open the HTTP session."""
        if self._session is not None:
            return
        connector = aiohttp.TCPConnector(ssl=self.build_ssl_context())
        self._session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        )
        logger.info(
            "Scrape client started",
            receiver_id=self.receiver_id,
            url=self.url,
            mutual_tls=bool(self.cert_path),
            skip_server_cert_check=self.skip_server_cert_check,
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session is None:
            return
        await self._session.close()
        self._session = None
        logger.info("Scrape client stopped", receiver_id=self.receiver_id)

    async def fetch(self) -> AsyncIterator[MetricFamily]:
        """Scrape the endpoint once and yield its metric families.

        Delimited protobuf responses are decoded frame by frame while the body
        streams in; any other content type is read whole and parsed as text.

        Raises:
            FetchError: On connection failures, timeouts, non-2xx responses or
                a broken protobuf stream.

        """
        if self._session is None:
            msg = f"Scrape client {self.receiver_id} not started"
            raise FetchError(msg, self.url)

        now = time.time()
        try:
            async with self._session.get(
                self.url, headers={hdrs.ACCEPT: ACCEPT_HEADER}
            ) as response:
                if not 200 <= response.status < 300:  # noqa: PLR2004
                    msg = (
                        f"GET request for URL {self.url!r} returned HTTP status "
                        f"{response.status} {response.reason or ''}".rstrip()
                    )
                    raise FetchError(msg, self.url, response.status)

                content_type = response.headers.get(hdrs.CONTENT_TYPE, "")
                logger.debug(
                    "Scrape response received",
                    receiver_id=self.receiver_id,
                    status=response.status,
                    content_type=content_type,
                )

                if is_delimited_protobuf(content_type):
                    async for family in decode_delimited(response.content, now):
                        yield family
                else:
                    text = await response.text()
                    for family in decode_text(text, now):
                        yield family
        except DecodeError as e:
            msg = f"reading metric family protocol buffer from {self.url!r} failed: {e}"
            raise FetchError(msg, self.url) from e
        except (aiohttp.ClientError, TimeoutError, UnicodeDecodeError) as e:
            msg = f"executing GET request for URL {self.url!r} failed: {e}"
            raise FetchError(msg, self.url) from e
