# pyright: strict
"""Tests for scraping an exposition endpoint over HTTP."""

from __future__ import annotations

import asyncio
import ssl
from pathlib import Path
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
from aiohttp import hdrs, web
from aiohttp.test_utils import TestServer

from prom2cw.models.config import PipelineConfig
from prom2cw.models.metrics import MetricFamily
from prom2cw.pipeline.errors import ConfigurationError, FetchError
from prom2cw.receiver.exposition import MetricFamilyProto
from prom2cw.receiver.scrape import ACCEPT_HEADER, ScrapeClient

PROTOBUF_CONTENT_TYPE = (
    "application/vnd.google.protobuf; proto=io.prometheus.client.MetricFamily; "
    "encoding=delimited"
)

TEXT_BODY = "# TYPE up gauge\nup{job=\"node\"} 1\n# TYPE load gauge\nload 0.5\n"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def delimited_body(*names: str) -> bytes:
    """Build a delimited protobuf body of gauge families."""
    body = b""
    for name in names:
        message = MetricFamilyProto(name=name, type=1)
        message.metric.add().gauge.value = 1.0
        payload = message.SerializeToString()
        body += bytes([len(payload)]) + payload
    return body


@pytest.fixture
async def serve() -> AsyncIterator[Callable[[Handler], Awaitable[str]]]:
    """Serve a handler on /metrics and return its URL."""
    servers: list[TestServer] = []

    async def _serve(handler: Handler) -> str:
        app = web.Application()
        app.router.add_get("/metrics", handler)
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return str(server.make_url("/metrics"))

    yield _serve
    for server in servers:
        await server.close()


async def scrape(url: str, **kwargs: float) -> list[MetricFamily]:
    """Scrape once with a fresh client."""
    client = ScrapeClient(url, **kwargs)  # type: ignore[arg-type]
    await client.start()
    try:
        return [family async for family in client.fetch()]
    finally:
        await client.stop()


class TestScrapeClient:
    """Test ScrapeClient functionality."""

    async def test_text_format(self, serve: Callable[[Handler], Awaitable[str]]) -> None:
        """Test scraping a text payload."""

        async def handler(_: web.Request) -> web.Response:
            return web.Response(text=TEXT_BODY, content_type="text/plain")

        families = await scrape(await serve(handler))

        assert [f.name for f in families] == ["up", "load"]
        assert dict(families[0].samples[0].labels) == {"job": "node"}

    async def test_protobuf_format(self, serve: Callable[[Handler], Awaitable[str]]) -> None:
        """Test scraping a delimited protobuf payload."""

        async def handler(_: web.Request) -> web.Response:
            return web.Response(
                body=delimited_body("up", "load"),
                headers={hdrs.CONTENT_TYPE: PROTOBUF_CONTENT_TYPE},
            )

        families = await scrape(await serve(handler))

        assert [f.name for f in families] == ["up", "load"]

    async def test_accept_header(self, serve: Callable[[Handler], Awaitable[str]]) -> None:
        """Test that protobuf is preferred over text."""
        seen: list[str] = []

        async def handler(request: web.Request) -> web.Response:
            seen.append(request.headers[hdrs.ACCEPT])
            return web.Response(text="", content_type="text/plain")

        await scrape(await serve(handler))

        assert seen == [ACCEPT_HEADER]
        assert seen[0].startswith("application/vnd.google.protobuf")

    async def test_error_status(self, serve: Callable[[Handler], Awaitable[str]]) -> None:
        """Test that a non-2xx response is a fetch error."""

        async def handler(_: web.Request) -> web.Response:
            return web.Response(status=500, text="exporter broke")

        with pytest.raises(FetchError, match="returned HTTP status 500") as exc_info:
            await scrape(await serve(handler))

        assert exc_info.value.status == 500

    async def test_truncated_protobuf(self, serve: Callable[[Handler], Awaitable[str]]) -> None:
        """Test that a cut-off protobuf stream is a fetch error."""

        async def handler(_: web.Request) -> web.Response:
            return web.Response(
                body=delimited_body("up", "load")[:-2],
                headers={hdrs.CONTENT_TYPE: PROTOBUF_CONTENT_TYPE},
            )

        with pytest.raises(FetchError, match="protocol buffer"):
            await scrape(await serve(handler))

    async def test_timeout(self, serve: Callable[[Handler], Awaitable[str]]) -> None:
        """Test that a slow endpoint is a fetch error."""

        async def handler(_: web.Request) -> web.Response:
            await asyncio.sleep(1)
            return web.Response(text=TEXT_BODY, content_type="text/plain")

        with pytest.raises(FetchError, match="failed"):
            await scrape(await serve(handler), timeout=0.1)

    async def test_connection_refused(self) -> None:
        """Test that an unreachable endpoint is a fetch error."""
        with pytest.raises(FetchError) as exc_info:
            await scrape("http://127.0.0.1:1/metrics")

        assert exc_info.value.status is None

    async def test_fetch_requires_start(self) -> None:
        """Test fetching without a session."""
        client = ScrapeClient("http://127.0.0.1:1/metrics")

        with pytest.raises(FetchError, match="not started"):
            async for _ in client.fetch():
                pass

    async def test_start_stop_idempotent(self) -> None:
        """Test repeated lifecycle calls."""
        client = ScrapeClient("http://127.0.0.1:1/metrics")

        await client.start()
        await client.start()
        assert client.is_started is True

        await client.stop()
        await client.stop()
        assert client.is_started is False


class TestSslContext:
    """Test TLS settings."""

    def test_verification_on_by_default(self) -> None:
        """Test that server certificates are verified unless told otherwise."""
        context = ScrapeClient("https://exporter/metrics").build_ssl_context()

        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname is True

    def test_skip_verification(self) -> None:
        """Test accepting any server certificate."""
        client = ScrapeClient("https://exporter/metrics", skip_server_cert_check=True)

        context = client.build_ssl_context()

        assert context.verify_mode == ssl.CERT_NONE
        assert context.check_hostname is False

    def test_missing_client_certificate(self, tmp_path: Path) -> None:
        """Test that unreadable TLS material is a configuration error."""
        client = ScrapeClient(
            "https://exporter/metrics",
            cert_path=str(tmp_path / "missing.pem"),
            key_path=str(tmp_path / "missing.key"),
        )

        with pytest.raises(ConfigurationError, match="cannot load client certificate"):
            client.build_ssl_context()

    def test_from_config(self, pipeline_config: PipelineConfig) -> None:
        """Test building the client from configuration."""
        client = ScrapeClient.from_config(pipeline_config)

        assert client.url == pipeline_config.scrape_url
        assert client.timeout == pipeline_config.scrape_timeout
        assert client.skip_server_cert_check is False
