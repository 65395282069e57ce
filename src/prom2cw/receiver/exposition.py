# pyright: strict
"""Decoding of the Prometheus exposition formats into metric families.

Two formats are understood: the length-delimited protobuf stream of
``io.prometheus.client.MetricFamily`` messages and the classic text format.
Both are flattened into samples the way Prometheus' own sample extraction
does, so summaries and histograms become quantile, bucket, sum and count
series.
"""

from __future__ import annotations

import asyncio
import math
import re
from typing import TYPE_CHECKING, Any, Protocol

from aiohttp.helpers import parse_mimetype
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError as ProtobufDecodeError
from loguru import logger
from prometheus_client.parser import text_string_to_metric_families

from prom2cw.models.metrics import MetricFamily, Sample
from prom2cw.pipeline.errors import DecodeError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

PROTOBUF_MEDIA_TYPE = "application/vnd.google.protobuf"
PROTOBUF_PROTO = "io.prometheus.client.MetricFamily"
PROTOBUF_ENCODING = "delimited"

MAX_VARINT_BYTES = 10

# Series names a declared text-format family may use besides its own name
TEXT_FAMILY_SUFFIXES = (
    "_total",
    "_created",
    "_sum",
    "_count",
    "_bucket",
    "_gsum",
    "_gcount",
    "_info",
)
_SAMPLE_NAME_END = re.compile(r"[{\s]")

_FDP = descriptor_pb2.FieldDescriptorProto
_PACKAGE = "io.prometheus.client"


class ByteStream(Protocol):
    """Anything that can hand out an exact number of bytes, like a StreamReader."""

    async def readexactly(self, n: int) -> bytes: ...


def _add_message(
    file_proto: descriptor_pb2.FileDescriptorProto,
    name: str,
    fields: Iterable[tuple[int, str, int, str | None]],
    *,
    repeated: Iterable[str] = (),
) -> None:
    repeated_fields = set(repeated)
    message = file_proto.message_type.add(name=name)
    for number, field_name, field_type, type_name in fields:
        label = _FDP.LABEL_REPEATED if field_name in repeated_fields else _FDP.LABEL_OPTIONAL
        field = message.field.add(name=field_name, number=number, type=field_type, label=label)
        if type_name:
            field.type_name = f".{_PACKAGE}.{type_name}"


def _build_metric_family_class() -> Any:
    """Register the Prometheus client data model with the protobuf runtime.

    Only the fields the bridge reads are declared; anything else in the
    payload (exemplars, native histogram spans, ...) is kept as unknown fields.
    """
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="io/prometheus/client/metrics.proto",
        package=_PACKAGE,
        syntax="proto2",
    )
    metric_type = file_proto.enum_type.add(name="MetricType")
    for number, value_name in enumerate(
        ("COUNTER", "GAUGE", "SUMMARY", "UNTYPED", "HISTOGRAM", "GAUGE_HISTOGRAM")
    ):
        metric_type.value.add(name=value_name, number=number)

    _add_message(
        file_proto,
        "LabelPair",
        [(1, "name", _FDP.TYPE_STRING, None), (2, "value", _FDP.TYPE_STRING, None)],
    )
    _add_message(file_proto, "Gauge", [(1, "value", _FDP.TYPE_DOUBLE, None)])
    _add_message(file_proto, "Counter", [(1, "value", _FDP.TYPE_DOUBLE, None)])
    _add_message(
        file_proto,
        "Quantile",
        [(1, "quantile", _FDP.TYPE_DOUBLE, None), (2, "value", _FDP.TYPE_DOUBLE, None)],
    )
    _add_message(
        file_proto,
        "Summary",
        [
            (1, "sample_count", _FDP.TYPE_UINT64, None),
            (2, "sample_sum", _FDP.TYPE_DOUBLE, None),
            (3, "quantile", _FDP.TYPE_MESSAGE, "Quantile"),
        ],
        repeated=["quantile"],
    )
    _add_message(file_proto, "Untyped", [(1, "value", _FDP.TYPE_DOUBLE, None)])
    _add_message(
        file_proto,
        "Bucket",
        [
            (1, "cumulative_count", _FDP.TYPE_UINT64, None),
            (2, "upper_bound", _FDP.TYPE_DOUBLE, None),
            (4, "cumulative_count_float", _FDP.TYPE_DOUBLE, None),
        ],
    )
    _add_message(
        file_proto,
        "Histogram",
        [
            (1, "sample_count", _FDP.TYPE_UINT64, None),
            (2, "sample_sum", _FDP.TYPE_DOUBLE, None),
            (3, "bucket", _FDP.TYPE_MESSAGE, "Bucket"),
            (4, "sample_count_float", _FDP.TYPE_DOUBLE, None),
        ],
        repeated=["bucket"],
    )
    _add_message(
        file_proto,
        "Metric",
        [
            (1, "label", _FDP.TYPE_MESSAGE, "LabelPair"),
            (2, "gauge", _FDP.TYPE_MESSAGE, "Gauge"),
            (3, "counter", _FDP.TYPE_MESSAGE, "Counter"),
            (4, "summary", _FDP.TYPE_MESSAGE, "Summary"),
            (5, "untyped", _FDP.TYPE_MESSAGE, "Untyped"),
            (6, "timestamp_ms", _FDP.TYPE_INT64, None),
            (7, "histogram", _FDP.TYPE_MESSAGE, "Histogram"),
        ],
        repeated=["label"],
    )
    _add_message(
        file_proto,
        "MetricFamily",
        [
            (1, "name", _FDP.TYPE_STRING, None),
            (2, "help", _FDP.TYPE_STRING, None),
            (3, "type", _FDP.TYPE_ENUM, "MetricType"),
            (4, "metric", _FDP.TYPE_MESSAGE, "Metric"),
            (5, "unit", _FDP.TYPE_STRING, None),
        ],
        repeated=["metric"],
    )

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    descriptor = pool.FindMessageTypeByName(f"{_PACKAGE}.MetricFamily")
    return message_factory.GetMessageClass(descriptor)


MetricFamilyProto: Any = _build_metric_family_class()
"""Generated message class for ``io.prometheus.client.MetricFamily``."""

_METRIC_TYPE_NAMES = {
    0: "counter",
    1: "gauge",
    2: "summary",
    3: "untyped",
    4: "histogram",
    5: "gaugehistogram",
}


def format_label_float(value: float) -> str:
    """Render a bucket bound or quantile as Prometheus' Go client labels it.

    Whole numbers print without a fraction (``1``, not ``1.0``) up to the point
    where Go switches to exponent notation.
    """
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if math.isnan(value):
        return "NaN"
    if value.is_integer() and abs(value) < 1e21:  # noqa: PLR2004
        return str(int(value))
    return repr(value)


def is_delimited_protobuf(content_type: str) -> bool:
    """Check whether a Content-Type announces the delimited protobuf format."""
    if not content_type:
        return False
    mimetype = parse_mimetype(content_type)
    return (
        f"{mimetype.type}/{mimetype.subtype}" == PROTOBUF_MEDIA_TYPE
        and mimetype.parameters.get("proto") == PROTOBUF_PROTO
        and mimetype.parameters.get("encoding") == PROTOBUF_ENCODING
    )


def _sample_timestamp(metric: Any, now: float) -> float:
    if metric.HasField("timestamp_ms") and metric.timestamp_ms:
        return metric.timestamp_ms / 1000.0
    return now


def _histogram_samples(
    name: str, labels: dict[str, str], histogram: Any, timestamp: float
) -> list[Sample]:
    sample_count = (
        histogram.sample_count_float
        if histogram.HasField("sample_count_float")
        else float(histogram.sample_count)
    )
    samples: list[Sample] = []
    has_inf_bucket = False
    for bucket in histogram.bucket:
        count = (
            bucket.cumulative_count_float
            if bucket.HasField("cumulative_count_float")
            else float(bucket.cumulative_count)
        )
        if bucket.upper_bound == float("inf"):
            has_inf_bucket = True
        samples.append(
            Sample(
                f"{name}_bucket",
                {**labels, "le": format_label_float(bucket.upper_bound)},
                count,
                timestamp,
            )
        )
    if not has_inf_bucket:
        samples.append(
            Sample(f"{name}_bucket", {**labels, "le": "+Inf"}, sample_count, timestamp)
        )
    samples.append(Sample(f"{name}_sum", labels, histogram.sample_sum, timestamp))
    samples.append(Sample(f"{name}_count", labels, sample_count, timestamp))
    return samples


def family_from_proto(message: Any, now: float) -> MetricFamily:
    """Flatten a decoded MetricFamily message into samples.

    Raises:
        DecodeError: If the family declares a type the bridge does not know.

    """
    name: str = message.name
    family_type = _METRIC_TYPE_NAMES.get(message.type)
    if family_type is None:
        msg = f"unknown metric family type {message.type} for {name}"
        raise DecodeError(msg, name)

    samples: list[Sample] = []
    for metric in message.metric:
        labels = {pair.name: pair.value for pair in metric.label}
        timestamp = _sample_timestamp(metric, now)

        if family_type == "counter":
            samples.append(Sample(name, labels, metric.counter.value, timestamp))
        elif family_type == "gauge":
            samples.append(Sample(name, labels, metric.gauge.value, timestamp))
        elif family_type == "untyped":
            samples.append(Sample(name, labels, metric.untyped.value, timestamp))
        elif family_type == "summary":
            summary = metric.summary
            samples.extend(
                Sample(
                    name,
                    {**labels, "quantile": format_label_float(quantile.quantile)},
                    quantile.value,
                    timestamp,
                )
                for quantile in summary.quantile
            )
            samples.append(Sample(f"{name}_sum", labels, summary.sample_sum, timestamp))
            samples.append(
                Sample(f"{name}_count", labels, float(summary.sample_count), timestamp)
            )
        else:
            samples.extend(_histogram_samples(name, labels, metric.histogram, timestamp))

    return MetricFamily(
        name=name, type=family_type, help=message.help, samples=tuple(samples)
    )


async def _read_varint(stream: ByteStream) -> int | None:
    """Read a base-128 varint, returning None on a clean end of stream."""
    result = 0
    for index in range(MAX_VARINT_BYTES):
        try:
            byte = (await stream.readexactly(1))[0]
        except asyncio.IncompleteReadError as e:
            if index == 0:
                return None
            msg = "stream ended inside a frame length prefix"
            raise DecodeError(msg) from e
        result |= (byte & 0x7F) << (7 * index)
        if not byte & 0x80:
            return result
    msg = "frame length prefix is longer than a 64-bit varint"
    raise DecodeError(msg)


async def iter_delimited_frames(stream: ByteStream) -> AsyncIterator[bytes]:
    """Yield the payload of each length-prefixed frame until the stream ends.

    Raises:
        DecodeError: If the framing itself is broken; nothing after that point
            can be recovered.

    """
    while True:
        length = await _read_varint(stream)
        if length is None:
            return
        try:
            yield await stream.readexactly(length)
        except asyncio.IncompleteReadError as e:
            msg = f"stream ended {len(e.partial)} bytes into a {length} byte frame"
            raise DecodeError(msg) from e


async def decode_delimited(stream: ByteStream, now: float) -> AsyncIterator[MetricFamily]:
    """Lazily decode a delimited protobuf stream into metric families.

    A frame that does not parse is logged and skipped; the stream continues
    with the next frame.
    """
    async for frame in iter_delimited_frames(stream):
        message = MetricFamilyProto()
        try:
            message.ParseFromString(frame)
            family = family_from_proto(message, now)
        except (ProtobufDecodeError, DecodeError) as e:
            logger.warning(
                "Skipping undecodable metric family",
                error=str(e),
                frame_bytes=len(frame),
            )
            continue
        yield family


def _belongs_to(name: str, family: str | None, *, declared: bool, is_declaration: bool) -> bool:
    if family is None:
        return False
    if name == family:
        return True
    if is_declaration or not declared:
        return False
    base = family.removesuffix("_total")
    return any(name == base + suffix for suffix in TEXT_FAMILY_SUFFIXES)


def split_text_families(text: str) -> list[tuple[str | None, str]]:
    """Split a text-format payload into one chunk of lines per metric family.

    A chunk starts at a ``# HELP`` or ``# TYPE`` line for a new name, or at a
    sample line whose name is not part of the family being read. Samples only
    pick up the ``_sum``, ``_bucket`` style suffixes of a family that was
    declared with ``# HELP`` or ``# TYPE``.

    Returns:
        ``(family name, chunk text)`` pairs in payload order.

    """
    chunks: list[tuple[str | None, list[str]]] = []
    family: str | None = None
    declared = False
    for line in text.splitlines():
        stripped = line.strip()
        name: str | None = None
        is_declaration = False
        if stripped.startswith("#"):
            parts = stripped.split(None, 3)
            if len(parts) >= 3 and parts[1] in ("HELP", "TYPE"):  # noqa: PLR2004
                name = parts[2]
                is_declaration = True
        elif stripped:
            name = _SAMPLE_NAME_END.split(stripped, maxsplit=1)[0]

        if name is not None and not _belongs_to(
            name, family, declared=declared, is_declaration=is_declaration
        ):
            family = name
            declared = is_declaration
            chunks.append((name, []))
        elif is_declaration:
            declared = True
        elif not chunks:
            chunks.append((None, []))
        chunks[-1][1].append(line)
    return [(name, "\n".join(lines) + "\n") for name, lines in chunks]


def _parse_text_family(text: str, now: float) -> list[MetricFamily]:
    families: list[MetricFamily] = []
    for metric in text_string_to_metric_families(text):
        samples = tuple(
            Sample(
                sample.name,
                sample.labels,
                float(sample.value),
                float(sample.timestamp) if sample.timestamp is not None else now,
            )
            for sample in metric.samples
        )
        families.append(
            MetricFamily(
                name=metric.name,
                type=metric.type,
                help=metric.documentation,
                samples=samples,
            )
        )
    return families


def decode_text(text: str, now: float) -> list[MetricFamily]:
    """Parse a text-format payload into metric families.

    Every family is parsed on its own: a malformed family is logged and
    skipped, and the rest of the payload is still read.
    """
    families: list[MetricFamily] = []
    for name, chunk in split_text_families(text):
        try:
            families.extend(_parse_text_family(chunk, now))
        except (ValueError, IndexError) as e:
            logger.warning(
                "Skipping malformed metric family in text payload",
                family=name,
                error=f"reading text format failed: {e}",
            )
    return families
