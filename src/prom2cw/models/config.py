# pyright: strict
"""Application and pipeline configuration for the Prometheus to CloudWatch bridge."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from prom2cw.pipeline.errors import ConfigurationError
from prom2cw.pipeline.patterns import (
    GlobPattern,
    MatcherRule,
    compile_patterns,
    parse_matcher_rules,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_SCRAPE_INTERVAL = 30.0
DEFAULT_SCRAPE_TIMEOUT = 10.0
DEFAULT_PUBLISH_TIMEOUT = 5.0

_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "t", "y"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", "f", "n"})


def parse_bool(value: str, setting: str) -> bool:
    """Parse a boolean flag, rejecting anything ambiguous."""
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    msg = f"{setting} must be a boolean (got '{value}')"
    raise ConfigurationError(msg, setting)


def parse_seconds(value: str, setting: str, default: float) -> float:
    """Parse a positive duration in seconds; empty means the default."""
    if not value.strip():
        return default
    try:
        seconds = float(value)
    except ValueError as e:
        msg = f"error parsing '{setting}': {value!r} is not a number of seconds"
        raise ConfigurationError(msg, setting) from e
    if seconds <= 0:
        msg = f"{setting} must be greater than zero (got {value})"
        raise ConfigurationError(msg, setting)
    return seconds


def parse_key_value(pair: str, setting: str) -> tuple[str, str]:
    """Split ``NAME=VALUE`` into its parts."""
    key, sep, value = pair.partition("=")
    if not sep or not key.strip():
        msg = f"{setting} must be formatted as NAME=VALUE (got '{pair}')"
        raise ConfigurationError(msg, setting)
    return key.strip(), value.strip()


def parse_single_key_value(pair: str, setting: str) -> dict[str, str]:
    """Parse one ``NAME=VALUE`` split at the first ``=``; empty means none."""
    if not pair.strip():
        return {}
    key, value = parse_key_value(pair, setting)
    return {key: value}


def parse_key_value_list(pairs: str, setting: str) -> dict[str, str]:
    """Parse ``NAME=VALUE,NAME2=VALUE2`` into an ordered mapping."""
    parsed: dict[str, str] = {}
    for pair in pairs.split(","):
        if not pair.strip():
            continue
        key, value = parse_key_value(pair, setting)
        parsed[key] = value
    return parsed


@dataclass(frozen=True)
class PipelineConfig:
    """Resolved, immutable configuration owned by one pipeline instance."""

    namespace: str
    region: str
    scrape_url: str
    cert_path: str | None = None
    key_path: str | None = None
    skip_server_cert_check: bool = False
    scrape_interval: float = DEFAULT_SCRAPE_INTERVAL
    scrape_timeout: float = DEFAULT_SCRAPE_TIMEOUT
    publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT
    additional_dimensions: Mapping[str, str] = field(default_factory=dict)
    replace_dimensions: Mapping[str, str] = field(default_factory=dict)
    include_metrics: tuple[GlobPattern, ...] = ()
    exclude_metrics: tuple[GlobPattern, ...] = ()
    include_dimensions_for_metrics: tuple[MatcherRule, ...] = ()
    exclude_dimensions_for_metrics: tuple[MatcherRule, ...] = ()
    force_high_res: bool = False
    aws_access_key_id: str | None = field(default=None, repr=False)
    aws_secret_access_key: str | None = field(default=None, repr=False)
    aws_session_token: str | None = field(default=None, repr=False)
    endpoint_url: str | None = None

    def __post_init__(self) -> None:
        """Validate required settings and freeze the mappings."""
        for setting, value in (
            ("namespace", self.namespace),
            ("region", self.region),
            ("scrape_url", self.scrape_url),
        ):
            if not value:
                msg = f"{setting} is required"
                raise ConfigurationError(msg, setting)

        if bool(self.cert_path) != bool(self.key_path):
            msg = (
                "when using SSL, both cert_path and key_path are required. "
                "If not using SSL, do not provide any of them"
            )
            raise ConfigurationError(msg, "cert_path")

        if len(self.additional_dimensions) >= 10:  # noqa: PLR2004
            msg = "at most 9 additional dimensions can be configured"
            raise ConfigurationError(msg, "additional_dimensions")

        object.__setattr__(
            self, "additional_dimensions", MappingProxyType(dict(self.additional_dimensions))
        )
        object.__setattr__(
            self, "replace_dimensions", MappingProxyType(dict(self.replace_dimensions))
        )


@dataclass
class Config:
    """Raw settings as read from the environment, before validation."""

    cloudwatch_namespace: str = ""
    cloudwatch_region: str = ""
    prometheus_scrape_url: str = ""
    prometheus_scrape_interval: str = ""
    prometheus_scrape_timeout: str = ""
    cloudwatch_publish_timeout: str = ""
    cert_path: str = ""
    key_path: str = ""
    accept_invalid_cert: str = ""
    additional_dimension: str = ""
    replace_dimensions: str = ""
    include_metrics: str = ""
    exclude_metrics: str = ""
    include_dimensions_for_metrics: str = ""
    exclude_dimensions_for_metrics: str = ""
    force_high_res: str = ""
    aws_access_key_id: str = field(default="", repr=False)
    aws_secret_access_key: str = field(default="", repr=False)
    aws_session_token: str = field(default="", repr=False)
    cloudwatch_endpoint_url: str = ""
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> Config:
        """Create config from environment variables."""
        return cls(
            cloudwatch_namespace=os.getenv("CLOUDWATCH_NAMESPACE", ""),
            cloudwatch_region=os.getenv("CLOUDWATCH_REGION", ""),
            prometheus_scrape_url=os.getenv("PROMETHEUS_SCRAPE_URL", ""),
            prometheus_scrape_interval=os.getenv("PROMETHEUS_SCRAPE_INTERVAL", ""),
            prometheus_scrape_timeout=os.getenv("PROMETHEUS_SCRAPE_TIMEOUT", ""),
            cloudwatch_publish_timeout=os.getenv("CLOUDWATCH_PUBLISH_TIMEOUT", ""),
            cert_path=os.getenv("CERT_PATH", ""),
            key_path=os.getenv("KEY_PATH", ""),
            accept_invalid_cert=os.getenv("ACCEPT_INVALID_CERT", ""),
            additional_dimension=os.getenv("ADDITIONAL_DIMENSION", ""),
            replace_dimensions=os.getenv("REPLACE_DIMENSIONS", ""),
            include_metrics=os.getenv("INCLUDE_METRICS", ""),
            exclude_metrics=os.getenv("EXCLUDE_METRICS", ""),
            include_dimensions_for_metrics=os.getenv("INCLUDE_DIMENSIONS_FOR_METRICS", ""),
            exclude_dimensions_for_metrics=os.getenv("EXCLUDE_DIMENSIONS_FOR_METRICS", ""),
            force_high_res=os.getenv("FORCE_HIGH_RES", ""),
            aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID", ""),
            aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY", ""),
            aws_session_token=os.getenv("AWS_SESSION_TOKEN", ""),
            cloudwatch_endpoint_url=os.getenv("CLOUDWATCH_ENDPOINT_URL", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE"),
        )

    def to_pipeline_config(self) -> PipelineConfig:
        """Validate the raw settings and compile them into a PipelineConfig.

        Raises:
            ConfigurationError: If a required setting is missing or any value
                is malformed.

        """
        return PipelineConfig(
            namespace=self.cloudwatch_namespace,
            region=self.cloudwatch_region,
            scrape_url=self.prometheus_scrape_url,
            cert_path=self.cert_path or None,
            key_path=self.key_path or None,
            skip_server_cert_check=(
                parse_bool(self.accept_invalid_cert, "ACCEPT_INVALID_CERT")
                if self.accept_invalid_cert
                else False
            ),
            scrape_interval=parse_seconds(
                self.prometheus_scrape_interval,
                "PROMETHEUS_SCRAPE_INTERVAL",
                DEFAULT_SCRAPE_INTERVAL,
            ),
            scrape_timeout=parse_seconds(
                self.prometheus_scrape_timeout,
                "PROMETHEUS_SCRAPE_TIMEOUT",
                DEFAULT_SCRAPE_TIMEOUT,
            ),
            publish_timeout=parse_seconds(
                self.cloudwatch_publish_timeout,
                "CLOUDWATCH_PUBLISH_TIMEOUT",
                DEFAULT_PUBLISH_TIMEOUT,
            ),
            additional_dimensions=parse_single_key_value(
                self.additional_dimension, "ADDITIONAL_DIMENSION"
            ),
            replace_dimensions=parse_key_value_list(
                self.replace_dimensions, "REPLACE_DIMENSIONS"
            ),
            include_metrics=compile_patterns(self.include_metrics, "INCLUDE_METRICS"),
            exclude_metrics=compile_patterns(self.exclude_metrics, "EXCLUDE_METRICS"),
            include_dimensions_for_metrics=parse_matcher_rules(
                self.include_dimensions_for_metrics, "INCLUDE_DIMENSIONS_FOR_METRICS"
            ),
            exclude_dimensions_for_metrics=parse_matcher_rules(
                self.exclude_dimensions_for_metrics, "EXCLUDE_DIMENSIONS_FOR_METRICS"
            ),
            force_high_res=(
                parse_bool(self.force_high_res, "FORCE_HIGH_RES")
                if self.force_high_res
                else False
            ),
            aws_access_key_id=self.aws_access_key_id or None,
            aws_secret_access_key=self.aws_secret_access_key or None,
            aws_session_token=self.aws_session_token or None,
            endpoint_url=self.cloudwatch_endpoint_url or None,
        )
