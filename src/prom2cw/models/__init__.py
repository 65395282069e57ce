# pyright: strict
"""Data models for samples, data points and configuration."""

from .config import Config, PipelineConfig
from .metrics import DataPoint, Dimension, MetricFamily, Sample

__all__ = [
    "Config",
    "DataPoint",
    "Dimension",
    "MetricFamily",
    "PipelineConfig",
    "Sample",
]
