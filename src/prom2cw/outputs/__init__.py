# pyright: strict
"""Outputs that deliver data points."""

from .cloudwatch import BATCH_SIZE, CloudWatchOutput, Output, PublishResult, chunk_datapoints

__all__ = ["BATCH_SIZE", "CloudWatchOutput", "Output", "PublishResult", "chunk_datapoints"]
