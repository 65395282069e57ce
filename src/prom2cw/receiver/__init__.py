# pyright: strict
"""Scraping and decoding of Prometheus exposition payloads."""

from .exposition import decode_delimited, decode_text, is_delimited_protobuf
from .scrape import ScrapeClient

__all__ = ["ScrapeClient", "decode_delimited", "decode_text", "is_delimited_protobuf"]
