# pyright: strict
"""Glob patterns for metric and dimension selection.

Patterns are anchored to the whole candidate string and support ``*``, ``?``,
``[...]`` character classes and ``{a,b}`` alternation. They are compiled once
when configuration is resolved and then only matched.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterable


@dataclass(frozen=True)
class GlobPattern:
    """A compiled, anchored glob pattern."""

    pattern: str
    regex: re.Pattern[str]

    def matches(self, candidate: str) -> bool:
        """Check whether the whole candidate matches the pattern."""
        return self.regex.fullmatch(candidate) is not None


@dataclass(frozen=True)
class MatcherRule:
    """A metric name pattern associated with a set of label names."""

    pattern: GlobPattern
    labels: frozenset[str]

    def matches(self, metric_name: str) -> bool:
        """Check whether the rule applies to the metric."""
        return self.pattern.matches(metric_name)


def split_top_level(text: str, separator: str) -> list[str]:
    """Split on ``separator`` everywhere except inside ``{...}`` groups."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char == "{":
            depth += 1
        elif char == "}":
            depth = max(depth - 1, 0)
        if char == separator and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return parts


def _expand_braces(pattern: str) -> list[str]:
    """Expand the first ``{a,b}`` group (recursively) into plain globs."""
    start = pattern.find("{")
    if start == -1:
        if "}" in pattern:
            msg = f"unbalanced '}}' in glob pattern '{pattern}'"
            raise ConfigurationError(msg)
        return [pattern]

    depth = 0
    end = -1
    for index in range(start, len(pattern)):
        if pattern[index] == "{":
            depth += 1
        elif pattern[index] == "}":
            depth -= 1
            if depth == 0:
                end = index
                break
    if end == -1:
        msg = f"unbalanced '{{' in glob pattern '{pattern}'"
        raise ConfigurationError(msg)

    prefix, body, suffix = pattern[:start], pattern[start + 1 : end], pattern[end + 1 :]
    expanded: list[str] = []
    for alternative in split_top_level(body, ","):
        expanded.extend(_expand_braces(prefix + alternative + suffix))
    return expanded


def compile_pattern(pattern: str) -> GlobPattern:
    """Compile one glob pattern.

    Raises:
        ConfigurationError: If the pattern is empty or malformed.

    """
    if not pattern:
        msg = "empty glob pattern"
        raise ConfigurationError(msg)

    alternatives = _expand_braces(pattern)
    try:
        regex = re.compile("|".join(fnmatch.translate(alt) for alt in alternatives))
    except re.error as e:
        msg = f"invalid glob pattern '{pattern}': {e}"
        raise ConfigurationError(msg) from e
    return GlobPattern(pattern=pattern, regex=regex)


def compile_patterns(patterns: str, setting: str = "patterns") -> tuple[GlobPattern, ...]:
    """Compile a comma-separated list of glob patterns.

    An empty string yields no patterns.
    """
    if not patterns.strip():
        return ()
    try:
        return tuple(compile_pattern(p.strip()) for p in split_top_level(patterns, ","))
    except ConfigurationError as e:
        msg = f"{setting} contains an invalid glob pattern: {e}"
        raise ConfigurationError(msg, setting) from e


def parse_matcher_rules(rules: str, setting: str = "rules") -> tuple[MatcherRule, ...]:
    """Parse ``GLOB=dim1,dim2;GLOB2=dim3`` into ordered matcher rules.

    Raises:
        ConfigurationError: If a rule is not ``GLOB=DIM_LIST`` or its glob is invalid.

    """
    parsed: list[MatcherRule] = []
    for rule in split_top_level(rules, ";"):
        if not rule.strip():
            continue
        key, sep, value = rule.partition("=")
        if not sep:
            msg = f"{setting} must be formatted as METRIC_NAME=DIM_LIST;... (got '{rule}')"
            raise ConfigurationError(msg, setting)

        labels = frozenset(label.strip() for label in value.split(",") if label.strip())
        if not labels:
            msg = f"{setting} was not given dimensions for metric '{key}'"
            raise ConfigurationError(msg, setting)

        try:
            pattern = compile_pattern(key.strip())
        except ConfigurationError as e:
            msg = f"{setting} contains an invalid glob pattern in '{key}': {e}"
            raise ConfigurationError(msg, setting) from e
        parsed.append(MatcherRule(pattern=pattern, labels=labels))
    return tuple(parsed)


def any_pattern_matches(patterns: Iterable[GlobPattern], candidate: str) -> bool:
    """Check whether any of the patterns matches the candidate."""
    return any(pattern.matches(candidate) for pattern in patterns)


def find_matching_labels(
    rules: Iterable[MatcherRule], metric_name: str
) -> frozenset[str] | None:
    """Return the label set of the first rule matching the metric, if any."""
    for rule in rules:
        if rule.matches(metric_name):
            return rule.labels
    return None
