"""Output noise filtering for container runtime chatter."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class NoisePattern:
    """One suppression predicate: a plain substring or a regular expression."""

    pattern: str
    regex: bool = False

    def matches(self, line: str) -> bool:
        if self.regex:
            return re.search(self.pattern, line.strip()) is not None
        return self.pattern in line


DEFAULT_NOISE_PATTERNS: tuple[NoisePattern, ...] = (
    NoisePattern("Found orphan containers"),
    NoisePattern("Container docker-build-emscripten-build-run-"),
    NoisePattern("Container ID:"),
    NoisePattern("--remove-orphans flag"),
    NoisePattern("cache:INFO"),
    NoisePattern(r"^[a-f0-9]{64}$", regex=True),
)


class NoiseFilter:
    """Ordered list of predicates deciding which output lines are hidden."""

    def __init__(self, patterns: Iterable[NoisePattern] = DEFAULT_NOISE_PATTERNS) -> None:
        self.patterns = tuple(patterns)

    @classmethod
    def with_extra_substrings(cls, substrings: Iterable[str]) -> NoiseFilter:
        extra = tuple(NoisePattern(value) for value in substrings if value)
        return cls((*DEFAULT_NOISE_PATTERNS, *extra))

    def is_noise(self, line: str) -> bool:
        return any(pattern.matches(line) for pattern in self.patterns)
