"""Topic parsing, wildcard matching and the subscription registry."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from pyfieldlink._constants import COMMAND_CATEGORY, TOPIC_ROOT


@dataclass(frozen=True, slots=True)
class TopicParts:
    device_id: str
    category: str
    action: str | None = None

    @property
    def event_name(self) -> str:
        """``category:action``, or the bare category for 3-segment topics."""
        if self.action is None:
            return self.category
        return f"{self.category}:{self.action}"


def parse_topic(topic: str) -> TopicParts | None:
    """Split ``device/{id}/{category}[/{action}...]``.

    Segments past the fourth are folded into the action (``sub/path``).
    Returns ``None`` for topics outside the device hierarchy.
    """
    parts = topic.split("/")
    if len(parts) < 3 or parts[0] != TOPIC_ROOT:
        return None
    device_id, category = parts[1], parts[2]
    if not device_id or not category:
        return None
    action = "/".join(parts[3:]) if len(parts) > 3 else None
    if action == "":
        action = None
    return TopicParts(device_id=device_id, category=category, action=action)


def command_topic(device_id: str, command: str) -> str:
    return f"{TOPIC_ROOT}/{device_id}/{COMMAND_CATEGORY}/{command}"


def validate_pattern(pattern: str) -> str:
    """Return *pattern* if it is a well-formed MQTT filter, else raise ``ValueError``."""
    if not pattern:
        raise ValueError("Topic pattern is empty")
    segments = pattern.split("/")
    for index, segment in enumerate(segments):
        if "#" in segment and (segment != "#" or index != len(segments) - 1):
            raise ValueError(f"'#' must be the whole last segment: {pattern!r}")
        if "+" in segment and segment != "+":
            raise ValueError(f"'+' must occupy a whole segment: {pattern!r}")
    return pattern


def topic_matches(pattern: str, topic: str) -> bool:
    """Return True when *topic* is selected by the filter *pattern*.

    ``+`` matches exactly one segment, a trailing ``#`` matches every
    remaining segment, literals must be equal, and segment counts must agree
    unless ``#`` is present.
    """
    pattern_parts = pattern.split("/")
    topic_parts = topic.split("/")

    for index, segment in enumerate(pattern_parts):
        if segment == "#":
            return True
        if index >= len(topic_parts):
            return False
        if segment != "+" and segment != topic_parts[index]:
            return False
    return len(pattern_parts) == len(topic_parts)


class SubscriptionRegistry:
    """Ordered, de-duplicated set of topic patterns.

    The connection layer re-issues the full registry after every successful
    (re)connect, so adding a pattern twice never produces a duplicate
    subscription.
    """

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self._patterns: dict[str, None] = {}
        self.add(patterns)

    def add(self, patterns: Iterable[str]) -> list[str]:
        """Register *patterns*; returns the ones that were not yet present."""
        added: list[str] = []
        for pattern in patterns:
            validate_pattern(pattern)
            if pattern in self._patterns:
                continue
            self._patterns[pattern] = None
            added.append(pattern)
        return added

    def remove(self, patterns: Iterable[str]) -> list[str]:
        removed: list[str] = []
        for pattern in patterns:
            if self._patterns.pop(pattern, 0) is None:
                removed.append(pattern)
        return removed

    def matching(self, topic: str) -> list[str]:
        return [pattern for pattern in self._patterns if topic_matches(pattern, topic)]

    def __contains__(self, pattern: object) -> bool:
        return pattern in self._patterns

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._patterns))

    def __len__(self) -> int:
        return len(self._patterns)
