from __future__ import annotations

import pytest

from pyfieldlink._topics import (
    SubscriptionRegistry,
    TopicParts,
    command_topic,
    parse_topic,
    topic_matches,
    validate_pattern,
)


def test_parse_topic_with_action() -> None:
    parts = parse_topic("device/dev-1/sms/incoming")
    assert parts == TopicParts(device_id="dev-1", category="sms", action="incoming")
    assert parts.event_name == "sms:incoming"


def test_parse_topic_without_action_uses_bare_category() -> None:
    parts = parse_topic("device/dev-1/status")
    assert parts is not None
    assert parts.action is None
    assert parts.event_name == "status"


def test_parse_topic_folds_extra_segments_into_action() -> None:
    parts = parse_topic("device/dev-1/storage/list/result")
    assert parts is not None
    assert parts.action == "list/result"


@pytest.mark.parametrize("topic", ["device/dev-1", "sensor/dev-1/status", "device//status", ""])
def test_parse_topic_rejects_foreign_topics(topic: str) -> None:
    assert parse_topic(topic) is None


def test_command_topic() -> None:
    assert command_topic("dev-1", "send-sms") == "device/dev-1/command/send-sms"


@pytest.mark.parametrize(
    ("pattern", "topic", "expected"),
    [
        ("device/+/status", "device/a/status", True),
        ("device/+/status", "device/a/b/status", False),
        ("device/+/gpio/#", "device/a/gpio/status", True),
        ("device/+/gpio/#", "device/a/gpio/pin/4", True),
        ("device/+/gpio/#", "device/a/gps/status", False),
        ("device/a/status", "device/a/status", True),
        ("device/a/status", "device/a/status/extra", False),
        ("#", "anything/at/all", True),
    ],
)
def test_topic_matches(pattern: str, topic: str, expected: bool) -> None:
    assert topic_matches(pattern, topic) is expected


@pytest.mark.parametrize("pattern", ["", "device/#/status", "device/a+/status", "device/x#"])
def test_validate_pattern_rejects_malformed_filters(pattern: str) -> None:
    with pytest.raises(ValueError):
        validate_pattern(pattern)


def test_registry_deduplicates_and_keeps_order() -> None:
    registry = SubscriptionRegistry(["device/+/status", "device/+/heartbeat"])

    added = registry.add(["device/+/heartbeat", "device/+/sms/#"])

    assert added == ["device/+/sms/#"]
    assert list(registry) == ["device/+/status", "device/+/heartbeat", "device/+/sms/#"]
    assert len(registry) == 3


def test_registry_remove_reports_only_known_patterns() -> None:
    registry = SubscriptionRegistry(["device/+/status"])
    assert registry.remove(["device/+/status", "device/+/missing"]) == ["device/+/status"]
    assert "device/+/status" not in registry


def test_registry_matching() -> None:
    registry = SubscriptionRegistry(["device/+/status", "device/+/gps/#", "device/a/status"])
    assert registry.matching("device/a/status") == ["device/+/status", "device/a/status"]
