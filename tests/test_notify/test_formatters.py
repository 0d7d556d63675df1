"""Tests for notification formatters — subjects, bodies, summarisation."""

from __future__ import annotations

from alertengine.core.types import AlertEventKind, MetricKind, NotificationBatch, NotificationPayload
from alertengine.notify.formatters import (
    SUMMARY_LIMIT,
    format_item,
    format_subject,
    format_text,
    format_value,
    webhook_body,
)


def _item(
    i: int = 1,
    kind: MetricKind = MetricKind.CPU,
    state: AlertEventKind = AlertEventKind.FIRED,
    value: float = 92.0,
) -> NotificationPayload:
    return NotificationPayload(
        alert_key=f"pve-1/vm-{i}:{kind}",
        entity_description=f"vm-{i}",
        metric_kind=kind,
        value=value,
        threshold=85.0 if kind != MetricKind.LIVENESS else 0.0,
        state=state,
        occurred_at=1_700_000_000_000.0,
    )


def _batch(n: int = 1, kind: AlertEventKind = AlertEventKind.FIRED, test: bool = False) -> NotificationBatch:
    return NotificationBatch(
        channel="ops",
        kind=kind,
        items=[_item(i, state=kind) for i in range(n)],
        test=test,
    )


class TestValues:
    def test_percent(self) -> None:
        assert format_value(MetricKind.DISK, 91.234) == "91.2%"

    def test_liveness(self) -> None:
        assert format_value(MetricKind.LIVENESS, 0.0) == "down"
        assert format_value(MetricKind.LIVENESS, 1.0) == "up"

    def test_liveness_item(self) -> None:
        assert format_item(_item(kind=MetricKind.LIVENESS, value=0.0)) == "vm-1 is down"
        recovered = _item(kind=MetricKind.LIVENESS, value=1.0, state=AlertEventKind.RECOVERED)
        assert format_item(recovered) == "vm-1 is back up"

    def test_metric_item(self) -> None:
        assert format_item(_item()) == "vm-1 cpu 92.0% (threshold 85.0%)"


class TestSubjects:
    def test_single_fired(self) -> None:
        assert format_subject(_batch()).startswith("[ALERT] vm-0 cpu")

    def test_recovered_labelled(self) -> None:
        assert format_subject(_batch(3, AlertEventKind.RECOVERED)) == "[RESOLVED] 3 alerts resolved"

    def test_multiple_fired(self) -> None:
        assert format_subject(_batch(4)) == "[ALERT] 4 alerts"

    def test_test_prefix(self) -> None:
        assert format_subject(_batch(test=True)).startswith("[TEST ALERT]")


class TestBodies:
    def test_summarised_past_limit(self) -> None:
        text = format_text(_batch(SUMMARY_LIMIT + 3))
        assert "... and 3 more" in text
        assert text.count("\n- ") == SUMMARY_LIMIT

    def test_timestamps_rendered_utc(self) -> None:
        assert "2023-11-14 22:13:20 UTC" in format_text(_batch())

    def test_webhook_body(self) -> None:
        body = webhook_body(_batch(2))
        assert body["type"] == "fired"
        assert body["count"] == 2
        assert body["test"] is False
        assert body["alerts"][0]["alert_key"] == "pve-1/vm-0:cpu"
