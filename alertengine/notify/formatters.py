"""Pure functions that render NotificationBatch objects for channels."""

from __future__ import annotations

import datetime
from typing import Any

from alertengine.core.types import (
    AlertEventKind,
    MetricKind,
    NotificationBatch,
    NotificationPayload,
)

# Batches larger than this are summarised instead of listed in full.
SUMMARY_LIMIT = 10

_UNITS: dict[MetricKind, str] = {
    MetricKind.CPU: "%",
    MetricKind.MEMORY: "%",
    MetricKind.DISK: "%",
    MetricKind.LIVENESS: "",
}

_LABELS: dict[AlertEventKind, str] = {
    AlertEventKind.FIRED: "ALERT",
    AlertEventKind.RECOVERED: "RESOLVED",
}


def _fmt_time(epoch_ms: float) -> str:
    ts = datetime.datetime.fromtimestamp(epoch_ms / 1000.0, tz=datetime.UTC)
    return ts.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_value(metric_kind: MetricKind, value: float) -> str:
    """Human-readable metric value (liveness renders as up/down)."""
    if metric_kind is MetricKind.LIVENESS:
        return "up" if value > 0 else "down"
    return f"{value:.1f}{_UNITS[metric_kind]}"


def format_item(item: NotificationPayload) -> str:
    """One line per alert."""
    if item.metric_kind is MetricKind.LIVENESS:
        if item.state == AlertEventKind.FIRED:
            return f"{item.entity_description} is down"
        return f"{item.entity_description} is back up"
    value = format_value(item.metric_kind, item.value)
    threshold = format_value(item.metric_kind, item.threshold)
    return (
        f"{item.entity_description} {item.metric_kind.value} {value}"
        f" (threshold {threshold})"
    )


def format_subject(batch: NotificationBatch) -> str:
    """Subject / title line, clearly labelled fired vs recovered."""
    label = _LABELS[batch.kind]
    if batch.test:
        label = f"TEST {label}"
    if batch.count == 1:
        return f"[{label}] {format_item(batch.items[0])}"
    noun = "alerts" if batch.kind == AlertEventKind.FIRED else "alerts resolved"
    return f"[{label}] {batch.count} {noun}"


def format_text(batch: NotificationBatch) -> str:
    """Plain-text body listing each alert, summarised past SUMMARY_LIMIT."""
    lines = [format_subject(batch), ""]
    for item in batch.items[:SUMMARY_LIMIT]:
        lines.append(f"- {format_item(item)} at {_fmt_time(item.occurred_at)}")
    hidden = batch.count - SUMMARY_LIMIT
    if hidden > 0:
        lines.append(f"... and {hidden} more")
    return "\n".join(lines)


def webhook_body(batch: NotificationBatch) -> dict[str, Any]:
    """JSON body posted to webhook endpoints."""
    return {
        "type": batch.kind.value,
        "test": batch.test,
        "title": format_subject(batch),
        "text": format_text(batch),
        "count": batch.count,
        "created_at": batch.created_at,
        "alerts": [item.model_dump(mode="json") for item in batch.items],
    }
