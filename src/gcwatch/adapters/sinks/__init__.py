"""Notification and remediation sinks."""

from collections.abc import Iterable

import httpx

from gcwatch.adapters.sinks.recording import RecordingSink
from gcwatch.adapters.sinks.webhook import (
    WebhookNotificationSink,
    WebhookRemediationSink,
    notification_message,
    remediation_payload,
)
from gcwatch.core.config import SinkSpec
from gcwatch.core.exceptions import ConfigInvalid
from gcwatch.core.ports import SinkPort

__all__ = [
    "RecordingSink",
    "WebhookNotificationSink",
    "WebhookRemediationSink",
    "build_sinks",
    "notification_message",
    "remediation_payload",
]


def build_sink(spec: SinkSpec, client: httpx.AsyncClient | None = None) -> SinkPort:
    """Build one sink from its declarative spec.

    Raises:
        ConfigInvalid: Unknown sink type or a webhook without a URL.
    """
    if spec.type == "recording":
        return RecordingSink(spec.name, kind=spec.kind)
    if spec.type == "webhook":
        if not spec.url:
            raise ConfigInvalid("webhook sinks need a url", definition_id=spec.name, kind="sink")
        sink_class = (
            WebhookRemediationSink if spec.kind == "remediation" else WebhookNotificationSink
        )
        return sink_class(
            spec.name,
            spec.url,
            headers=dict(spec.headers),
            timeout_seconds=spec.timeout_seconds,
            client=client,
        )
    raise ConfigInvalid(f"unknown sink type {spec.type!r}", definition_id=spec.name, kind="sink")


def build_sinks(
    specs: Iterable[SinkSpec], client: httpx.AsyncClient | None = None
) -> dict[str, SinkPort]:
    """Build sinks by name. A shared client is reused across webhooks."""
    return {spec.name: build_sink(spec, client) for spec in specs}
