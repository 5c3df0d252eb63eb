"""HTTP webhook sinks backed by httpx."""

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from gcwatch.core.encoding.records import event_to_dict
from gcwatch.core.models import AlarmTransition, DeliveryResult, DispatchEvent, RCAEvent

logger = logging.getLogger(__name__)


def notification_message(event: DispatchEvent) -> str:
    """One-line human readable summary of an event."""
    if isinstance(event, RCAEvent):
        alarms = ", ".join(sorted(event.triggering_alarms)) or "metric signals"
        return (
            f"[{event.severity.value.upper()}] {event.classification} "
            f"(rule {event.rule_id}) triggered by {alarms}"
        )
    return (
        f"[{event.severity.value.upper()}] alarm {event.alarm_id} "
        f"{event.previous.value} -> {event.current.value}: {event.reason}"
    )


def remediation_payload(event: RCAEvent) -> dict[str, Any]:
    return {
        "action": event.suggested_action,
        "target": event.target or event.namespace,
        "reason": event.classification,
        "rule_id": event.rule_id,
        "classification": event.classification,
        "evidence": event.evidence,
    }


class _WebhookSink:
    def __init__(
        self,
        name: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self._url = url
        self._headers = dict(headers or {})
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _post(self, payload: dict[str, Any]) -> DeliveryResult:
        try:
            response = await self._get_client().post(
                self._url, json=payload, headers=self._headers, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            return DeliveryResult.failure(f"{type(exc).__name__}: {exc}")
        if response.is_success:
            return DeliveryResult.success(f"HTTP {response.status_code}")
        return DeliveryResult.failure(f"HTTP {response.status_code}")

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class WebhookNotificationSink(_WebhookSink):
    """Posts every routed event as JSON with a summary message."""

    kind = "notification"

    async def deliver(self, event: DispatchEvent) -> DeliveryResult:
        payload = event_to_dict(event)
        payload["message"] = notification_message(event)
        return await self._post(payload)


class WebhookRemediationSink(_WebhookSink):
    """Posts remediation requests for RCA events that suggest an action.

    Alarm transitions and RCA events whose action is "none" are
    acknowledged without a request.
    """

    kind = "remediation"

    async def deliver(self, event: DispatchEvent) -> DeliveryResult:
        if isinstance(event, AlarmTransition) or event.suggested_action == "none":
            return DeliveryResult.success("no action")
        logger.info(
            "Requesting remediation %s for %s",
            event.suggested_action,
            event.target or event.namespace,
        )
        return await self._post(remediation_payload(event))
