"""Event dispatch with deduplication, per-destination cooldown and retries."""

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace

from gcwatch.core.exceptions import DispatchFailure
from gcwatch.core.models import DeliveryResult, DispatchEvent, RCAEvent, RouteRule
from gcwatch.core.ports import EvidenceEnricher, SinkPort

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_retries: Attempts after the first one.
        base_backoff_seconds: Delay before the first retry.
        max_backoff_seconds: Cap on any single delay.
        jitter: Fraction of the delay added at random.
    """

    max_retries: int = 3
    base_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 5.0
    jitter: float = 0.1

    def delay(self, attempt: int) -> float:
        base = min(self.max_backoff_seconds, self.base_backoff_seconds * (2**attempt))
        return base + random.uniform(0, base * self.jitter)


@dataclass(frozen=True)
class DestinationPolicy:
    """At most ``burst`` deliveries per ``cooldown_seconds`` to one sink."""

    cooldown_seconds: float = 60.0
    burst: int = 5


@dataclass
class DispatchReport:
    """What happened to one dispatched event."""

    event_id: str
    delivered: list[str] = field(default_factory=list)
    rate_limited: list[str] = field(default_factory=list)
    failures: list[DispatchFailure] = field(default_factory=list)
    suppressed: bool = False
    unrouted: bool = False


class Dispatcher:
    """Routes alarm transitions and RCA events to sinks.

    Args:
        sinks: Sinks by name.
        routes: Routing rules; every matching route contributes its sinks.
        default_sinks: Used when no route matches.
        suppression_seconds: Identical events within this window collapse.
        default_policy: Cooldown applied to sinks without their own policy.
        policies: Per-sink cooldown overrides.
        retry: Backoff policy for failed deliveries.
        enrichers: Collaborators adding evidence to RCA events.
        clock: Source of "now" in Unix seconds.
        sleep: Awaitable used between retries.
    """

    def __init__(
        self,
        sinks: Mapping[str, SinkPort] | None = None,
        routes: Sequence[RouteRule] = (),
        *,
        default_sinks: Sequence[str] = (),
        suppression_seconds: float = 300.0,
        default_policy: DestinationPolicy | None = None,
        policies: Mapping[str, DestinationPolicy] | None = None,
        retry: RetryPolicy | None = None,
        enrichers: Iterable[EvidenceEnricher] = (),
        clock: Callable[[], float] = time.time,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._sinks: dict[str, SinkPort] = dict(sinks or {})
        self._routes = tuple(routes)
        self._default_sinks = tuple(default_sinks)
        self._suppression_seconds = suppression_seconds
        self._default_policy = default_policy or DestinationPolicy()
        self._policies = dict(policies or {})
        self._retry = retry or RetryPolicy()
        self._enrichers = list(enrichers)
        self._clock = clock
        self._sleep = sleep
        self._last_seen: dict[str, float] = {}
        self._deliveries: dict[str, deque[float]] = {}

    def configure(
        self,
        *,
        sinks: Mapping[str, SinkPort] | None = None,
        routes: Sequence[RouteRule] | None = None,
        default_sinks: Sequence[str] | None = None,
        policies: Mapping[str, DestinationPolicy] | None = None,
    ) -> None:
        """Swap routing configuration; suppression and cooldown history persist."""
        if sinks is not None:
            self._sinks = dict(sinks)
        if routes is not None:
            self._routes = tuple(routes)
        if default_sinks is not None:
            self._default_sinks = tuple(default_sinks)
        if policies is not None:
            self._policies = dict(policies)

    def route(self, event: DispatchEvent) -> list[str]:
        """Return the sink names an event is routed to, in route order."""
        names: list[str] = []
        for route in self._routes:
            if route.matches(event):
                names.extend(n for n in route.sinks if n not in names)
        if not names:
            names = list(self._default_sinks)
        return names

    def _suppressed(self, event: DispatchEvent, now: float) -> bool:
        key = event.dedup_key
        last = self._last_seen.get(key)
        if last is not None and now - last < self._suppression_seconds:
            return True
        self._last_seen[key] = now
        if len(self._last_seen) > 1024:
            horizon = now - self._suppression_seconds
            self._last_seen = {k: t for k, t in self._last_seen.items() if t >= horizon}
        return False

    def _admit(self, sink_name: str, now: float) -> bool:
        policy = self._policies.get(sink_name, self._default_policy)
        history = self._deliveries.setdefault(sink_name, deque())
        while history and now - history[0] >= policy.cooldown_seconds:
            history.popleft()
        if len(history) >= policy.burst:
            return False
        history.append(now)
        return True

    async def _enrich(self, event: RCAEvent) -> RCAEvent:
        evidence = dict(event.evidence)
        for enricher in self._enrichers:
            try:
                evidence.update(await enricher(event))
            except Exception:
                logger.exception("Evidence enricher failed for %s", event.rule_id)
        return replace(event, evidence=evidence)

    async def dispatch(self, event: DispatchEvent) -> DispatchReport:
        """Deliver an event to its routed sinks.

        Never raises for sink problems: failures after retries are returned
        as DispatchFailure entries in the report.
        """
        now = self._clock()
        report = DispatchReport(event_id=event.dedup_key)
        if self._suppressed(event, now):
            logger.debug("Suppressed duplicate event %s", event.dedup_key)
            report.suppressed = True
            return report

        if isinstance(event, RCAEvent) and self._enrichers:
            event = await self._enrich(event)

        targets: list[SinkPort] = []
        for name in self.route(event):
            sink = self._sinks.get(name)
            if sink is None:
                logger.error("Route references unknown sink %s", name)
                report.failures.append(
                    DispatchFailure(name, event.dedup_key, 0, "unknown sink")
                )
                continue
            if not self._admit(name, now):
                logger.warning("Sink %s in cooldown, dropping %s", name, event.dedup_key)
                report.rate_limited.append(name)
                continue
            targets.append(sink)

        if not targets and not report.rate_limited and not report.failures:
            report.unrouted = True
            return report

        outcomes = await asyncio.gather(*(self._deliver(sink, event) for sink in targets))
        for sink, failure in zip(targets, outcomes):
            if failure is None:
                report.delivered.append(sink.name)
            else:
                report.failures.append(failure)
        return report

    async def _deliver(self, sink: SinkPort, event: DispatchEvent) -> DispatchFailure | None:
        attempts = self._retry.max_retries + 1
        last_error = ""
        for attempt in range(attempts):
            try:
                result = await sink.deliver(event)
            except Exception as exc:  # noqa: BLE001
                result = DeliveryResult.failure(f"{type(exc).__name__}: {exc}")
            if result.ok:
                if attempt:
                    logger.info(
                        "Delivered %s to %s after %d attempts",
                        event.dedup_key,
                        sink.name,
                        attempt + 1,
                    )
                return None
            last_error = result.detail
            if attempt + 1 < attempts:
                delay = self._retry.delay(attempt)
                logger.warning(
                    "Delivery of %s to %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    event.dedup_key,
                    sink.name,
                    attempt + 1,
                    attempts,
                    last_error,
                    delay,
                )
                await self._sleep(delay)
        failure = DispatchFailure(sink.name, event.dedup_key, attempts, last_error)
        logger.error("%s", failure)
        return failure
