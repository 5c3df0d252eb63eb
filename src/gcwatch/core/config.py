"""Configuration generations and their atomic swap.

A ConfigGeneration is immutable. Reloading builds a new generation and
swaps it in under a lock; anything that started evaluating with the old
generation keeps a consistent view until it finishes.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Literal, TypeVar

from gcwatch.core.exceptions import ConfigInvalid
from gcwatch.core.models import AlarmConfig, CorrelationRule, RouteRule

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class EngineSettings:
    """Tunables for the embedded engine."""

    retention_seconds: float = 900.0
    max_samples_per_key: int | None = None
    evaluation_interval_seconds: float = 10.0
    eviction_interval_seconds: float = 60.0
    evaluation_budget_seconds: float | None = 0.25
    max_samples_per_window: int | None = None
    correlation_trigger: Literal["transition", "tick"] = "transition"
    suppression_seconds: float = 300.0
    cooldown_seconds: float = 60.0
    cooldown_burst: int = 5
    max_retries: int = 3
    base_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 5.0
    dispatch_concurrency: int = 8
    ingest_queue_size: int = 10_000
    diagnostics_buffer_size: int = 1000
    default_sinks: tuple[str, ...] = ()


@dataclass(frozen=True)
class SinkSpec:
    """Declarative description of a sink, built into a SinkPort by adapters."""

    name: str
    type: str
    kind: str = "notification"
    url: str | None = None
    headers: tuple[tuple[str, str], ...] = ()
    timeout_seconds: float = 5.0
    cooldown_seconds: float | None = None
    burst: int | None = None


@dataclass(frozen=True)
class ConfigGeneration:
    """One complete, validated configuration set."""

    settings: EngineSettings = field(default_factory=EngineSettings)
    alarms: tuple[AlarmConfig, ...] = ()
    rules: tuple[CorrelationRule, ...] = ()
    routes: tuple[RouteRule, ...] = ()
    sinks: tuple[SinkSpec, ...] = ()
    errors: tuple[ConfigInvalid, ...] = ()
    number: int = 0

    def alarm(self, alarm_id: str) -> AlarmConfig | None:
        for alarm in self.alarms:
            if alarm.id == alarm_id:
                return alarm
        return None

    @property
    def invalid_definitions(self) -> list[str]:
        return [str(error) for error in self.errors]


def _dedupe(
    items: Iterable[T],
    kind: str,
    ident: Callable[[T], str],
    errors: list[ConfigInvalid],
) -> list[T]:
    seen: set[str] = set()
    kept: list[T] = []
    for item in items:
        name = ident(item)
        if name in seen:
            errors.append(ConfigInvalid("duplicate id", definition_id=name, kind=kind))
            continue
        seen.add(name)
        kept.append(item)
    return kept


def build_generation(
    *,
    settings: EngineSettings | None = None,
    alarms: Iterable[AlarmConfig] = (),
    rules: Iterable[CorrelationRule] = (),
    routes: Iterable[RouteRule] = (),
    sinks: Iterable[SinkSpec] = (),
    errors: Iterable[ConfigInvalid] = (),
) -> ConfigGeneration:
    """Cross-validate definitions and assemble a generation.

    Duplicates and dangling references are rejected one definition at a
    time; everything else still loads.
    """
    problems = list(errors)
    alarm_list = _dedupe(alarms, "alarm", lambda a: a.id, problems)
    sink_list = _dedupe(sinks, "sink", lambda s: s.name, problems)
    alarm_ids = {a.id for a in alarm_list}
    sink_names = {s.name for s in sink_list}

    rule_list: list[CorrelationRule] = []
    for rule in _dedupe(rules, "rule", lambda r: r.id, problems):
        unknown = sorted(rule.alarm_ids - alarm_ids)
        if unknown:
            problems.append(
                ConfigInvalid(
                    f"references unknown alarms: {', '.join(unknown)}",
                    definition_id=rule.id,
                    kind="rule",
                )
            )
            continue
        rule_list.append(rule)

    route_list: list[RouteRule] = []
    for route in _dedupe(routes, "route", lambda r: r.name, problems):
        unknown = sorted(set(route.sinks) - sink_names)
        if unknown:
            problems.append(
                ConfigInvalid(
                    f"references unknown sinks: {', '.join(unknown)}",
                    definition_id=route.name,
                    kind="route",
                )
            )
            continue
        route_list.append(route)

    settings = settings or EngineSettings()
    missing_defaults = [n for n in settings.default_sinks if n not in sink_names]
    if missing_defaults:
        problems.append(
            ConfigInvalid(
                f"default_sinks references unknown sinks: {', '.join(missing_defaults)}",
                kind="settings",
            )
        )
        settings = replace(
            settings,
            default_sinks=tuple(n for n in settings.default_sinks if n in sink_names),
        )

    for problem in problems:
        logger.error("Configuration rejected: %s", problem)

    return ConfigGeneration(
        settings=settings,
        alarms=tuple(alarm_list),
        rules=tuple(rule_list),
        routes=tuple(route_list),
        sinks=tuple(sink_list),
        errors=tuple(problems),
    )


class ConfigRegistry:
    """Process-wide holder of the current configuration generation."""

    def __init__(self, generation: ConfigGeneration | None = None) -> None:
        self._lock = threading.Lock()
        self._current = replace(generation or ConfigGeneration(), number=1)

    @property
    def current(self) -> ConfigGeneration:
        return self._current

    def load(self, generation: ConfigGeneration) -> ConfigGeneration:
        """Atomically replace the current generation and return the new one."""
        with self._lock:
            numbered = replace(generation, number=self._current.number + 1)
            self._current = numbered
        logger.info(
            "Loaded configuration generation %d: %d alarms, %d rules, %d invalid",
            numbered.number,
            len(numbered.alarms),
            len(numbered.rules),
            len(numbered.errors),
        )
        return numbered
