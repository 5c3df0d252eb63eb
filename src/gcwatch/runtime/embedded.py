"""Embedded engine: wires storage, evaluation, correlation and dispatch.

The engine can be driven two ways. Embedders that own the loop call
``ingest``, ``tick`` and ``flush`` directly (this is what the tests do
with a fake clock). Long-running processes call ``start``, which runs
background tasks for ingestion, periodic evaluation, eviction and
dispatch; ``submit`` then only enqueues and never blocks the producer.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from gcwatch.adapters.logging import DiagnosticsHandler
from gcwatch.adapters.sinks import build_sink
from gcwatch.adapters.storage.in_memory import InMemorySeriesStorage
from gcwatch.adapters.storage.ring_buffer import RingBufferLogStorage
from gcwatch.core.aggregator import WindowedAggregator
from gcwatch.core.config import ConfigGeneration, ConfigRegistry, EngineSettings, SinkSpec
from gcwatch.core.correlation import CorrelationEngine, build_snapshot
from gcwatch.core.dispatcher import (
    DestinationPolicy,
    Dispatcher,
    DispatchReport,
    RetryPolicy,
    Sleep,
)
from gcwatch.core.evaluator import AlarmEvaluator
from gcwatch.core.exceptions import (
    ConfigInvalid,
    EvaluationTimeout,
    InsufficientData,
    StoreCorrupted,
)
from gcwatch.core.models import (
    AlarmState,
    AlarmTransition,
    DispatchEvent,
    Episode,
    IngestReport,
    LogEntry,
    MetricSelector,
    RCAEvent,
    RetentionPolicy,
    Sample,
    Statistic,
    TrendPredicate,
    Window,
)
from gcwatch.core.ports import (
    CheckpointStoragePort,
    EvidenceEnricher,
    LogStoragePort,
    SeriesStoragePort,
    SinkPort,
)

logger = logging.getLogger(__name__)

_INGEST_BATCH = 500


@dataclass
class TickResult:
    """Output of one evaluation tick."""

    timestamp: float
    transitions: list[AlarmTransition] = field(default_factory=list)
    rca_events: list[RCAEvent] = field(default_factory=list)
    timeouts: list[EvaluationTimeout] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def events(self) -> list[DispatchEvent]:
        return [*self.transitions, *self.rca_events]


@dataclass(frozen=True)
class EngineHealth:
    """Point-in-time health signal of the engine."""

    generation: int
    running: bool
    invalid_definitions: tuple[str, ...]
    ingested: int
    duplicates: int
    stale: int
    dropped: int
    invalid_samples: int
    evaluation_timeouts: int
    evaluation_errors: int
    rca_events: int
    dispatched: int
    dispatch_failures: int
    suppressed: int
    rate_limited: int
    queue_depth: int
    pending_events: int
    last_tick_at: float | None
    recent_failures: tuple[str, ...] = ()
    fatal_error: str | None = None

    @property
    def status(self) -> str:
        if self.fatal_error is not None:
            return "failed"
        if self.invalid_definitions or self.recent_failures:
            return "degraded"
        return "ok"


def _policies(specs: Iterable[SinkSpec], settings: EngineSettings) -> dict[str, DestinationPolicy]:
    policies: dict[str, DestinationPolicy] = {}
    for spec in specs:
        if spec.cooldown_seconds is None and spec.burst is None:
            continue
        policies[spec.name] = DestinationPolicy(
            cooldown_seconds=spec.cooldown_seconds or settings.cooldown_seconds,
            burst=spec.burst or settings.cooldown_burst,
        )
    return policies


class EmbeddedEngine:
    """In-process GC health monitoring engine.

    Args:
        generation: Initial configuration; an empty one if omitted.
        storage: Series store; an in-memory store honouring the
            configured retention if omitted.
        sinks: Extra sinks by name. They take precedence over sinks
            declared in the configuration with the same name.
        checkpoint: Optional alarm state persistence.
        log_storage: Diagnostics buffer; a ring buffer if omitted.
        enrichers: Evidence enrichers applied to RCA events.
        clock: Source of "now" in Unix seconds.
        sleep: Awaitable used between delivery retries.
        http_client: Shared client for webhook sinks.
        diagnostics_level: Minimum level captured into the diagnostics buffer.
    """

    def __init__(
        self,
        generation: ConfigGeneration | None = None,
        *,
        storage: SeriesStoragePort | None = None,
        sinks: Mapping[str, SinkPort] | None = None,
        checkpoint: CheckpointStoragePort | None = None,
        log_storage: LogStoragePort | None = None,
        enrichers: Iterable[EvidenceEnricher] = (),
        clock: Callable[[], float] = time.time,
        sleep: Sleep = asyncio.sleep,
        http_client: httpx.AsyncClient | None = None,
        diagnostics_level: int = logging.WARNING,
    ) -> None:
        self._clock = clock
        self.registry = ConfigRegistry(generation)
        current = self.registry.current
        settings = current.settings

        self.log_storage = log_storage or RingBufferLogStorage(settings.diagnostics_buffer_size)
        self._handler = DiagnosticsHandler(self.log_storage, level=diagnostics_level)
        logging.getLogger("gcwatch").addHandler(self._handler)

        self.storage = storage or InMemorySeriesStorage(
            RetentionPolicy(settings.retention_seconds, settings.max_samples_per_key),
            clock=clock,
        )
        self.aggregator = WindowedAggregator(
            self.storage,
            budget_seconds=settings.evaluation_budget_seconds,
            max_samples=settings.max_samples_per_window,
            clock=clock,
        )
        self.evaluator = AlarmEvaluator(self.aggregator, clock=clock)
        self.evaluator.sync(current.alarms, current.errors)
        self.correlation = CorrelationEngine(current.rules, clock=clock)

        self._extra_sinks = dict(sinks or {})
        self._http_client = http_client
        self._owns_client = http_client is None
        self._sink_errors: list[ConfigInvalid] = []
        self.dispatcher = Dispatcher(
            self._build_sinks(current.sinks),
            current.routes,
            default_sinks=settings.default_sinks,
            suppression_seconds=settings.suppression_seconds,
            default_policy=DestinationPolicy(settings.cooldown_seconds, settings.cooldown_burst),
            policies=_policies(current.sinks, settings),
            retry=RetryPolicy(
                max_retries=settings.max_retries,
                base_backoff_seconds=settings.base_backoff_seconds,
                max_backoff_seconds=settings.max_backoff_seconds,
            ),
            enrichers=enrichers,
            clock=clock,
            sleep=sleep,
        )
        self._checkpoint = checkpoint

        self._tick_lock: asyncio.Lock | None = None
        self._outbox: deque[DispatchEvent] = deque()
        self._ingest_queue: asyncio.Queue[Sample] | None = None
        self._outbox_ready: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._fatal: BaseException | None = None
        self._counters: dict[str, int] = dict.fromkeys(
            (
                "ingested",
                "duplicates",
                "stale",
                "dropped",
                "invalid_samples",
                "evaluation_timeouts",
                "evaluation_errors",
                "rca_events",
                "dispatched",
                "dispatch_failures",
                "suppressed",
                "rate_limited",
            ),
            0,
        )
        self._recent_failures: deque[str] = deque(maxlen=20)
        self._last_tick_at: float | None = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def generation(self) -> ConfigGeneration:
        return self.registry.current

    @property
    def settings(self) -> EngineSettings:
        return self.registry.current.settings

    def _build_sinks(self, specs: Iterable[SinkSpec]) -> dict[str, SinkPort]:
        built: dict[str, SinkPort] = {}
        errors: list[ConfigInvalid] = []
        for spec in specs:
            if spec.name in self._extra_sinks:
                continue
            if spec.type == "webhook" and self._http_client is None:
                self._http_client = httpx.AsyncClient()
            try:
                built[spec.name] = build_sink(spec, self._http_client)
            except ConfigInvalid as exc:
                logger.error("Configuration rejected: %s", exc)
                errors.append(exc)
        self._sink_errors = errors
        built.update(self._extra_sinks)
        return built

    def reload(self, generation: ConfigGeneration) -> ConfigGeneration:
        """Swap in a new configuration generation.

        Unchanged alarms and rules keep their state and open episodes;
        changed ones restart; removed ones are dropped. Retention and the
        evaluation budget are fixed at construction.
        """
        current = self.registry.load(generation)
        self.evaluator.sync(current.alarms, current.errors)
        self.correlation.load(current.rules)
        self.dispatcher.configure(
            sinks=self._build_sinks(current.sinks),
            routes=current.routes,
            default_sinks=current.settings.default_sinks,
            policies=_policies(current.sinks, current.settings),
        )
        return current

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, samples: Iterable[Sample], *, now: float | None = None) -> IngestReport:
        """Store samples synchronously and return what happened to them."""
        report = self.storage.ingest_many(samples, now=self._clock() if now is None else now)
        self._counters["ingested"] += report.accepted
        self._counters["duplicates"] += report.duplicates
        self._counters["stale"] += len(report.stale)
        self._counters["invalid_samples"] += report.invalid
        return report

    def submit(self, *samples: Sample) -> int:
        """Hand samples to ingestion without blocking.

        While the engine is running, samples are queued for the ingestion
        worker; when the queue is full the remainder is dropped and counted.
        Otherwise they are stored immediately.

        Returns:
            Number of samples accepted for ingestion.
        """
        if self._ingest_queue is None:
            self.ingest(samples)
            return len(samples)
        queued = 0
        for sample in samples:
            try:
                self._ingest_queue.put_nowait(sample)
            except asyncio.QueueFull:
                dropped = len(samples) - queued
                self._counters["dropped"] += dropped
                logger.warning("Ingestion queue full, dropping %d samples", dropped)
                break
            queued += 1
        return queued

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _get_tick_lock(self) -> asyncio.Lock:
        if self._tick_lock is None:
            self._tick_lock = asyncio.Lock()
        return self._tick_lock

    async def tick(self, now: float | None = None) -> TickResult:
        """Evaluate every alarm, then correlation, and queue events for dispatch.

        The configuration generation is read once, so a reload during the
        tick takes effect on the next one.
        """
        async with self._get_tick_lock():
            now = self._clock() if now is None else now
            generation = self.registry.current
            cycle = self.evaluator.evaluate_all(generation.alarms, now)
            result = TickResult(
                timestamp=now,
                transitions=cycle.transitions,
                timeouts=cycle.timeouts,
                errors=cycle.errors,
            )

            rules = self.correlation.rules
            if rules:
                snapshot = build_snapshot(now, self.evaluator.states(), rules, self.aggregator)
                if generation.settings.correlation_trigger == "tick":
                    result.rca_events = self.correlation.on_tick(snapshot)
                else:
                    result.rca_events = self.correlation.on_transitions(
                        cycle.transitions, snapshot
                    )

            self._counters["evaluation_timeouts"] += len(cycle.timeouts)
            self._counters["evaluation_errors"] += len(cycle.errors)
            self._counters["rca_events"] += len(result.rca_events)
            self._last_tick_at = now
            self._outbox.extend(result.events)
            if self._outbox_ready is not None and self._outbox:
                self._outbox_ready.set()
            return result

    async def flush(self) -> list[DispatchReport]:
        """Dispatch every queued event.

        Events are dispatched concurrently, at most ``dispatch_concurrency``
        at a time, so one sink stuck in retries does not hold back later
        events bound for healthy sinks. Suppression and routing decisions
        are still taken in queue order, and reports come back in that order.
        """
        reports: list[DispatchReport] = []
        limit = asyncio.Semaphore(self.settings.dispatch_concurrency)

        async def dispatch(event: DispatchEvent) -> DispatchReport:
            async with limit:
                return await self.dispatcher.dispatch(event)

        while self._outbox:
            batch = list(self._outbox)
            self._outbox.clear()
            for report in await asyncio.gather(*(dispatch(event) for event in batch)):
                self._record(report)
                reports.append(report)
        return reports

    def _record(self, report: DispatchReport) -> None:
        self._counters["dispatched"] += len(report.delivered)
        self._counters["rate_limited"] += len(report.rate_limited)
        self._counters["suppressed"] += int(report.suppressed)
        self._counters["dispatch_failures"] += len(report.failures)
        self._recent_failures.extend(str(failure) for failure in report.failures)

    def evict(self, now: float | None = None) -> int:
        """Drop expired samples and memoised windows nobody can still read."""
        now = self._clock() if now is None else now
        removed = self.storage.evict(now)
        self.aggregator.forget_before(now - self._lookback_seconds())
        return removed

    def _lookback_seconds(self) -> float:
        generation = self.registry.current
        lookback = generation.settings.retention_seconds
        for alarm in generation.alarms:
            lookback = max(lookback, alarm.period * (alarm.evaluation_periods + 1))
        for rule in generation.rules:
            for signal in rule.signals:
                if isinstance(signal, TrendPredicate):
                    lookback = max(lookback, signal.period * (signal.periods + 1))
        return lookback

    # ------------------------------------------------------------------
    # Checkpointing
    # ------------------------------------------------------------------

    async def checkpoint(self) -> bool:
        """Persist alarm states; False when no checkpoint storage is configured."""
        if self._checkpoint is None:
            return False
        invalid = self.evaluator.invalid
        states = {k: v for k, v in self.evaluator.states().items() if k not in invalid}
        await self._checkpoint.save_states(states)
        return True

    async def restore(self) -> int:
        """Adopt checkpointed states for configured alarms.

        Raises:
            StoreCorrupted: The checkpoint cannot be read.
        """
        if self._checkpoint is None:
            return 0
        restored = self.evaluator.restore(await self._checkpoint.load_states())
        logger.info("Restored %d alarm states from checkpoint", restored)
        return restored

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def fatal_error(self) -> BaseException | None:
        """The error that stopped the workers, if any."""
        return self._fatal

    async def start(self) -> None:
        """Restore checkpointed state and launch the background workers."""
        if self._tasks:
            return
        self._fatal = None
        await self.restore()
        self._ingest_queue = asyncio.Queue(maxsize=self.settings.ingest_queue_size)
        self._outbox_ready = asyncio.Event()
        if self._outbox:
            self._outbox_ready.set()
        logger.info("Starting engine with configuration generation %d", self.generation.number)
        self._tasks = [
            asyncio.create_task(self._ingest_worker()),
            asyncio.create_task(self._evaluation_worker()),
            asyncio.create_task(self._eviction_worker()),
            asyncio.create_task(self._dispatch_worker()),
        ]
        for task in self._tasks:
            task.add_done_callback(self._on_worker_done)

    def _on_worker_done(self, task: asyncio.Task[None]) -> None:
        """Stop the remaining workers when one of them dies."""
        if task.cancelled() or task.exception() is None:
            return
        error = task.exception()
        if self._fatal is None:
            self._fatal = error
            logger.critical("Engine stopped by fatal error: %r", error)
        for sibling in self._tasks:
            sibling.cancel()

    async def stop(self) -> None:
        """Stop the workers, ingest what is still queued and persist state.

        After a fatal error the checkpoint is skipped; the store is the
        likely culprit and the error stays visible through ``health()``.
        """
        if not self._tasks:
            return
        logger.info("Stopping engine")
        tasks = self._tasks
        for task in tasks:
            task.cancel()
        try:
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._tasks = []
        self._drain_ingest_queue()
        self._ingest_queue = None
        self._outbox_ready = None
        if self._fatal is None:
            await self.checkpoint()

    async def close(self) -> None:
        """Stop, release the diagnostics handler and owned clients."""
        try:
            await self.stop()
        finally:
            logging.getLogger("gcwatch").removeHandler(self._handler)
            if self._owns_client and self._http_client is not None:
                await self._http_client.aclose()
                self._http_client = None
            close = getattr(self._checkpoint, "close", None)
            if close is not None:
                await close()

    async def __aenter__(self) -> "EmbeddedEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _drain_ingest_queue(self) -> None:
        if self._ingest_queue is None:
            return
        pending: list[Sample] = []
        while not self._ingest_queue.empty():
            pending.append(self._ingest_queue.get_nowait())
        if pending:
            self.ingest(pending)

    async def _ingest_worker(self) -> None:
        assert self._ingest_queue is not None
        queue = self._ingest_queue
        while True:
            batch = [await queue.get()]
            while len(batch) < _INGEST_BATCH and not queue.empty():
                batch.append(queue.get_nowait())
            try:
                self.ingest(batch)
            except Exception:  # noqa: BLE001
                logger.exception("Ingestion of %d samples failed", len(batch))
            finally:
                for _ in batch:
                    queue.task_done()

    async def _evaluation_worker(self) -> None:
        while True:
            await asyncio.sleep(self.settings.evaluation_interval_seconds)
            try:
                await self.tick()
                await self.checkpoint()
            except StoreCorrupted:
                logger.critical("Checkpoint store corrupted, stopping evaluation")
                raise
            except Exception:  # noqa: BLE001
                logger.exception("Evaluation tick failed")

    async def _eviction_worker(self) -> None:
        while True:
            await asyncio.sleep(self.settings.eviction_interval_seconds)
            try:
                self.evict()
            except Exception:  # noqa: BLE001
                logger.exception("Eviction failed")

    async def _dispatch_worker(self) -> None:
        assert self._outbox_ready is not None
        ready = self._outbox_ready
        while True:
            await ready.wait()
            ready.clear()
            try:
                await self.flush()
            except Exception:  # noqa: BLE001
                logger.exception("Dispatch failed")

    # ------------------------------------------------------------------
    # Query interface
    # ------------------------------------------------------------------

    def alarm_state(self, alarm_id: str) -> AlarmState | None:
        return self.evaluator.state(alarm_id)

    def alarm_states(self) -> dict[str, AlarmState]:
        return self.evaluator.states()

    def latest_window(
        self,
        selector: MetricSelector,
        statistic: Statistic,
        period: float,
        *,
        now: float | None = None,
    ) -> Window | None:
        """Most recent closed window for a selector, or None without samples."""
        try:
            return self.aggregator.latest_closed(selector, statistic, period, now=now)
        except InsufficientData:
            return None

    def active_episodes(self) -> list[Episode]:
        return self.correlation.active_episodes()

    def diagnostics(self, since: float = 0, level: str | None = None) -> list[LogEntry]:
        return list(self.log_storage.read(since=since, level=level))

    def health(self) -> EngineHealth:
        generation = self.registry.current
        invalid = [*generation.invalid_definitions, *(str(e) for e in self._sink_errors)]
        fatal = None if self._fatal is None else f"{type(self._fatal).__name__}: {self._fatal}"
        return EngineHealth(
            generation=generation.number,
            running=self.running,
            invalid_definitions=tuple(invalid),
            queue_depth=self._ingest_queue.qsize() if self._ingest_queue is not None else 0,
            pending_events=len(self._outbox),
            last_tick_at=self._last_tick_at,
            recent_failures=tuple(self._recent_failures),
            fatal_error=fatal,
            **self._counters,
        )

    def describe(self) -> dict[str, Any]:
        """Counts of configured definitions, for logs and the health endpoint."""
        generation = self.registry.current
        return {
            "alarms": len(generation.alarms),
            "rules": len(generation.rules),
            "routes": len(generation.routes),
            "sinks": len({s.name for s in generation.sinks} | set(self._extra_sinks)),
        }
