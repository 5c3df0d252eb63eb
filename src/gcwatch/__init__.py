"""gcwatch: GC health monitoring and correlation engine.

Ingests JVM and runtime metric samples, evaluates threshold alarms with
"M out of N" hysteresis, correlates alarms and metric trends into
root-cause classifications and dispatches the results to sinks.
"""

from gcwatch.adapters.config_loader import load_config, load_config_file
from gcwatch.adapters.frameworks.asgi import create_asgi_app
from gcwatch.adapters.logging import DiagnosticsHandler
from gcwatch.adapters.sinks import (
    RecordingSink,
    WebhookNotificationSink,
    WebhookRemediationSink,
)
from gcwatch.adapters.storage import (
    InMemorySeriesStorage,
    RingBufferLogStorage,
    SQLiteCheckpointStorage,
)
from gcwatch.core.config import ConfigGeneration, ConfigRegistry, EngineSettings, build_generation
from gcwatch.core.exceptions import (
    ConfigInvalid,
    DispatchFailure,
    EvaluationTimeout,
    GCWatchError,
    InsufficientData,
    StaleSample,
    StoreCorrupted,
)
from gcwatch.core.metrics import counter, gauge
from gcwatch.core.models import (
    AlarmConfig,
    AlarmRef,
    AlarmState,
    AlarmStateValue,
    AlarmTransition,
    Combinator,
    Comparison,
    CorrelationRule,
    KeyPattern,
    MetricKey,
    MetricPredicate,
    RCAEvent,
    RouteRule,
    Sample,
    Severity,
    Statistic,
    TreatMissingData,
    TrendPredicate,
)
from gcwatch.runtime.embedded import EmbeddedEngine, EngineHealth, TickResult

__version__ = "0.1.0"

__all__ = [
    "AlarmConfig",
    "AlarmRef",
    "AlarmState",
    "AlarmStateValue",
    "AlarmTransition",
    "Combinator",
    "Comparison",
    "ConfigGeneration",
    "ConfigInvalid",
    "ConfigRegistry",
    "CorrelationRule",
    "DiagnosticsHandler",
    "DispatchFailure",
    "EmbeddedEngine",
    "EngineHealth",
    "EngineSettings",
    "EvaluationTimeout",
    "GCWatchError",
    "InMemorySeriesStorage",
    "InsufficientData",
    "KeyPattern",
    "MetricKey",
    "MetricPredicate",
    "RCAEvent",
    "RecordingSink",
    "RingBufferLogStorage",
    "RouteRule",
    "SQLiteCheckpointStorage",
    "Sample",
    "Severity",
    "StaleSample",
    "Statistic",
    "StoreCorrupted",
    "TickResult",
    "TreatMissingData",
    "TrendPredicate",
    "WebhookNotificationSink",
    "WebhookRemediationSink",
    "build_generation",
    "counter",
    "create_asgi_app",
    "gauge",
    "load_config",
    "load_config_file",
]
