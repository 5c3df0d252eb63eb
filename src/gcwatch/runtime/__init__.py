"""Background runtime wiring the core components together."""

from gcwatch.runtime.embedded import EmbeddedEngine, EngineHealth, TickResult

__all__ = ["EmbeddedEngine", "EngineHealth", "TickResult"]
