"""In-process sink that records what it receives."""

from gcwatch.core.models import DeliveryResult, DispatchEvent


class RecordingSink:
    """SinkPort implementation that keeps delivered events in a list.

    Useful for embedding, tests and dry runs. The first ``failures``
    deliveries fail, which exercises the dispatcher's retry path.
    """

    def __init__(self, name: str, kind: str = "notification", failures: int = 0) -> None:
        self.name = name
        self.kind = kind
        self.events: list[DispatchEvent] = []
        self.attempts = 0
        self._failures_left = failures

    def fail_next(self, count: int) -> None:
        self._failures_left = count

    async def deliver(self, event: DispatchEvent) -> DeliveryResult:
        self.attempts += 1
        if self._failures_left > 0:
            self._failures_left -= 1
            return DeliveryResult.failure(f"{self.name} unavailable")
        self.events.append(event)
        return DeliveryResult.success()
