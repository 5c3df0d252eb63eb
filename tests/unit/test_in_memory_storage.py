"""Tests for the in-memory series store."""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from gcwatch.adapters.storage.in_memory import InMemorySeriesStorage
from gcwatch.core.exceptions import StaleSample
from gcwatch.core.models import KeyPattern, MetricKey, RetentionPolicy, Sample
from gcwatch.core.ports import SeriesStoragePort
from tests.helpers import HEAP, T0

pytestmark = [pytest.mark.tier(1), pytest.mark.tra("Adapter.SeriesStore")]

NOW = T0 + 600


def _sample(ts: float, value: float = 1.0, key: MetricKey = HEAP) -> Sample:
    return Sample(key=key, timestamp=ts, value=value)


class TestInMemorySeriesStorage:
    """Tests for InMemorySeriesStorage."""

    @pytest.mark.storage
    def test_implements_series_storage_port(self) -> None:
        """InMemorySeriesStorage must satisfy SeriesStoragePort protocol."""
        assert isinstance(InMemorySeriesStorage(), SeriesStoragePort)

    @pytest.mark.storage
    def test_ingest_and_query(self) -> None:
        """Ingested samples are returned by a range query, half-open."""
        storage = InMemorySeriesStorage()
        samples = [_sample(T0 + i * 10, float(i)) for i in range(5)]

        report = storage.ingest_many(samples, now=NOW)

        assert report.accepted == 5
        assert list(storage.query(HEAP, T0, T0 + 40)) == samples[:4]

    @pytest.mark.storage
    def test_duplicate_is_idempotent(self) -> None:
        """Re-ingesting the same (key, timestamp) is a no-op."""
        storage = InMemorySeriesStorage()

        assert storage.ingest(_sample(T0, 1.0), now=NOW) is True
        assert storage.ingest(_sample(T0, 2.0), now=NOW) is False

        assert [s.value for s in storage.query(HEAP, T0, T0 + 1)] == [1.0]

    @pytest.mark.storage
    def test_batch_reports_duplicates(self) -> None:
        storage = InMemorySeriesStorage()

        report = storage.ingest_many([_sample(T0), _sample(T0), _sample(T0 + 1)], now=NOW)

        assert report.accepted == 2
        assert report.duplicates == 1

    @pytest.mark.storage
    def test_stale_sample_rejected(self) -> None:
        """Samples older than the retention floor are rejected and reported."""
        storage = InMemorySeriesStorage(RetentionPolicy(max_age_seconds=300))

        report = storage.ingest_many([_sample(NOW - 301), _sample(NOW - 10)], now=NOW)

        assert report.accepted == 1
        assert len(report.stale) == 1
        assert report.stale[0].key == HEAP
        assert storage.count(HEAP) == 1

    @pytest.mark.storage
    def test_stale_sample_strict_raises(self) -> None:
        storage = InMemorySeriesStorage(RetentionPolicy(max_age_seconds=300))

        with pytest.raises(StaleSample):
            storage.ingest(_sample(NOW - 301), now=NOW, strict=True)

    @pytest.mark.storage
    def test_stale_sample_non_strict_returns_false(self) -> None:
        storage = InMemorySeriesStorage(RetentionPolicy(max_age_seconds=300))

        assert storage.ingest(_sample(NOW - 301), now=NOW) is False

    @pytest.mark.storage
    def test_non_finite_samples_rejected(self) -> None:
        """NaN and infinite timestamps or values never reach a shard."""
        storage = InMemorySeriesStorage(RetentionPolicy(max_age_seconds=300))
        bad = [
            _sample(float("nan")),
            _sample(float("inf")),
            _sample(NOW - 10, float("nan")),
            _sample(NOW - 5, float("-inf")),
        ]

        report = storage.ingest_many([*bad, _sample(NOW - 1)], now=NOW)

        assert (report.accepted, report.invalid, report.stale) == (1, 4, [])
        assert storage.count() == 1
        assert storage.evict(now=NOW + 1e9) == 1
        assert storage.count() == 0

    @pytest.mark.storage
    def test_non_finite_sample_strict_raises(self) -> None:
        storage = InMemorySeriesStorage()

        with pytest.raises(ValueError):
            storage.ingest(_sample(float("nan")), now=NOW, strict=True)
        assert storage.ingest(_sample(float("inf")), now=NOW) is False

    @pytest.mark.storage
    def test_evict_drops_expired_samples(self) -> None:
        """evict removes samples below the floor across keys."""
        storage = InMemorySeriesStorage(RetentionPolicy(max_age_seconds=300))
        other = MetricKey("payments/jvm", "gc_count")
        storage.ingest_many(
            [_sample(T0 + 10), _sample(T0 + 200), _sample(T0 + 20, key=other)], now=T0 + 200
        )

        evicted = storage.evict(now=T0 + 400)

        assert evicted == 2
        assert storage.count() == 1

    @pytest.mark.storage
    def test_max_count_keeps_newest(self) -> None:
        storage = InMemorySeriesStorage(RetentionPolicy(max_age_seconds=900, max_count=3))

        storage.ingest_many([_sample(T0 + i) for i in range(5)], now=T0 + 10)

        assert [s.timestamp for s in storage.query(HEAP, T0, T0 + 10)] == [
            T0 + 2,
            T0 + 3,
            T0 + 4,
        ]

    @pytest.mark.storage
    def test_query_by_pattern_merges_keys(self) -> None:
        """A KeyPattern query returns matching keys' samples in time order."""
        storage = InMemorySeriesStorage()
        app1 = MetricKey("payments/jvm", "heap_used_ratio", {"host": "app-1"})
        app2 = MetricKey("payments/jvm", "heap_used_ratio", {"host": "app-2"})
        db = MetricKey("payments/jvm", "heap_used_ratio", {"host": "db-1"})
        storage.ingest_many(
            [_sample(T0 + 2, key=app1), _sample(T0 + 1, key=app2), _sample(T0, key=db)], now=NOW
        )

        view = storage.query(
            KeyPattern("payments/jvm", "heap_used_ratio", {"host": "app-*"}), T0, T0 + 10
        )

        assert [s.key for s in view] == [app2, app1]

    @pytest.mark.storage
    def test_query_returns_restartable_snapshot(self) -> None:
        """A view can be iterated twice and is unaffected by later writes."""
        storage = InMemorySeriesStorage()
        storage.ingest(_sample(T0), now=NOW)

        view = storage.query(HEAP, T0, T0 + 100)
        storage.ingest(_sample(T0 + 1), now=NOW)

        assert len(list(view)) == 1
        assert len(list(view)) == 1

    @pytest.mark.storage
    def test_keys_and_clear(self) -> None:
        storage = InMemorySeriesStorage()
        storage.ingest(_sample(T0), now=NOW)

        assert storage.keys() == [HEAP]
        storage.clear()
        assert storage.keys() == []

    @pytest.mark.storage
    def test_unknown_key_query_is_empty(self) -> None:
        storage = InMemorySeriesStorage()

        assert list(storage.query(MetricKey("ns", "missing"), T0, NOW)) == []


timestamps = st.lists(
    st.integers(min_value=0, max_value=599).map(lambda i: T0 + i), min_size=1, max_size=60
)


class TestIngestionProperties:
    """Property tests for idempotence and arrival order."""

    @pytest.mark.storage
    @settings(max_examples=50)
    @given(stamps=timestamps, data=st.data())
    def test_arrival_order_does_not_matter(self, stamps: list[float], data: st.DataObject) -> None:
        """Any permutation of a batch yields the same stored series."""
        samples = [_sample(ts, ts - T0) for ts in stamps]
        shuffled = data.draw(st.permutations(samples))
        in_order = InMemorySeriesStorage()
        out_of_order = InMemorySeriesStorage()

        in_order.ingest_many(sorted(samples, key=lambda s: s.timestamp), now=NOW)
        out_of_order.ingest_many(shuffled, now=NOW)

        expected = [s.timestamp for s in in_order.query(HEAP, T0, NOW)]
        assert [s.timestamp for s in out_of_order.query(HEAP, T0, NOW)] == expected
        assert expected == sorted(set(stamps))

    @pytest.mark.storage
    @settings(max_examples=50)
    @given(stamps=timestamps)
    def test_reingestion_is_idempotent(self, stamps: list[float]) -> None:
        """Ingesting the same batch twice stores nothing new."""
        samples = [_sample(ts) for ts in stamps]
        storage = InMemorySeriesStorage()

        storage.ingest_many(samples, now=NOW)
        before = storage.count()
        second = storage.ingest_many(samples, now=NOW)

        assert second.accepted == 0
        assert storage.count() == before == len(set(stamps))
