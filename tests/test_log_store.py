"""Tests for the delivery log stores."""

from datetime import datetime, timedelta, timezone

import pytest

from hookwatch.monitoring.log_store import DeliveryLogFilter, InMemoryLogStore, SQLiteLogStore
from hookwatch.webhooks.exceptions import LogStoreError
from hookwatch.webhooks.models import DeliveryEvent, DeliveryStatus


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def event(webhook_id="wh_1", status=DeliveryStatus.SUCCESS, minutes_ago=0, **fields):
    return DeliveryEvent(
        webhook_id=webhook_id,
        event_type=fields.pop("event_type", "user.created"),
        status=status,
        triggered_at=NOW - timedelta(minutes=minutes_ago),
        **fields,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryLogStore()
    return SQLiteLogStore(str(tmp_path / "logs.db"))


class TestLogStore:
    """Behavior shared by every LogStore backend."""

    def test_append_returns_id(self, store):
        """append returns the event ID."""
        e = event()

        assert store.append(e) == e.id
        assert store.count() == 1

    def test_query_newest_first(self, store):
        """Results are ordered by triggered_at descending."""
        old, mid, new = event(minutes_ago=30), event(minutes_ago=20), event(minutes_ago=10)
        for e in (mid, old, new):
            store.append(e)

        assert [e.id for e in store.query()] == [new.id, mid.id, old.id]

    def test_round_trip_fields(self, store):
        """Stored events come back unchanged."""
        e = event(
            status=DeliveryStatus.TIMEOUT,
            response_time_ms=30000,
            error_message="Request timeout after 30000ms",
            retry_count=2,
            payload_size=128,
            is_test=True,
        )
        store.append(e)

        loaded = store.query()[0]
        assert loaded == e
        assert loaded.triggered_at == NOW

    def test_limit(self, store):
        """limit caps the number of results."""
        for minutes in range(5):
            store.append(event(minutes_ago=minutes))

        assert len(store.query(limit=2)) == 2

    def test_filter_by_status_and_webhook(self, store):
        """Status and webhook filters combine."""
        store.append(event("wh_1", DeliveryStatus.SUCCESS))
        store.append(event("wh_1", DeliveryStatus.FAILED))
        store.append(event("wh_1", DeliveryStatus.TIMEOUT))
        store.append(event("wh_2", DeliveryStatus.FAILED))

        errors = DeliveryLogFilter(
            webhook_id="wh_1", statuses=[DeliveryStatus.FAILED, DeliveryStatus.TIMEOUT]
        )
        assert store.count(errors) == 2
        assert store.count(DeliveryLogFilter(webhook_ids=["wh_1", "wh_2"])) == 4

    def test_filter_by_event_type_and_test_flag(self, store):
        """event_type and is_test narrow results."""
        store.append(event(event_type="task.created", is_test=True))
        store.append(event(event_type="task.created"))
        store.append(event(event_type="user.created"))

        assert store.count(DeliveryLogFilter(event_type="task.created")) == 2
        assert store.count(DeliveryLogFilter(is_test=False)) == 2
        assert store.count(DeliveryLogFilter(is_test=True, event_type="task.created")) == 1

    def test_time_bounds(self, store):
        """triggered_from is inclusive, triggered_before exclusive."""
        at_start = event(minutes_ago=60)
        inside = event(minutes_ago=30)
        at_end = event(minutes_ago=0)
        for e in (at_start, inside, at_end):
            store.append(e)

        window = DeliveryLogFilter(
            triggered_from=NOW - timedelta(minutes=60), triggered_before=NOW
        )
        assert {e.id for e in store.query(window)} == {at_start.id, inside.id}

    def test_empty_id_list_matches_nothing(self, store):
        """An empty webhook_ids list selects no events."""
        store.append(event())

        assert store.count(DeliveryLogFilter(webhook_ids=[])) == 0
        assert store.query(DeliveryLogFilter(statuses=[])) == []

    def test_duplicate_id_rejected(self, store):
        """Events are write-once; a repeated ID is an error."""
        e = event()
        store.append(e)

        with pytest.raises(LogStoreError):
            store.append(e)


class TestSQLiteLogStore:
    """SQLite-specific behavior."""

    def test_persists_across_instances(self, tmp_path):
        """A new store on the same file sees earlier events."""
        path = str(tmp_path / "logs.db")
        SQLiteLogStore(path).append(event())

        assert SQLiteLogStore(path).count() == 1

    def test_naive_timestamps_treated_as_utc(self, tmp_path):
        """Naive datetimes in filters are interpreted as UTC."""
        store = SQLiteLogStore(str(tmp_path / "logs.db"))
        store.append(event(minutes_ago=5))

        naive_from = (NOW - timedelta(minutes=10)).replace(tzinfo=None)
        assert store.count(DeliveryLogFilter(triggered_from=naive_from)) == 1

    def test_unreadable_database(self, tmp_path):
        """sqlite errors surface as LogStoreError."""
        path = tmp_path / "logs.db"
        store = SQLiteLogStore(str(path))
        path.unlink()
        path.mkdir()

        with pytest.raises(LogStoreError):
            store.count()


class TestInMemoryLogStore:
    """In-memory specifics."""

    def test_clear(self):
        """clear drops every event."""
        store = InMemoryLogStore()
        store.append(event())
        store.append(event())

        assert store.clear() == 2
        assert store.count() == 0
