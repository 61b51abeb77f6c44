import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.app.events import AnalyticsEvent, InvalidEventError, NewEvent, validate_event
from backend.app.store import InMemoryEventStore, SQLEventStore
from shared.database import Base
from tests.conftest import FakeClock, make_event


def stamped(event: NewEvent, timestamp: datetime) -> AnalyticsEvent:
    return AnalyticsEvent.from_new(event, timestamp=timestamp)


@pytest.fixture
def sql_store():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return SQLEventStore(sessionmaker(bind=engine))


class TestInMemoryEventStore:

    def test_rejects_duplicate_ids(self, clock):
        store = InMemoryEventStore(clock=clock)
        event = stamped(make_event("page_view", "user"), clock.now)

        assert store.append(event) is True
        assert store.append(event) is False
        assert len(store) == 1

    def test_events_since(self, clock):
        store = InMemoryEventStore(clock=clock)
        old = stamped(make_event("page_view", "user"), clock.now - timedelta(hours=2))
        new = stamped(make_event("page_view", "user"), clock.now)
        store.append(new)
        store.append(old)

        assert store.events() == [new, old]
        assert store.events(since=clock.now - timedelta(hours=1)) == [new]

    def test_retention_window_evicts_expired_events(self):
        clock = FakeClock(datetime(2025, 10, 20, tzinfo=timezone.utc))
        store = InMemoryEventStore(retention_window=timedelta(days=7), clock=clock)
        first = stamped(make_event("page_view", "user"), clock.now)
        store.append(first)

        clock.advance(days=5)
        second = stamped(make_event("page_view", "user"), clock.now)
        store.append(second)
        assert len(store) == 2

        clock.advance(days=3)
        assert store.events() == [second]

    def test_max_events_drops_oldest(self, clock):
        store = InMemoryEventStore(max_events=3, clock=clock)
        events = [stamped(make_event("page_view", "user", page=str(i)), clock.now) for i in range(5)]
        for event in events:
            store.append(event)

        assert store.events() == events[2:]

    def test_eviction_keeps_events_inside_window(self):
        clock = FakeClock(datetime(2025, 10, 1, tzinfo=timezone.utc))
        store = InMemoryEventStore(retention_window=timedelta(days=30), clock=clock)
        events = []
        for _ in range(10):
            event = stamped(make_event("page_view", "user"), clock.now)
            store.append(event)
            events.append(event)
            clock.advance(days=5)

        # now = Nov 20, cutoff = Oct 21: events from Oct 1..Oct 16 are gone
        assert store.events() == events[4:]
        assert len(store) == 6

    def test_expired_event_behind_newer_head_is_hidden(self, clock):
        store = InMemoryEventStore(retention_window=timedelta(hours=1), clock=clock)
        fresh = stamped(make_event("page_view", "user"), clock.now)
        stale = stamped(make_event("page_view", "user"), clock.now - timedelta(hours=3))
        store.append(fresh)
        store.append(stale)

        assert store.events() == [fresh]
        assert store.events(since=clock.now - timedelta(days=1)) == [fresh]
        assert len(store) == 1

    @pytest.mark.parametrize("retention_window", [None, timedelta(hours=1)])
    def test_reads_while_another_thread_appends(self, clock, retention_window):
        store = InMemoryEventStore(retention_window=retention_window, clock=clock)
        events = [stamped(make_event("page_view", "user", page=str(i)), clock.now) for i in range(5000)]
        errors = []
        done = threading.Event()

        def reader():
            while not done.is_set():
                try:
                    store.events(since=clock.now - timedelta(hours=1))
                    len(store)
                except Exception as exc:
                    errors.append(exc)
                    return

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for event in events:
                store.append(event)
        finally:
            done.set()
            thread.join()

        assert errors == []
        assert store.events() == events

    def test_invalid_max_events(self):
        with pytest.raises(ValueError):
            InMemoryEventStore(max_events=0)


class TestSQLEventStore:

    def test_round_trip_keeps_utc_timestamps(self, sql_store, clock):
        event = stamped(
            NewEvent(
                session_id="s1",
                user_id="u1",
                event_name="payment_completed",
                category="payment",
                properties={"amount": 49, "plan": "pro"},
                country="DE",
            ),
            clock.now,
        )

        assert sql_store.append(event) is True
        assert sql_store.events() == [event]

    def test_append_many_skips_existing_ids(self, sql_store, clock):
        first = stamped(make_event("lesson_start", "lesson", lessonId="l1"), clock.now)
        second = stamped(make_event("lesson_complete", "lesson", lessonId="l1"), clock.now)

        assert sql_store.append_many([first, first]) == 1
        assert sql_store.append_many([first, second]) == 1
        assert len(sql_store) == 2

    def test_events_since(self, sql_store, clock):
        old = stamped(make_event("page_view", "user"), clock.now - timedelta(hours=2))
        new = stamped(make_event("page_view", "user"), clock.now)
        sql_store.append_many([old, new])

        assert [e.id for e in sql_store.events(since=clock.now - timedelta(hours=1))] == [new.id]


class TestValidation:

    @pytest.mark.parametrize("event", [
        make_event("page_view", "user", page="/pricing"),
        make_event("lesson_progress", "lesson", lessonId="l1", timeSpent=30, completionPercentage=40),
        make_event("ai_interaction", "ai", question="What is RAG?", responseTime=900, satisfaction=5),
        make_event("certification_attempt", "certification", certificationId="c1", score=88.5, passed=True),
        make_event("payment_completed", "payment", amount=49, plan="pro", currency="usd"),
        make_event("level_up", "gamification", level=3, customField="kept"),
    ])
    def test_valid_events(self, event):
        validate_event(event)

    @pytest.mark.parametrize("event", [
        make_event("page_view", "marketing"),
        make_event("lesson_start", "lesson"),
        make_event("ai_interaction", "ai", satisfaction=9),
        make_event("certification_attempt", "certification", certificationId="c1", passed="yes"),
        make_event("payment_completed", "payment", amount=-5),
        make_event("page_view", "user", page={"nested": True}),
    ])
    def test_invalid_events(self, event):
        with pytest.raises(InvalidEventError):
            validate_event(event)
