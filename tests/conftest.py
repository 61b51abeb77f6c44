from datetime import datetime, timedelta, timezone

import pytest

from backend.app.analytics import AnalyticsService
from backend.app.events import NewEvent
from backend.app.store import InMemoryEventStore


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 10, 20, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return InMemoryEventStore(clock=clock)


@pytest.fixture
def service(store, clock):
    return AnalyticsService(store, clock=clock, tz=timezone.utc)


def make_event(event_name: str, category: str, session_id: str = "s1", user_id=None, **properties) -> NewEvent:
    return NewEvent(
        session_id=session_id,
        user_id=user_id,
        event_name=event_name,
        category=category,
        properties=properties,
    )
