import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, List, Optional, Set

from sqlalchemy.orm import Session

from backend.app.events import AnalyticsEvent, utc_now
from shared.models import AnalyticsEventRecord

logger = logging.getLogger(__name__)


class EventStore(ABC):
    """Append-only log of analytics events."""

    @abstractmethod
    def append(self, event: AnalyticsEvent) -> bool:
        """Store the event. Returns False if an event with the same id is already stored."""

    @abstractmethod
    def events(self, since: Optional[datetime] = None) -> List[AnalyticsEvent]:
        """Snapshot of stored events, optionally only those at or after `since`."""

    @abstractmethod
    def __len__(self) -> int:
        ...


class InMemoryEventStore(EventStore):
    """Process-local event log.

    `retention_window` evicts events older than the window, `max_events` caps
    the log size by dropping the oldest appended events. Safe to share between
    the event loop and threadpool routes.
    """

    def __init__(
            self,
            retention_window: Optional[timedelta] = None,
            max_events: Optional[int] = None,
            clock: Callable[[], datetime] = utc_now,
    ):
        if max_events is not None and max_events < 1:
            raise ValueError("max_events must be positive")
        self._events: Deque[AnalyticsEvent] = deque()
        self._ids: Set[str] = set()
        self._lock = threading.Lock()
        self.retention_window = retention_window
        self.max_events = max_events
        self._clock = clock

    def append(self, event: AnalyticsEvent) -> bool:
        with self._lock:
            if event.id in self._ids:
                return False

            self._events.append(event)
            self._ids.add(event.id)

            if self.max_events is not None:
                while len(self._events) > self.max_events:
                    self._ids.discard(self._events.popleft().id)

            self._evict_expired()
            return True

    def events(self, since: Optional[datetime] = None) -> List[AnalyticsEvent]:
        with self._lock:
            cutoff = self._evict_expired()
            if since is not None and (cutoff is None or since > cutoff):
                cutoff = since
            if cutoff is None:
                return list(self._events)
            return [e for e in self._events if e.timestamp >= cutoff]

    def _evict_expired(self) -> Optional[datetime]:
        """Drop expired events from the head of the log. Caller holds the lock.

        Returns the retention cutoff, or None without a retention window.
        """
        if self.retention_window is None:
            return None

        cutoff = self._clock() - self.retention_window
        evicted = 0
        while self._events and self._events[0].timestamp < cutoff:
            self._ids.discard(self._events.popleft().id)
            evicted += 1

        if evicted:
            logger.debug(f"Evicted {evicted} events older than {cutoff.isoformat()}")
        # An expired event behind a newer head stays until it reaches the head;
        # readers filter it out with the returned cutoff.
        return cutoff

    def __len__(self) -> int:
        return len(self.events())


def _as_utc(value: datetime) -> datetime:
    # SQLite drops the offset on DateTime(timezone=True) columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def record_to_event(record: AnalyticsEventRecord) -> AnalyticsEvent:
    return AnalyticsEvent(
        id=record.id,
        timestamp=_as_utc(record.timestamp),
        session_id=record.session_id,
        user_id=record.user_id,
        event_name=record.event_name,
        category=record.category,
        properties=record.properties or {},
        user_agent=record.user_agent,
        ip=record.ip,
        country=record.country,
        referrer=record.referrer,
    )


def event_to_record(event: AnalyticsEvent) -> AnalyticsEventRecord:
    data = event.model_dump()
    data["timestamp"] = event.timestamp.astimezone(timezone.utc)
    return AnalyticsEventRecord(**data)


class SQLEventStore(EventStore):
    """Durable event log backed by the analytics_events table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def append(self, event: AnalyticsEvent) -> bool:
        return self.append_many([event]) == 1

    def append_many(self, events: List[AnalyticsEvent]) -> int:
        """Insert events whose ids are not stored yet. Returns the number inserted."""
        db = self._session_factory()
        try:
            ids = list({e.id for e in events})
            existing = {
                row[0] for row in db.query(AnalyticsEventRecord.id).filter(AnalyticsEventRecord.id.in_(ids)).all()
            }

            inserted = 0
            for event in events:
                if event.id in existing:
                    continue
                db.add(event_to_record(event))
                existing.add(event.id)
                inserted += 1

            db.commit()
            return inserted
        except Exception as e:
            db.rollback()
            logger.error(f"Error saving events to database: {e}")
            raise
        finally:
            db.close()

    def events(self, since: Optional[datetime] = None) -> List[AnalyticsEvent]:
        db = self._session_factory()
        try:
            query = db.query(AnalyticsEventRecord)
            if since is not None:
                query = query.filter(AnalyticsEventRecord.timestamp >= since.astimezone(timezone.utc))
            records = query.order_by(AnalyticsEventRecord.timestamp, AnalyticsEventRecord.id).all()
            return [record_to_event(r) for r in records]
        finally:
            db.close()

    def __len__(self) -> int:
        db = self._session_factory()
        try:
            return db.query(AnalyticsEventRecord).count()
        finally:
            db.close()
