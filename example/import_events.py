import csv
import json
from datetime import datetime, timezone

from backend.app.events import AnalyticsEvent, new_event_id
from backend.app.store import SQLEventStore
from shared.database import SessionLocal, Base, engine


def row_to_event(row: dict) -> AnalyticsEvent:
    timestamp = datetime.fromisoformat(row["timestamp"])
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    return AnalyticsEvent(
        id=row.get("id") or new_event_id(),
        timestamp=timestamp,
        session_id=row["session_id"],
        user_id=row.get("user_id") or None,
        event_name=row["event_name"],
        category=row["category"],
        properties=json.loads(row.get("properties") or row.get("properties_json") or "{}"),
        country=row.get("country") or None,
    )


def import_csv(csv_path: str) -> int:
    Base.metadata.create_all(engine)

    with open(csv_path, encoding="utf-8") as fh:
        events = [row_to_event(row) for row in csv.DictReader(fh)]

    return SQLEventStore(SessionLocal).append_many(events)

if __name__ == "__main__":
    import sys
    print(f"Imported {import_csv(sys.argv[1])} events")
