import asyncio
import json
import logging
from datetime import datetime, timezone

import nats
from nats.aio.msg import Msg

from backend.app.events import AnalyticsEvent
from backend.app.store import SQLEventStore
from shared.config import settings
from shared.database import SessionLocal, Base, engine
from shared.log import setup_logging

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
RETRY_DELAY_BASE = 3
DLQ_SUBJECT = "analytics.events.dlq"


def get_retry_count(msg: Msg) -> int:
    if msg.header is None:
        return 0
    retry_count = msg.header.get("X-Retry-Count", "0")
    try:
        return int(retry_count)
    except (ValueError, TypeError):
        return 0


def decode_events(data: bytes) -> list[AnalyticsEvent]:
    """A message carries either one forwarded event or an {"events": [...]} batch."""
    payload = json.loads(data.decode())
    if isinstance(payload, dict) and "events" in payload:
        return [AnalyticsEvent.model_validate(item) for item in payload["events"]]
    return [AnalyticsEvent.model_validate(payload)]


async def send_to_dlq(nc: nats.NATS, original_msg: Msg, error_msg: str):
    try:
        headers = {
            "X-Original-Subject": original_msg.subject,
            "X-Error-Message": error_msg,
            "X-Failed-At": datetime.now(timezone.utc).isoformat(),
            "X-Retry-Count": str(get_retry_count(original_msg)),
        }

        await nc.publish(
            DLQ_SUBJECT,
            original_msg.data,
            headers=headers
        )
        logger.warning(f"Message sent to DLQ after {get_retry_count(original_msg)} retries: {error_msg}")
    except Exception as e:
        logger.error(f"Failed to send message to DLQ: {e}")


async def process_events_message(msg: Msg, nc: nats.NATS, store: SQLEventStore | None = None):
    retry_count = get_retry_count(msg)
    if store is None:
        store = SQLEventStore(SessionLocal)

    try:
        events = decode_events(msg.data)
        logger.info(f"Processing {len(events)} events (attempt {retry_count + 1}/{MAX_RETRIES + 1})")

        inserted = store.append_many(events)
        skipped = len(events) - inserted
        logger.info(f"Saved {inserted} events to database, skipped {skipped} duplicates")

    except Exception as e:
        error_msg = str(e)
        logger.error(f"Error processing message (attempt {retry_count + 1}/{MAX_RETRIES + 1}): {error_msg}")

        if retry_count < MAX_RETRIES:
            retry_delay = RETRY_DELAY_BASE ** (retry_count + 1)
            logger.info(f"Scheduling retry in {retry_delay} seconds...")

            await asyncio.sleep(retry_delay)

            headers = msg.header.copy() if msg.header else {}
            headers["X-Retry-Count"] = str(retry_count + 1)

            await nc.publish(
                msg.subject,
                msg.data,
                headers=headers
            )
            logger.info(f"Message requeued for retry {retry_count + 1}")
        else:
            await send_to_dlq(nc, msg, error_msg)


async def main():
    setup_logging(settings.LOG_LEVEL)
    logger.info("Starting analytics sink worker...")

    Base.metadata.create_all(bind=engine)
    store = SQLEventStore(SessionLocal)

    nc = await nats.connect(settings.NATS_URL)
    logger.info("Connected to NATS")

    sub = await nc.subscribe(settings.FORWARD_SUBJECT)
    logger.info(f"Subscribed to {settings.FORWARD_SUBJECT}")

    dlq_sub = await nc.subscribe(DLQ_SUBJECT)
    logger.info(f"Subscribed to {DLQ_SUBJECT} for monitoring")

    async def dlq_handler():
        async for msg in dlq_sub.messages:
            logger.error(f"DLQ message received: {msg.header}")

    dlq_task = asyncio.create_task(dlq_handler())

    try:
        async for msg in sub.messages:
            await process_events_message(msg, nc, store)
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        dlq_task.cancel()
        await nc.close()


if __name__ == "__main__":
    asyncio.run(main())
