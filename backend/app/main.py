import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import nats
from fastapi import FastAPI, Depends, Query, Request
from fastapi.responses import JSONResponse

from backend.app import schemas
from backend.app.analytics import AnalyticsService
from backend.app.auth import verify_api_key
from backend.app.events import NewEvent
from backend.app.forwarder import NatsForwarder
from backend.app.metrics import RequestLoggingMiddleware
from backend.app.store import InMemoryEventStore, SQLEventStore
from shared.config import Settings, settings
from shared.database import SessionLocal, engine, Base
from shared.log import setup_logging

logger = logging.getLogger(__name__)


def build_analytics_service(config: Settings, client=None) -> AnalyticsService:
    if config.STORE_BACKEND == "sql":
        Base.metadata.create_all(bind=engine)
        store = SQLEventStore(SessionLocal)
    else:
        retention = None
        if config.RETENTION_WINDOW_SECONDS:
            retention = timedelta(seconds=config.RETENTION_WINDOW_SECONDS)
        store = InMemoryEventStore(retention_window=retention, max_events=config.MAX_EVENTS)

    forwarder = NatsForwarder(client, config.FORWARD_SUBJECT) if config.is_production else None

    return AnalyticsService(
        store,
        forwarder=forwarder,
        tz=ZoneInfo(config.REPORT_TIMEZONE) if config.REPORT_TIMEZONE else None,
        strict=config.STRICT_VALIDATION,
        realtime_window=timedelta(minutes=config.REALTIME_WINDOW_MINUTES),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)

    nats_client = None
    if settings.is_production:
        try:
            nats_client = await nats.connect(settings.NATS_URL)
        except Exception as exc:
            logger.error(f"Could not connect to NATS at {settings.NATS_URL}: {exc}")

    app.state.analytics = build_analytics_service(settings, nats_client)
    logger.info(f"Analytics service started ({settings.ENVIRONMENT}, store={settings.STORE_BACKEND})")

    yield

    if nats_client:
        await nats_client.close()


app = FastAPI(
    title="Learning Analytics API",
    description="Event tracking and dashboard metrics for the learning platform",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_analytics(request: Request) -> AnalyticsService:
    return request.app.state.analytics


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


def client_country(request: Request) -> Optional[str]:
    return request.headers.get("cf-ipcountry") or request.headers.get("x-vercel-ip-country") or None


@app.post("/track", response_model=schemas.TrackResponse, responses={500: {"model": schemas.ErrorResponse}})
async def track_event(
        request: Request,
        analytics: AnalyticsService = Depends(get_analytics),
):
    """
    Record a single analytics event.

    Body: `{event, category, properties, sessionId}`. Missing or mistyped fields
    are defaulted; a body that is not JSON yields a 500.
    The user id, user agent, IP, country and referrer are taken from the request headers.
    """
    try:
        payload = await request.json()
        body = schemas.TrackRequest.model_validate(payload if isinstance(payload, dict) else {})

        await analytics.track(NewEvent(
            user_id=request.headers.get("x-user-id") or None,
            session_id=body.session,
            event_name=body.event_name,
            category=body.category_name,
            properties=body.property_map,
            user_agent=request.headers.get("user-agent") or None,
            ip=client_ip(request),
            country=client_country(request),
            referrer=request.headers.get("referer") or None,
        ))
    except Exception:
        logger.exception("Analytics tracking error")
        return JSONResponse(status_code=500, content={"error": "Failed to track event"})

    return schemas.TrackResponse(success=True)


@app.get("/dashboard", responses={500: {"model": schemas.ErrorResponse}})
def get_dashboard(
        type: str = Query("overview", description="overview, realtime, revenue, ai or learning"),
        analytics: AnalyticsService = Depends(get_analytics),
        api_key: Optional[str] = Depends(verify_api_key),
):
    """
    Get dashboard metrics.

    Returns one report, or all four combined for `overview`.
    Unknown report types fall back to the overview.
    """
    reports = {
        "realtime": analytics.get_real_time_metrics,
        "revenue": analytics.get_revenue_analytics,
        "ai": analytics.get_ai_analytics,
        "learning": analytics.get_learning_analytics,
    }
    try:
        data = reports.get(type, analytics.get_overview)()
    except Exception:
        logger.exception("Analytics dashboard error")
        return JSONResponse(status_code=500, content={"error": "Failed to fetch analytics data"})

    return data


@app.get("/")
def root():
    return {
        "message": "Learning Analytics API",
        "version": "1.0.0",
    }


@app.get("/health")
def health_check():
    return {"status": "healthy"}
