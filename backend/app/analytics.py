"""Event ingestion and the dashboard report generators.

Every report is a pure function of the current store snapshot. Ratios and
means guard their denominators and fall back to 0 on empty input.
"""

import logging
import math
from collections import Counter, defaultdict, deque
from datetime import datetime, timedelta, tzinfo
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from backend.app import schemas
from backend.app.events import AnalyticsEvent, InvalidEventError, NewEvent, utc_now, validate_event
from backend.app.forwarder import EventForwarder
from backend.app.store import EventStore

logger = logging.getLogger(__name__)

LESSON_ACTIONS = ("start", "progress", "complete", "abandon")
PAYMENT_EVENTS = ("checkout_started", "payment_completed", "subscription_upgraded", "subscription_cancelled")
GAMIFICATION_EVENTS = ("xp_earned", "achievement_unlocked", "level_up", "badge_earned")

MAX_QUESTION_LENGTH = 100
TOP_CONTENT_LIMIT = 5
TOP_QUESTIONS_LIMIT = 10
CUSTOMER_LIFESPAN_MONTHS = 12
QUARANTINE_SIZE = 1000

REVENUE_METHODOLOGY = {
    "monthly_recurring_revenue": "estimate: all-time sum of completed payments that carry a plan, not period-bounded",
    "customer_lifetime_value": "estimate: average order value x (payment count / 30) x 12 month lifespan",
    "churn_rate": "estimate: cancellations / all-time completed payments x 100, not active-subscriber churn",
    "subscription_growth_rate": "payment count change from last calendar month; 0 when last month had none",
}

AI_METHODOLOGY = {
    "ai_accuracy_score": "estimate: user satisfaction rating x 20, not measured model accuracy",
    "prompt_effectiveness_score": "estimate: satisfaction x (1000 / max(average response time ms, 100))",
    "topic_popularity": "lesson event counts by lessonId, used as a proxy for topic",
}


def _number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        try:
            number = float(value.strip() or 0)
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


def _amount(event: AnalyticsEvent) -> float:
    return _number(event.prop("amount")) or 0.0


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _percent(part: int, whole: int) -> float:
    return part / whole * 100 if whole > 0 else 0.0


def _lesson_key(event: AnalyticsEvent) -> str:
    return str(event.prop("lessonId") or "unknown")


def _named(events: Iterable[AnalyticsEvent], name: str) -> List[AnalyticsEvent]:
    return [e for e in events if e.event_name == name]


def _compact(properties: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in properties.items() if v is not None}


class AnalyticsService:
    def __init__(
            self,
            store: EventStore,
            forwarder: Optional[EventForwarder] = None,
            clock: Callable[[], datetime] = utc_now,
            tz: Optional[tzinfo] = None,
            strict: bool = False,
            realtime_window: timedelta = timedelta(minutes=60),
    ):
        self._store = store
        self._forwarder = forwarder
        self._clock = clock
        self._tz = tz
        self.strict = strict
        self.realtime_window = realtime_window
        self._quarantine: Deque[Tuple[AnalyticsEvent, str]] = deque(maxlen=QUARANTINE_SIZE)

    @property
    def store(self) -> EventStore:
        return self._store

    @property
    def quarantined(self) -> List[Tuple[AnalyticsEvent, str]]:
        return list(self._quarantine)

    async def track(self, event: NewEvent) -> Optional[AnalyticsEvent]:
        """Stamp the event with an id and timestamp and append it to the log.

        In strict mode an event that fails validation is quarantined instead
        and None is returned. Forwarding to the external sink never raises.
        """
        stored = AnalyticsEvent.from_new(event, timestamp=self._clock())

        if self.strict:
            try:
                validate_event(event)
            except InvalidEventError as exc:
                logger.warning(f"Quarantined event {stored.id} ({event.event_name}): {exc}")
                self._quarantine.append((stored, str(exc)))
                return None

        self._store.append(stored)

        if self._forwarder is not None:
            await self._forwarder.forward(stored)

        self._process_real_time_event(stored)
        return stored

    def _process_real_time_event(self, event: AnalyticsEvent):
        if event.category == "payment" and event.event_name == "payment_completed":
            logger.info(
                f"Revenue event: {_amount(event):.2f} {event.prop('currency') or ''} "
                f"plan={event.prop('plan')} user={event.user_id}"
            )

    async def track_page_view(
            self,
            user_id: Optional[str],
            session_id: str,
            page: str,
            referrer: Optional[str] = None,
    ) -> Optional[AnalyticsEvent]:
        return await self.track(NewEvent(
            user_id=user_id,
            session_id=session_id,
            event_name="page_view",
            category="user",
            properties=_compact({
                "page": page,
                "referrer": referrer,
                "timestamp": self._clock().isoformat(),
            }),
        ))

    async def track_lesson_interaction(
            self,
            user_id: Optional[str],
            session_id: str,
            lesson_id: str,
            action: str,
            time_spent: Optional[float] = None,
            completion_percentage: Optional[float] = None,
    ) -> Optional[AnalyticsEvent]:
        if action not in LESSON_ACTIONS:
            raise ValueError(f"Unknown lesson action: {action}")
        return await self.track(NewEvent(
            user_id=user_id,
            session_id=session_id,
            event_name=f"lesson_{action}",
            category="lesson",
            properties=_compact({
                "lessonId": lesson_id,
                "action": action,
                "timeSpent": time_spent,
                "completionPercentage": completion_percentage,
            }),
        ))

    async def track_ai_interaction(
            self,
            user_id: Optional[str],
            session_id: str,
            question: str,
            response: str,
            response_time: float,
            language: str,
            satisfaction: Optional[float] = None,
    ) -> Optional[AnalyticsEvent]:
        # Only a prefix of the question and the response length are kept.
        return await self.track(NewEvent(
            user_id=user_id,
            session_id=session_id,
            event_name="ai_interaction",
            category="ai",
            properties=_compact({
                "question": question[:MAX_QUESTION_LENGTH],
                "responseLength": len(response),
                "responseTime": response_time,
                "language": language,
                "satisfaction": satisfaction,
            }),
        ))

    async def track_certification_attempt(
            self,
            user_id: str,
            session_id: str,
            certification_id: str,
            score: float,
            passed: bool,
            time_spent: float,
    ) -> Optional[AnalyticsEvent]:
        return await self.track(NewEvent(
            user_id=user_id,
            session_id=session_id,
            event_name="certification_attempt",
            category="certification",
            properties={
                "certificationId": certification_id,
                "score": score,
                "passed": passed,
                "timeSpent": time_spent,
            },
        ))

    async def track_payment_event(
            self,
            user_id: str,
            session_id: str,
            event: str,
            amount: Optional[float] = None,
            plan: Optional[str] = None,
            currency: Optional[str] = None,
    ) -> Optional[AnalyticsEvent]:
        if event not in PAYMENT_EVENTS:
            raise ValueError(f"Unknown payment event: {event}")
        return await self.track(NewEvent(
            user_id=user_id,
            session_id=session_id,
            event_name=event,
            category="payment",
            properties=_compact({"amount": amount, "plan": plan, "currency": currency}),
        ))

    async def track_gamification_event(
            self,
            user_id: str,
            session_id: str,
            event: str,
            points: Optional[int] = None,
            achievement_id: Optional[str] = None,
            level: Optional[int] = None,
    ) -> Optional[AnalyticsEvent]:
        if event not in GAMIFICATION_EVENTS:
            raise ValueError(f"Unknown gamification event: {event}")
        return await self.track(NewEvent(
            user_id=user_id,
            session_id=session_id,
            event_name=event,
            category="gamification",
            properties=_compact({"points": points, "achievementId": achievement_id, "level": level}),
        ))

    def _local(self, value: datetime) -> datetime:
        return value.astimezone(self._tz)

    def get_real_time_metrics(self) -> schemas.RealTimeMetrics:
        recent = self._store.events(since=self._clock() - self.realtime_window)
        window_minutes = self.realtime_window.total_seconds() / 60

        return schemas.RealTimeMetrics(
            active_users=len({e.user_id for e in recent if e.user_id}),
            concurrent_sessions=len({e.session_id for e in recent}),
            lessons_in_progress=len(_named(recent, "lesson_start")),
            certifications_active=len(_named(recent, "certification_attempt")),
            ai_interactions_per_minute=len(_named(recent, "ai_interaction")) / window_minutes,
            revenue_per_hour=sum(_amount(e) for e in _named(recent, "payment_completed")),
            top_performing_content=self._top_performing_content(recent),
            user_satisfaction_score=self._satisfaction(recent),
        )

    def _top_performing_content(self, events: List[AnalyticsEvent]) -> List[str]:
        counts = Counter(_lesson_key(e) for e in _named(events, "lesson_complete"))
        return [lesson_id for lesson_id, _ in counts.most_common(TOP_CONTENT_LIMIT)]

    def _satisfaction(self, events: List[AnalyticsEvent]) -> float:
        scores = [
            _number(e.prop("satisfaction")) or 0.0
            for e in events
            if e.category == "ai" and e.prop("satisfaction") is not None
        ]
        return _mean(scores)

    def get_revenue_analytics(self) -> schemas.RevenueAnalytics:
        all_events = self._store.events()
        payments = [e for e in all_events if e.category == "payment"]
        completed = _named(payments, "payment_completed")
        cancelled = _named(payments, "subscription_cancelled")

        average_order_value = _mean([_amount(e) for e in completed])
        sessions = len({e.session_id for e in all_events})

        return schemas.RevenueAnalytics(
            daily_revenue=self._daily_revenue(completed),
            monthly_recurring_revenue=sum(_amount(e) for e in completed if e.prop("plan")),
            customer_lifetime_value=average_order_value * (len(completed) / 30) * CUSTOMER_LIFESPAN_MONTHS,
            churn_rate=_percent(len(cancelled), len(completed)),
            conversion_rate=_percent(len(completed), sessions),
            average_order_value=average_order_value,
            subscription_growth_rate=self._growth_rate(completed),
            revenue_by_country=self._sum_by(completed, lambda e: e.country),
            revenue_by_plan=self._sum_by(completed, lambda e: e.prop("plan")),
            methodology=dict(REVENUE_METHODOLOGY),
        )

    def _daily_revenue(self, completed: List[AnalyticsEvent]) -> float:
        start_of_day = self._local(self._clock()).replace(hour=0, minute=0, second=0, microsecond=0)
        return sum(_amount(e) for e in completed if e.timestamp >= start_of_day)

    def _growth_rate(self, completed: List[AnalyticsEvent]) -> float:
        now = self._local(self._clock())
        this_month = (now.year, now.month)
        last_month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)

        months = Counter()
        for e in completed:
            local = self._local(e.timestamp)
            months[(local.year, local.month)] += 1

        if months[last_month] == 0:
            return 0.0
        return (months[this_month] - months[last_month]) / months[last_month] * 100

    @staticmethod
    def _sum_by(events: List[AnalyticsEvent], key: Callable[[AnalyticsEvent], Any]) -> Dict[str, float]:
        totals: Dict[str, float] = defaultdict(float)
        for e in events:
            totals[str(key(e) or "Unknown")] += _amount(e)
        return dict(totals)

    def get_ai_analytics(self) -> schemas.AIAnalytics:
        all_events = self._store.events()
        ai_events = [e for e in all_events if e.category == "ai"]

        satisfaction = self._satisfaction(ai_events)
        average_response_time = self._average_response_time(ai_events)

        questions = Counter(
            e.prop("question") for e in ai_events
            if isinstance(e.prop("question"), str) and e.prop("question")
        )
        languages = Counter(
            e.prop("language") for e in ai_events
            if isinstance(e.prop("language"), str) and e.prop("language")
        )
        topics = Counter(_lesson_key(e) for e in all_events if e.category == "lesson")

        return schemas.AIAnalytics(
            total_ai_interactions=len(ai_events),
            average_response_time=average_response_time,
            user_satisfaction_rating=satisfaction,
            most_asked_questions=[
                schemas.QuestionCount(question=q, count=c) for q, c in questions.most_common(TOP_QUESTIONS_LIMIT)
            ],
            ai_accuracy_score=satisfaction * 20,
            language_usage_distribution=dict(languages),
            topic_popularity=dict(topics),
            prompt_effectiveness_score=satisfaction * (1000 / max(average_response_time, 100)),
            methodology=dict(AI_METHODOLOGY),
        )

    @staticmethod
    def _average_response_time(events: List[AnalyticsEvent]) -> float:
        times = [_number(e.prop("responseTime")) for e in events if e.prop("responseTime") is not None]
        return _mean([t for t in times if t is not None])

    def get_learning_analytics(self) -> schemas.LearningAnalytics:
        all_events = self._store.events()
        lesson_events = [e for e in all_events if e.category == "lesson"]
        certification_events = [e for e in all_events if e.category == "certification"]

        completion_rates = self._completion_rates(lesson_events)

        return schemas.LearningAnalytics(
            completion_rates_by_lesson=completion_rates,
            average_time_per_lesson=self._average_time_per_lesson(lesson_events),
            certification_pass_rates=self._pass_rates(certification_events),
            # No distinct path metric exists yet; completion rates stand in for it.
            learning_path_effectiveness=dict(completion_rates),
            knowledge_retention_score=self._retention_score(lesson_events),
            skill_progression_rate=self._progression_rate(lesson_events),
            preferred_learning_times=self._preferred_learning_times(all_events),
        )

    @staticmethod
    def _completion_rates(events: List[AnalyticsEvent]) -> Dict[str, float]:
        starts = Counter(_lesson_key(e) for e in _named(events, "lesson_start"))
        completions = Counter(_lesson_key(e) for e in _named(events, "lesson_complete"))
        return {lesson_id: _percent(completions[lesson_id], count) for lesson_id, count in starts.items()}

    @staticmethod
    def _average_time_per_lesson(events: List[AnalyticsEvent]) -> Dict[str, float]:
        times: Dict[str, List[float]] = defaultdict(list)
        for e in events:
            time_spent = _number(e.prop("timeSpent"))
            if time_spent is not None:
                times[_lesson_key(e)].append(time_spent)
        return {lesson_id: _mean(values) for lesson_id, values in times.items()}

    @staticmethod
    def _pass_rates(events: List[AnalyticsEvent]) -> Dict[str, float]:
        attempts: Counter = Counter()
        passed: Counter = Counter()
        for e in _named(events, "certification_attempt"):
            certification_id = str(e.prop("certificationId") or "unknown")
            attempts[certification_id] += 1
            if e.prop("passed") is True:
                passed[certification_id] += 1
        return {cert_id: _percent(passed[cert_id], total) for cert_id, total in attempts.items()}

    def _retention_score(self, events: List[AnalyticsEvent]) -> float:
        days_by_user = defaultdict(set)
        for e in events:
            if e.user_id:
                days_by_user[e.user_id].add(self._local(e.timestamp).date())

        returning = sum(1 for days in days_by_user.values() if len(days) > 1)
        return _percent(returning, len(days_by_user))

    @staticmethod
    def _progression_rate(events: List[AnalyticsEvent]) -> float:
        per_user = Counter(e.user_id for e in _named(events, "lesson_complete") if e.user_id)
        return sum(per_user.values()) / len(per_user) if per_user else 0.0

    def _preferred_learning_times(self, events: List[AnalyticsEvent]) -> Dict[str, int]:
        slots: Counter = Counter()
        for e in events:
            hour = self._local(e.timestamp).hour
            slots[f"{hour}:00-{hour + 1}:00"] += 1
        return dict(slots)

    def get_overview(self) -> schemas.DashboardOverview:
        return schemas.DashboardOverview(
            realtime=self.get_real_time_metrics(),
            revenue=self.get_revenue_analytics(),
            ai=self.get_ai_analytics(),
            learning=self.get_learning_analytics(),
        )
