from pydantic import BaseModel, Field
from typing import List, Dict, Any


class TrackRequest(BaseModel):
    """Tracking payload from the browser. Every field is optional so malformed
    input is defaulted instead of rejected."""

    event: Any = None
    category: Any = None
    properties: Any = None
    session_id: Any = Field(None, alias="sessionId")

    class Config:
        populate_by_name = True

    @property
    def event_name(self) -> str:
        return str(self.event) if self.event not in (None, "") else "unknown"

    @property
    def category_name(self) -> str:
        return str(self.category) if self.category not in (None, "") else "unknown"

    @property
    def property_map(self) -> Dict[str, Any]:
        return self.properties if isinstance(self.properties, dict) else {}

    @property
    def session(self) -> str:
        return str(self.session_id) if self.session_id not in (None, "") else "anonymous"


class TrackResponse(BaseModel):
    success: bool = True


class ErrorResponse(BaseModel):
    error: str


class RealTimeMetrics(BaseModel):
    active_users: int
    concurrent_sessions: int
    lessons_in_progress: int
    certifications_active: int
    ai_interactions_per_minute: float
    revenue_per_hour: float
    top_performing_content: List[str]
    user_satisfaction_score: float


class RevenueAnalytics(BaseModel):
    daily_revenue: float
    monthly_recurring_revenue: float
    customer_lifetime_value: float
    churn_rate: float
    conversion_rate: float
    average_order_value: float
    subscription_growth_rate: float
    revenue_by_country: Dict[str, float]
    revenue_by_plan: Dict[str, float]
    methodology: Dict[str, str] = Field(default_factory=dict)


class QuestionCount(BaseModel):
    question: str
    count: int


class AIAnalytics(BaseModel):
    total_ai_interactions: int
    average_response_time: float
    user_satisfaction_rating: float
    most_asked_questions: List[QuestionCount]
    ai_accuracy_score: float
    language_usage_distribution: Dict[str, int]
    topic_popularity: Dict[str, int]
    prompt_effectiveness_score: float
    methodology: Dict[str, str] = Field(default_factory=dict)


class LearningAnalytics(BaseModel):
    completion_rates_by_lesson: Dict[str, float]
    average_time_per_lesson: Dict[str, float]
    certification_pass_rates: Dict[str, float]
    learning_path_effectiveness: Dict[str, float]
    knowledge_retention_score: float
    skill_progression_rate: float
    preferred_learning_times: Dict[str, int]


class DashboardOverview(BaseModel):
    realtime: RealTimeMetrics
    revenue: RevenueAnalytics
    ai: AIAnalytics
    learning: LearningAnalytics

