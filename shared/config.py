from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional, Set

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./analytics.db"
    NATS_URL: str = "nats://localhost:4222"
    API_KEYS: Set[str] = set()

    ENVIRONMENT: str = "development"
    FORWARD_SUBJECT: str = "analytics.events"
    STORE_BACKEND: str = "memory"

    RETENTION_WINDOW_SECONDS: Optional[int] = None
    MAX_EVENTS: Optional[int] = None
    STRICT_VALIDATION: bool = False
    REALTIME_WINDOW_MINUTES: int = 60
    REPORT_TIMEZONE: str = ""

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = Path(__file__).parent.parent / ".env"
        case_sensitive = True

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

settings = Settings()
