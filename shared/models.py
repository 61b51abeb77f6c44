from sqlalchemy import Column, String, JSON, DateTime
from shared.database import Base


class AnalyticsEventRecord(Base):
    __tablename__ = "analytics_events"

    id = Column(String(64), primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    session_id = Column(String(128), nullable=False, index=True)
    user_id = Column(String(128), nullable=True, index=True)
    event_name = Column(String(100), nullable=False, index=True)
    category = Column(String(32), nullable=False, index=True)
    properties = Column(JSON, nullable=False, default=dict)
    user_agent = Column(String(512), nullable=True)
    ip = Column(String(64), nullable=True)
    country = Column(String(64), nullable=True)
    referrer = Column(String(1024), nullable=True)
