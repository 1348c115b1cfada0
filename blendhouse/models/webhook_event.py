from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text, func
from ..utils.timeutil import utcnow
from .base import Base


class WebhookEvent(Base):
    """Deduplication record for provider webhook deliveries, keyed by the provider's event id."""

    __tablename__ = "webhook_event"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(255), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())

    @property
    def failed(self) -> bool:
        return not self.processed and self.error is not None
