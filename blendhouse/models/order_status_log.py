from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import relationship
from ..utils.timeutil import utcnow
from .base import Base


class OrderStatusLog(Base):
    __tablename__ = "order_status_log"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("order.id"), nullable=False, index=True)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=False)
    changed_by = Column(String(128), nullable=True)
    notes = Column(Text, nullable=True)
    # several rows can share a created_at within one transaction
    sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())

    order = relationship("Order", back_populates="status_logs")
