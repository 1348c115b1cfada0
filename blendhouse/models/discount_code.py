from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, func
from ..utils.timeutil import utcnow
from .base import Base


PERCENTAGE = "percentage"
FIXED = "fixed"


class DiscountCode(Base):
    __tablename__ = "discount_code"

    id = Column(String(36), primary_key=True)
    code = Column(String(64), nullable=False, unique=True)
    discount_type = Column(String(16), nullable=False, default=PERCENTAGE)
    discount_value = Column(Numeric(12, 2), nullable=False)
    min_order_amount = Column(Numeric(12, 2), nullable=True)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())
    valid_until = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
