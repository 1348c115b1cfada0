from sqlalchemy import CheckConstraint, Column, DateTime, String, func
from sqlalchemy.orm import relationship
from ..utils.timeutil import utcnow
from .base import Base


class Cart(Base):
    __tablename__ = "cart"
    # owned by exactly one of a user or a guest session
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_cart_single_owner",
        ),
    )

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), nullable=True, unique=True)
    session_id = Column(String(128), nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    items = relationship("CartItem", back_populates="cart", cascade="all, delete-orphan")
