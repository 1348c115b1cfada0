from sqlalchemy import Boolean, Column, Numeric, String
from .base import Base


class ShippingMethod(Base):
    __tablename__ = "shipping_method"

    id = Column(String(36), primary_key=True)
    name = Column(String(64), nullable=False, unique=True)
    price = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
