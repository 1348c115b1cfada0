from sqlalchemy import Boolean, Column, Numeric, String
from .base import Base


class TaxRate(Base):
    __tablename__ = "tax_rate"

    id = Column(String(36), primary_key=True)
    region = Column(String(64), nullable=False, unique=True)
    rate = Column(Numeric(6, 4), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
