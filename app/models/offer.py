import enum

from sqlalchemy import Boolean, Column, DateTime, Enum, Integer, Numeric, String
from sqlalchemy.orm import validates

from app.database import Base
from app.utils.clock import utcnow


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class Offer(Base):
    __tablename__ = "offers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(String(1000), nullable=True)
    # Stored trimmed and upper-cased, so the unique index also rejects case variants.
    code = Column(String(50), unique=True, index=True, nullable=False)
    discount_type = Column(Enum(DiscountType, native_enum=False, length=20), nullable=False)
    value = Column(Numeric(12, 2, asdecimal=True), nullable=False)
    min_order_amount = Column(Numeric(12, 2, asdecimal=True), nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    max_usage_count = Column(Integer, nullable=True)  # NULL means unlimited
    used_count = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @validates("code")
    def normalize_code(self, key, value):
        if value is None:
            return value
        return value.strip().upper()
