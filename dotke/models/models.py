from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Numeric,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from dotke.db.base import Base


class DomainBooking(Base):
    __tablename__ = "domain_bookings"
    id = Column(Integer, primary_key=True)
    domain_name = Column(String(253), nullable=False, index=True)
    owner_id = Column(String(128), nullable=False, index=True)
    payment_ref = Column(String(255), nullable=True)
    booked_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    # True for the booking currently holding the domain, NULL once superseded.
    # NULLs never collide, so the constraint allows one current row per domain.
    is_current = Column(Boolean, nullable=True, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (UniqueConstraint("domain_name", "is_current", name="uq_domain_current_booking"),)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True)
    domain_name = Column(String(253), nullable=False, index=True)
    owner_id = Column(String(128), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="KES")
    provider = Column(String(128), nullable=True)
    provider_ref = Column(String(255), nullable=True, unique=True)
    account_reference = Column(String(64), nullable=False)
    payer_phone = Column(String(32), nullable=False)
    status = Column(String(50), nullable=False, index=True)
    outcome_message = Column(String(1024), nullable=True)
    receipt = Column(String(64), nullable=True)
    booking_id = Column(Integer, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    meta = Column(JSON, nullable=True)
