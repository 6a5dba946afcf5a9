"""Per-clinic payment gateway credentials."""

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import enum
import uuid
from app.core.database import Base
from app.utils.clock import utcnow


class Provider(str, enum.Enum):
    RAZORPAY = "RAZORPAY"
    STRIPE = "STRIPE"


class ClinicGateway(Base):
    __tablename__ = "payment_gateways"
    __table_args__ = (UniqueConstraint("clinic_id", "name", name="uq_payment_gateways_clinic_name"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id"), nullable=False, index=True)
    name = Column(String, nullable=False)  # Provider value
    api_key = Column(String, nullable=True)  # Razorpay key_id / Stripe publishable key
    secret = Column(String, nullable=True)  # Razorpay key_secret / Stripe secret key
    webhook_secret = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    clinic = relationship("Clinic", back_populates="gateways")
