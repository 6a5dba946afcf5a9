"""Immutable payment ledger rows, one per successful gateway confirmation."""

from sqlalchemy import Column, String, DateTime, Numeric, ForeignKey, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import uuid
from app.core.database import Base
from app.models.appointment import PaymentStatus
from app.utils.clock import utcnow


class Payment(Base):
    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("appointments.id"), nullable=False, index=True)
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id"), nullable=False, index=True)
    doctor_id = Column(UUID(as_uuid=True), ForeignKey("doctors.id"), nullable=False)
    gateway_id = Column(UUID(as_uuid=True), ForeignKey("payment_gateways.id"), nullable=True)
    provider = Column(String, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(SQLEnum(PaymentStatus, name="payment_status"), nullable=False, default=PaymentStatus.PAID)
    # Idempotency key: duplicate webhook deliveries collapse onto one row
    gateway_ref_id = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    appointment = relationship("Appointment", back_populates="payments")
