"""Appointment model: the booking ledger and its state machine.

A "hold" is not stored separately. It is an appointment in PENDING_PAYMENT
whose hold deadline has not passed (see ``app.services.holds``).
"""

from sqlalchemy import Column, String, DateTime, Integer, Numeric, ForeignKey, Index, Enum as SQLEnum, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import enum
import uuid
from app.core.database import Base
from app.utils.clock import utcnow


class AppointmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


class PaymentStatus(str, enum.Enum):
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


# Target status -> statuses it may be entered from. Every status write goes
# through app.services.ledger, which turns this into a conditional UPDATE.
APPOINTMENT_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING_PAYMENT: frozenset({AppointmentStatus.PENDING_PAYMENT}),
    AppointmentStatus.CONFIRMED: frozenset({AppointmentStatus.PENDING_PAYMENT, AppointmentStatus.PENDING}),
    AppointmentStatus.CANCELLED: frozenset({
        AppointmentStatus.PENDING,
        AppointmentStatus.PENDING_PAYMENT,
        AppointmentStatus.CONFIRMED,
    }),
    AppointmentStatus.COMPLETED: frozenset({AppointmentStatus.CONFIRMED}),
    AppointmentStatus.NO_SHOW: frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED}),
}

PENDING_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.PENDING_PAYMENT})
LIVE_STATUSES = PENDING_STATUSES | {AppointmentStatus.CONFIRMED}
TERMINAL_STATUSES = frozenset({
    AppointmentStatus.CANCELLED,
    AppointmentStatus.COMPLETED,
    AppointmentStatus.NO_SHOW,
})


def allowed_predecessors(target: AppointmentStatus) -> frozenset[AppointmentStatus]:
    return APPOINTMENT_TRANSITIONS.get(target, frozenset())


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # At most one live confirmation per slot, whatever the application does.
        Index(
            "uq_appointments_slot_confirmed",
            "slot_id",
            unique=True,
            postgresql_where=text("status = 'CONFIRMED' AND deleted_at IS NULL"),
            sqlite_where=text("status = 'CONFIRMED' AND deleted_at IS NULL"),
        ),
        Index("ix_appointments_slot_status", "slot_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    slot_id = Column(UUID(as_uuid=True), ForeignKey("slots.id"), nullable=False)
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id"), nullable=False, index=True)
    doctor_id = Column(UUID(as_uuid=True), ForeignKey("doctors.id"), nullable=False, index=True)

    status = Column(SQLEnum(AppointmentStatus, name="appointment_status"), nullable=False, default=AppointmentStatus.PENDING)
    payment_status = Column(SQLEnum(PaymentStatus, name="payment_status"), nullable=False, default=PaymentStatus.PENDING)
    amount = Column(Numeric(10, 2), nullable=False, default=0)

    # Gateway correlation
    provider = Column(String, nullable=True)
    order_id = Column(String, nullable=True, index=True)  # order id (Razorpay) / checkout session id (Stripe)
    payment_id = Column(String, nullable=True)  # gateway transaction id once paid
    payment_expiry = Column(DateTime, nullable=True)  # hold deadline

    # Pending reschedule awaiting payment of the difference
    pending_slot_id = Column(UUID(as_uuid=True), ForeignKey("slots.id"), nullable=True, index=True)
    reschedule_amount = Column(Numeric(10, 2), nullable=True)
    reschedule_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User")
    slot = relationship("Slot", foreign_keys=[slot_id])
    pending_slot = relationship("Slot", foreign_keys=[pending_slot_id])
    clinic = relationship("Clinic")
    doctor = relationship("Doctor")
    payments = relationship("Payment", back_populates="appointment")
