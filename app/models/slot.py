"""Slot model: one bookable clinic/doctor/date/time unit."""

from sqlalchemy import Column, String, DateTime, Date, Time, Integer, Numeric, Boolean, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import enum
import uuid
from app.core.database import Base
from app.utils.clock import utcnow


class SlotPaymentMode(str, enum.Enum):
    FREE = "FREE"
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


class SlotKind(str, enum.Enum):
    APPOINTMENT = "APPOINTMENT"
    BREAK = "BREAK"


class SlotStatus(str, enum.Enum):
    """Availability mirror shown in slot listings. Appointments are the source of truth."""
    PENDING = "PENDING"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"


class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (UniqueConstraint("doctor_id", "date", "time", name="uq_slots_doctor_date_time"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id"), nullable=False, index=True)
    doctor_id = Column(UUID(as_uuid=True), ForeignKey("doctors.id"), nullable=False, index=True)

    # Bookable window: never mutated once created
    date = Column(Date, nullable=False, index=True)
    time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)

    kind = Column(SQLEnum(SlotKind, name="slot_kind"), nullable=False, default=SlotKind.APPOINTMENT)
    payment_mode = Column(SQLEnum(SlotPaymentMode, name="slot_payment_mode"), nullable=False, default=SlotPaymentMode.ONLINE)
    price = Column(Numeric(10, 2), nullable=False, default=0)

    status = Column(SQLEnum(SlotStatus, name="slot_status"), nullable=False, default=SlotStatus.PENDING)
    is_blocked = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    clinic = relationship("Clinic")
    doctor = relationship("Doctor")

    @property
    def is_bookable(self) -> bool:
        return self.deleted_at is None and self.kind == SlotKind.APPOINTMENT

    @property
    def label(self) -> str:
        return f"{self.date.isoformat()} {self.time.strftime('%H:%M')}"
