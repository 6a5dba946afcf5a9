from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Enum, func
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum

from app.core.database import Base


class ClinicNotificationType(str, enum.Enum):
    BOOKING = "BOOKING"
    PAYMENT = "PAYMENT"
    CANCELLATION = "CANCELLATION"
    RESCHEDULE = "RESCHEDULE"


class ClinicNotification(Base):
    __tablename__ = "clinic_notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(Enum(ClinicNotificationType, name="clinic_notification_type"), nullable=False)
    entity_id = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    read_at = Column(DateTime, nullable=True)
