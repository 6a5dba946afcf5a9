"""Clinic and doctor models.

Managed by clinic admin tooling; the booking engine only reads them to
denormalize ownership onto appointments and to address notifications.
"""

from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import uuid
from app.core.database import Base
from app.utils.clock import utcnow


class Clinic(Base):
    __tablename__ = "clinics"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)  # clinic admin inbox
    phone = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    # Relationships
    doctors = relationship("Doctor", back_populates="clinic")
    gateways = relationship("ClinicGateway", back_populates="clinic")
    subscription = relationship("Subscription", back_populates="clinic", uselist=False)


class Doctor(Base):
    __tablename__ = "doctors"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    clinic = relationship("Clinic", back_populates="doctors")
