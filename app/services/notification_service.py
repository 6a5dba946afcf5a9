"""Booking notifications for clinic admins, doctors and patients.

``Notifier.notify`` returns immediately; delivery runs as a detached task with
its own session so a mail outage can never fail or roll back a booking.
"""

import enum
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.core.database import async_session
from app.models.appointment import Appointment
from app.models.notification import ClinicNotification, ClinicNotificationType
from app.services.email_service import EmailService
from app.utils.background import spawn_detached

logger = logging.getLogger(__name__)


class BookingEvent(str, enum.Enum):
    CREATED = "booking.created"
    CONFIRMED = "booking.confirmed"
    CANCELLED = "booking.cancelled"
    RESCHEDULED = "booking.rescheduled"


EVENT_TYPES = {
    BookingEvent.CREATED: ClinicNotificationType.BOOKING,
    BookingEvent.CONFIRMED: ClinicNotificationType.PAYMENT,
    BookingEvent.CANCELLED: ClinicNotificationType.CANCELLATION,
    BookingEvent.RESCHEDULED: ClinicNotificationType.RESCHEDULE,
}

SUBJECTS = {
    BookingEvent.CREATED: "New appointment booked",
    BookingEvent.CONFIRMED: "Appointment confirmed",
    BookingEvent.CANCELLED: "Appointment cancelled",
    BookingEvent.RESCHEDULED: "Appointment rescheduled",
}


class Notifier:
    def __init__(
        self,
        email_service: Optional[EmailService] = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
    ):
        self.email_service = email_service or EmailService()
        self.session_factory = session_factory

    def notify(self, event: BookingEvent, payload: Dict[str, Any]):
        return spawn_detached(self.deliver(event, payload), name=f"notify:{event.value}")

    async def deliver(self, event: BookingEvent, payload: Dict[str, Any]) -> int:
        """Record the clinic notification and email every party. Returns emails sent."""
        appointment_id = UUID(str(payload["appointment_id"]))
        async with self.session_factory() as db:
            result = await db.execute(
                select(Appointment)
                .options(
                    selectinload(Appointment.clinic),
                    selectinload(Appointment.doctor),
                    selectinload(Appointment.user),
                    selectinload(Appointment.slot),
                )
                .where(Appointment.id == appointment_id)
            )
            appointment = result.scalar_one_or_none()
            if appointment is None:
                logger.warning("Notification %s skipped: appointment %s not found", event.value, appointment_id)
                return 0

            message = _describe(event, appointment)
            db.add(ClinicNotification(
                clinic_id=appointment.clinic_id,
                type=EVENT_TYPES[event],
                entity_id=str(appointment.id),
                message=message,
            ))
            await db.commit()

            recipients = [
                appointment.clinic.email if appointment.clinic else None,
                appointment.doctor.email if appointment.doctor else None,
                appointment.user.email if appointment.user else None,
            ]

        sent = 0
        for to in filter(None, recipients):
            try:
                if await self.email_service.send_booking_update(to, SUBJECTS[event], [message]):
                    sent += 1
            except Exception:
                logger.exception("Failed to email %s about appointment %s", to, appointment_id)

        logger.info("Notification %s for appointment %s: %d email(s) sent", event.value, appointment_id, sent)
        return sent


def _describe(event: BookingEvent, appointment: Appointment) -> str:
    when = appointment.slot.label if appointment.slot else "the scheduled time"
    doctor = appointment.doctor.name if appointment.doctor else "the doctor"
    patient = (appointment.user.name or appointment.user.email) if appointment.user else "A patient"

    if event == BookingEvent.CREATED:
        return f"{patient} booked an appointment with {doctor} on {when}."
    if event == BookingEvent.CONFIRMED:
        return f"Payment received. Appointment with {doctor} on {when} is confirmed."
    if event == BookingEvent.CANCELLED:
        return f"The appointment with {doctor} on {when} was cancelled."
    return f"The appointment with {doctor} was moved to {when}."
