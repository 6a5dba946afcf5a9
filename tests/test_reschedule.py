"""Tests for patient reschedule and cancellation (/api/v1/appointments/...)."""

import pytest

from app.models.appointment import AppointmentStatus, PaymentStatus
from app.models.payment import Payment
from app.models.slot import SlotStatus
from app.services.notification_service import BookingEvent
from conftest import (
    auth_headers,
    count_rows,
    get_appointment,
    get_slot,
    razorpay_proof,
    razorpay_webhook,
)


async def confirmed_booking(client, user, slot):
    """Hold the slot and pay for it; returns the appointment id."""
    booking = await client.post(
        "/api/v1/booking", json={"slotId": str(slot.id)}, headers=auth_headers(user),
    )
    data = booking.json()
    verified = await client.post(
        "/api/v1/booking/verify",
        json={"appointmentId": data["appointmentId"], **razorpay_proof(data["orderId"], f"pay_{data['orderId']}")},
        headers=auth_headers(user),
    )
    assert verified.status_code == 200, verified.text
    return data["appointmentId"]


async def reschedule(client, user, appointment_id, slot):
    return await client.post(
        f"/api/v1/appointments/{appointment_id}/reschedule",
        json={"newSlotId": str(slot.id)},
        headers=auth_headers(user),
    )


@pytest.mark.asyncio
async def test_move_to_cheaper_slot_is_immediate(client, clinic, clock, notifier):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)

    resp = await reschedule(client, clinic.user_a, appointment_id, clinic.slots.online_cheaper)

    assert resp.status_code == 200
    data = resp.json()
    assert data["rescheduled"] is True
    assert data["requiresPayment"] is False
    appt = await get_appointment(appointment_id)
    assert appt.slot_id == clinic.slots.online_cheaper.id
    assert appt.status == AppointmentStatus.CONFIRMED
    assert appt.reschedule_count == 1
    assert (await get_slot(clinic.slots.online.id)).status == SlotStatus.PENDING
    assert (await get_slot(clinic.slots.online_cheaper.id)).status == SlotStatus.CONFIRMED
    assert BookingEvent.RESCHEDULED in notifier.events()


@pytest.mark.asyncio
async def test_offline_request_moves_to_free_slot(client, clinic, clock):
    booking = await client.post(
        "/api/v1/booking", json={"slotId": str(clinic.slots.offline.id)}, headers=auth_headers(clinic.user_a),
    )
    appointment_id = booking.json()["appointmentId"]

    resp = await reschedule(client, clinic.user_a, appointment_id, clinic.slots.free)

    assert resp.status_code == 200
    appt = await get_appointment(appointment_id)
    assert appt.slot_id == clinic.slots.free.id
    assert appt.status == AppointmentStatus.PENDING
    assert appt.payment_status == PaymentStatus.PAID
    assert float(appt.amount) == 0


@pytest.mark.asyncio
async def test_move_to_pricier_slot_requires_difference(client, clinic, clock, razorpay_api):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)

    resp = await reschedule(client, clinic.user_a, appointment_id, clinic.slots.online_pricier)

    assert resp.status_code == 200
    data = resp.json()
    assert data["requiresPayment"] is True
    assert data["amountDue"] == 300
    assert data["orderId"] == "order_2"
    assert data["expiresIn"] == 600
    appt = await get_appointment(appointment_id)
    assert appt.slot_id == clinic.slots.online.id
    assert appt.pending_slot_id == clinic.slots.online_pricier.id
    assert appt.status == AppointmentStatus.CONFIRMED
    assert (await get_slot(clinic.slots.online_pricier.id)).is_blocked is True


@pytest.mark.asyncio
async def test_pending_reschedule_blocks_other_patients(client, clinic, clock):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)
    await reschedule(client, clinic.user_a, appointment_id, clinic.slots.online_pricier)

    resp = await client.post(
        "/api/v1/booking",
        json={"slotId": str(clinic.slots.online_pricier.id)},
        headers=auth_headers(clinic.user_b),
    )

    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "SLOT_BLOCKED"


@pytest.mark.asyncio
async def test_verified_reschedule_payment_moves_booking(client, clinic, clock, notifier):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)
    await reschedule(client, clinic.user_a, appointment_id, clinic.slots.online_pricier)

    resp = await client.post(
        "/api/v1/booking/verify",
        json={"appointmentId": appointment_id, **razorpay_proof("order_2", "pay_rs")},
        headers=auth_headers(clinic.user_a),
    )

    assert resp.status_code == 200
    assert resp.json()["rescheduled"] is True
    appt = await get_appointment(appointment_id)
    assert appt.slot_id == clinic.slots.online_pricier.id
    assert appt.pending_slot_id is None
    assert appt.reschedule_count == 1
    assert float(appt.amount) == 800
    assert appt.payment_id == "pay_rs"
    assert (await get_slot(clinic.slots.online.id)).status == SlotStatus.PENDING
    assert (await get_slot(clinic.slots.online_pricier.id)).status == SlotStatus.CONFIRMED
    assert await count_rows(Payment) == 2
    assert BookingEvent.RESCHEDULED in notifier.events()


@pytest.mark.asyncio
async def test_reschedule_webhook_moves_booking(client, clinic, clock):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)
    await reschedule(client, clinic.user_a, appointment_id, clinic.slots.online_pricier)
    body, headers = razorpay_webhook("order_2", "pay_rs_wh", appointment_id)

    resp = await client.post(f"/api/v1/webhooks/razorpay/{clinic.clinic.id}", content=body, headers=headers)

    assert resp.json()["status"] == "processed"
    appt = await get_appointment(appointment_id)
    assert appt.slot_id == clinic.slots.online_pricier.id
    assert appt.status == AppointmentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_expired_reschedule_payment_keeps_original_slot(client, clinic, clock):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)
    await reschedule(client, clinic.user_a, appointment_id, clinic.slots.online_pricier)
    clock.advance(11 * 60_000)

    resp = await client.post(
        "/api/v1/booking/verify",
        json={"appointmentId": appointment_id, **razorpay_proof("order_2", "pay_rs")},
        headers=auth_headers(clinic.user_a),
    )

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "BOOKING_EXPIRED"
    appt = await get_appointment(appointment_id)
    assert appt.status == AppointmentStatus.CONFIRMED
    assert appt.slot_id == clinic.slots.online.id
    assert appt.pending_slot_id is None
    assert (await get_slot(clinic.slots.online_pricier.id)).is_blocked is False


@pytest.mark.asyncio
async def test_only_one_reschedule_allowed(client, clinic, clock):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)
    await reschedule(client, clinic.user_a, appointment_id, clinic.slots.online_cheaper)

    resp = await reschedule(client, clinic.user_a, appointment_id, clinic.slots.offline)

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "RESCHEDULE_NOT_ALLOWED"


@pytest.mark.asyncio
async def test_cannot_reschedule_onto_another_patients_hold(client, clinic, clock):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)
    await client.post(
        "/api/v1/booking",
        json={"slotId": str(clinic.slots.online_cheaper.id)},
        headers=auth_headers(clinic.user_b),
    )

    resp = await reschedule(client, clinic.user_a, appointment_id, clinic.slots.online_cheaper)

    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "SLOT_BLOCKED"


@pytest.mark.asyncio
async def test_cannot_reschedule_onto_confirmed_slot(client, clinic, clock):
    mine = await confirmed_booking(client, clinic.user_a, clinic.slots.online)
    await confirmed_booking(client, clinic.user_b, clinic.slots.online_cheaper)

    resp = await reschedule(client, clinic.user_a, mine, clinic.slots.online_cheaper)

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "ALREADY_CONFIRMED"


@pytest.mark.asyncio
async def test_unpaid_hold_cannot_be_rescheduled(client, clinic, clock):
    booking = await client.post(
        "/api/v1/booking", json={"slotId": str(clinic.slots.online.id)}, headers=auth_headers(clinic.user_a),
    )

    resp = await reschedule(client, clinic.user_a, booking.json()["appointmentId"], clinic.slots.online_cheaper)

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "RESCHEDULE_NOT_ALLOWED"


@pytest.mark.asyncio
async def test_only_owner_can_reschedule(client, clinic, clock):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)

    resp = await reschedule(client, clinic.user_b, appointment_id, clinic.slots.online_cheaper)

    assert resp.status_code == 403
    assert (await get_appointment(appointment_id)).slot_id == clinic.slots.online.id


@pytest.mark.asyncio
async def test_break_slot_rejected(client, clinic, clock):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)

    resp = await reschedule(client, clinic.user_a, appointment_id, clinic.slots.lunch)

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "SLOT_NOT_BOOKABLE"


@pytest.mark.asyncio
async def test_cancel_releases_slot(client, clinic, clock, notifier, auditor):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)

    resp = await client.post(f"/api/v1/appointments/{appointment_id}/cancel", headers=auth_headers(clinic.user_a))

    assert resp.status_code == 200
    assert resp.json()["status"] == "CANCELLED"
    assert (await get_appointment(appointment_id)).status == AppointmentStatus.CANCELLED
    slot = await get_slot(clinic.slots.online.id)
    assert slot.status == SlotStatus.PENDING
    assert slot.is_blocked is False
    assert BookingEvent.CANCELLED in notifier.events()
    assert "APPOINTMENT_CANCELLED" in auditor.actions()


@pytest.mark.asyncio
async def test_cancelled_slot_can_be_booked_again(client, clinic, clock):
    appointment_id = await confirmed_booking(client, clinic.user_a, clinic.slots.online)
    await client.post(f"/api/v1/appointments/{appointment_id}/cancel", headers=auth_headers(clinic.user_a))

    rebooked = await confirmed_booking(client, clinic.user_b, clinic.slots.online)

    assert (await get_appointment(rebooked)).status == AppointmentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_cancel_twice_is_invalid(client, clinic, clock):
    booking = await client.post(
        "/api/v1/booking", json={"slotId": str(clinic.slots.offline.id)}, headers=auth_headers(clinic.user_a),
    )
    appointment_id = booking.json()["appointmentId"]
    first = await client.post(f"/api/v1/appointments/{appointment_id}/cancel", headers=auth_headers(clinic.user_a))

    second = await client.post(f"/api/v1/appointments/{appointment_id}/cancel", headers=auth_headers(clinic.user_a))

    assert first.status_code == 200
    assert (await get_appointment(appointment_id)).payment_status == PaymentStatus.FAILED
    assert second.status_code == 400
    assert second.json()["detail"]["code"] == "INVALID_TRANSITION"
