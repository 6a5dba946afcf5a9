"""Tests for synchronous payment verification (POST /api/v1/booking/verify)."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from app.models.appointment import AppointmentStatus, PaymentStatus
from app.models.payment import Payment
from app.models.slot import SlotStatus
from app.services.notification_service import BookingEvent
from conftest import auth_headers, count_rows, get_appointment, get_slot, razorpay_proof, razorpay_webhook


async def hold(client, user, slot, provider="RAZORPAY"):
    resp = await client.post(
        "/api/v1/booking",
        json={"slotId": str(slot.id), "provider": provider},
        headers=auth_headers(user),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def verify(client, user, appointment_id, proof):
    return await client.post(
        "/api/v1/booking/verify",
        json={"appointmentId": appointment_id, **proof},
        headers=auth_headers(user),
    )


@pytest.mark.asyncio
async def test_valid_signature_confirms_booking(client, clinic, clock, notifier, auditor):
    booking = await hold(client, clinic.user_a, clinic.slots.online)

    resp = await verify(client, clinic.user_a, booking["appointmentId"], razorpay_proof(booking["orderId"], "pay_100"))

    assert resp.status_code == 200
    assert resp.json()["status"] == "CONFIRMED"
    assert resp.json()["alreadyConfirmed"] is False

    appt = await get_appointment(booking["appointmentId"])
    assert appt.status == AppointmentStatus.CONFIRMED
    assert appt.payment_status == PaymentStatus.PAID
    assert appt.payment_id == "pay_100"

    slot = await get_slot(clinic.slots.online.id)
    assert slot.status == SlotStatus.CONFIRMED
    assert slot.is_blocked is False

    assert await count_rows(Payment, Payment.gateway_ref_id == "pay_100") == 1
    assert BookingEvent.CONFIRMED in notifier.events()
    assert "PAYMENT_VERIFIED" in auditor.actions()


@pytest.mark.asyncio
async def test_tampered_signature_cancels_hold(client, clinic, clock):
    booking = await hold(client, clinic.user_a, clinic.slots.online)
    proof = razorpay_proof(booking["orderId"], "pay_100", secret="not-the-secret")

    resp = await verify(client, clinic.user_a, booking["appointmentId"], proof)

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "INVALID_PAYMENT_PROOF"
    appt = await get_appointment(booking["appointmentId"])
    assert appt.status == AppointmentStatus.CANCELLED
    assert appt.payment_status == PaymentStatus.FAILED
    assert (await get_slot(clinic.slots.online.id)).is_blocked is False
    assert await count_rows(Payment) == 0


@pytest.mark.asyncio
async def test_order_from_another_booking_is_rejected(client, clinic, clock, auditor):
    """A proof for someone else's order leaves this hold untouched."""
    booking = await hold(client, clinic.user_a, clinic.slots.online)

    resp = await verify(client, clinic.user_a, booking["appointmentId"], razorpay_proof("order_999", "pay_1"))

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "ORDER_MISMATCH"
    appt = await get_appointment(booking["appointmentId"])
    assert appt.status == AppointmentStatus.PENDING_PAYMENT
    assert appt.payment_status == PaymentStatus.PENDING
    assert (await get_slot(clinic.slots.online.id)).is_blocked is True
    assert "PAYMENT_ORDER_MISMATCH" in auditor.actions()
    assert await count_rows(Payment) == 0


@pytest.mark.asyncio
async def test_payment_on_order_replaced_by_refresh_confirms(client, clinic, clock):
    """The patient paid the first order after a second booking attempt issued a new one."""
    first = await hold(client, clinic.user_a, clinic.slots.online)
    clock.advance(60_000)
    second = await hold(client, clinic.user_a, clinic.slots.online)
    assert second["appointmentId"] == first["appointmentId"]
    assert second["orderId"] != first["orderId"]

    resp = await verify(client, clinic.user_a, first["appointmentId"], razorpay_proof(first["orderId"], "pay_first"))

    assert resp.status_code == 200
    assert resp.json()["status"] == "CONFIRMED"
    appt = await get_appointment(first["appointmentId"])
    assert appt.status == AppointmentStatus.CONFIRMED
    assert appt.payment_id == "pay_first"

    body, headers = razorpay_webhook(first["orderId"], "pay_first", first["appointmentId"])
    webhook = await client.post(f"/api/v1/webhooks/razorpay/{clinic.clinic.id}", content=body, headers=headers)

    assert webhook.status_code == 200
    assert webhook.json()["status"] == "duplicate"
    assert await count_rows(Payment) == 1



@pytest.mark.asyncio
async def test_other_patients_appointment_is_not_found(client, clinic, clock):
    booking = await hold(client, clinic.user_a, clinic.slots.online)

    resp = await verify(client, clinic.user_b, booking["appointmentId"], razorpay_proof(booking["orderId"], "pay_1"))

    assert resp.status_code == 404
    assert (await get_appointment(booking["appointmentId"])).status == AppointmentStatus.PENDING_PAYMENT


@pytest.mark.asyncio
async def test_repeat_verification_is_a_noop(client, clinic, clock):
    booking = await hold(client, clinic.user_a, clinic.slots.online)
    proof = razorpay_proof(booking["orderId"], "pay_100")

    first = await verify(client, clinic.user_a, booking["appointmentId"], proof)
    second = await verify(client, clinic.user_a, booking["appointmentId"], proof)

    assert first.status_code == second.status_code == 200
    assert second.json()["alreadyConfirmed"] is True
    assert await count_rows(Payment) == 1


@pytest.mark.asyncio
async def test_refreshed_hold_is_honoured(client, clinic, clock):
    """Expiry follows the refreshed deadline, not the original creation time."""
    await hold(client, clinic.user_a, clinic.slots.online)
    clock.advance(8 * 60_000)
    booking = await hold(client, clinic.user_a, clinic.slots.online)
    clock.advance(4 * 60_000)

    resp = await verify(client, clinic.user_a, booking["appointmentId"], razorpay_proof(booking["orderId"], "pay_7"))

    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_plan_downgrade_mid_hold_blocks_verification(client, db, clinic, clock):
    booking = await hold(client, clinic.user_a, clinic.slots.online)
    clinic.plan.allow_online_payments = False
    db.add(clinic.plan)
    await db.commit()

    resp = await verify(client, clinic.user_a, booking["appointmentId"], razorpay_proof(booking["orderId"], "pay_1"))

    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "ONLINE_PAYMENTS_DISABLED"


@pytest.mark.asyncio
async def test_stripe_paid_session_confirms(client, clinic, clock):
    created = SimpleNamespace(id="cs_test_9", url="https://checkout.stripe.test/cs_test_9")
    paid = SimpleNamespace(id="cs_test_9", payment_status="paid", payment_intent="pi_9")
    with patch("stripe.checkout.Session.create_async", new_callable=AsyncMock, return_value=created), \
         patch("stripe.checkout.Session.retrieve_async", new_callable=AsyncMock, return_value=paid) as retrieve:
        booking = await hold(client, clinic.user_a, clinic.slots.online, provider="STRIPE")
        resp = await verify(client, clinic.user_a, booking["appointmentId"], {"sessionId": "cs_test_9"})

    assert resp.status_code == 200
    assert retrieve.call_args.kwargs["api_key"] == "sk_test_clinic"
    appt = await get_appointment(booking["appointmentId"])
    assert appt.payment_id == "pi_9"
    assert await count_rows(Payment, Payment.gateway_ref_id == "pi_9") == 1


@pytest.mark.asyncio
async def test_stripe_unpaid_session_is_rejected(client, clinic, clock):
    created = SimpleNamespace(id="cs_test_9", url="https://checkout.stripe.test/cs_test_9")
    unpaid = SimpleNamespace(id="cs_test_9", payment_status="unpaid", payment_intent=None)
    with patch("stripe.checkout.Session.create_async", new_callable=AsyncMock, return_value=created), \
         patch("stripe.checkout.Session.retrieve_async", new_callable=AsyncMock, return_value=unpaid):
        booking = await hold(client, clinic.user_a, clinic.slots.online, provider="STRIPE")
        resp = await verify(client, clinic.user_a, booking["appointmentId"], {"sessionId": "cs_test_9"})

    assert resp.status_code == 400
    assert (await get_appointment(booking["appointmentId"])).status == AppointmentStatus.CANCELLED


@pytest.mark.asyncio
async def test_stripe_session_replaced_by_refresh_confirms(client, clinic, clock):
    sessions = [
        SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.test/cs_test_1"),
        SimpleNamespace(id="cs_test_2", url="https://checkout.stripe.test/cs_test_2"),
    ]
    with patch("stripe.checkout.Session.create_async", new_callable=AsyncMock, side_effect=sessions), \
         patch("stripe.checkout.Session.retrieve_async", new_callable=AsyncMock) as retrieve:
        booking = await hold(client, clinic.user_a, clinic.slots.online, provider="STRIPE")
        clock.advance(60_000)
        await hold(client, clinic.user_a, clinic.slots.online, provider="STRIPE")
        retrieve.return_value = SimpleNamespace(
            id="cs_test_1", payment_status="paid", payment_intent="pi_1",
            metadata={"appointment_ref": booking["appointmentId"], "type": "BOOKING"},
        )
        resp = await verify(client, clinic.user_a, booking["appointmentId"], {"sessionId": "cs_test_1"})

    assert resp.status_code == 200
    assert (await get_appointment(booking["appointmentId"])).payment_id == "pi_1"
