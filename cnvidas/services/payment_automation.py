"""
Automated consultation payment transitions
Captures pre-authorized holds 12 hours before the consultation (authorized → completed)
Releases holds left behind by cancelled appointments (authorized → cancelled)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ..config import PAYMENT_CAPTURE_LEAD_HOURS, PAYMENT_CAPTURE_WINDOW_HOURS
from ..domain.payments.repository import AppointmentRepository
from ..domain.payments.stripe_gateway import GatewayError
from ..models import PAYMENT_AUTHORIZED, PAYMENT_CANCELLED, PAYMENT_COMPLETED, Appointment
from .notification_service import notify_payment_captured, notify_payment_failed

logger = logging.getLogger(__name__)

CAPTURED_NOTE = "Pagamento capturado automaticamente 12h antes da consulta"
RELEASED_NOTE = "Pré-autorização liberada automaticamente após cancelamento da consulta"
EXPIRED_HOLD_NOTE = "Pré-autorização expirada ou cancelada no processador, pagamento não capturado"


def get_capture_window(now: datetime) -> tuple[datetime, datetime]:
    """Half-open window [now + lead, now + lead + width) of appointments due for capture"""
    window_start = now + timedelta(hours=PAYMENT_CAPTURE_LEAD_HOURS)
    window_end = window_start + timedelta(hours=PAYMENT_CAPTURE_WINDOW_HOURS)
    return window_start, window_end


def _reconcile_capture(db: Session, gateway, appointment: Appointment, now: datetime) -> str:
    """
    Record the processor's state after it refused a capture because the
    intent had already left requires_capture.

    Returns:
        str: "captured" or "skipped"
    """
    appointment_id = appointment.id
    intent = gateway.check_status(appointment.payment_intent_id)

    if intent.status == "succeeded":
        recorded = AppointmentRepository.update_appointment(
            db,
            appointment_id,
            expected_payment_status=PAYMENT_AUTHORIZED,
            payment_status=PAYMENT_COMPLETED,
            payment_captured_at=now,
            append_note=CAPTURED_NOTE,
        )
        if not recorded:
            logger.info(f"ℹ️ Appointment #{appointment_id} already settled by another run")
            return "skipped"
        logger.info(f"✅ Payment for appointment #{appointment_id} was already captured, recorded now")
        notify_payment_captured(db, appointment)
        return "captured"

    if intent.status == "canceled":
        logger.warning(f"⚠️ Hold for appointment #{appointment_id} was released before capture")
        AppointmentRepository.update_appointment(
            db,
            appointment_id,
            expected_payment_status=PAYMENT_AUTHORIZED,
            payment_status=PAYMENT_CANCELLED,
            append_note=EXPIRED_HOLD_NOTE,
        )
        return "skipped"

    logger.warning(
        f"⚠️ Intent for appointment #{appointment_id} is '{intent.status}', leaving it for review"
    )
    AppointmentRepository.update_appointment(
        db,
        appointment_id,
        expected_payment_status=PAYMENT_AUTHORIZED,
        append_note=f"Pagamento não capturado: status no processador '{intent.status}'",
    )
    return "skipped"


def _capture_one(db: Session, gateway, appointment: Appointment, now: datetime) -> str:
    """
    Capture a single appointment's hold and record the outcome.

    Returns:
        str: "captured", "failed" or "skipped"
    """
    appointment_id = appointment.id

    try:
        gateway.capture(appointment.payment_intent_id)
    except GatewayError as e:
        if e.is_unexpected_state:
            return _reconcile_capture(db, gateway, appointment, now)

        logger.error(f"❌ Payment capture failed for appointment #{appointment_id}: {e}")
        # Leave payment_status untouched so the next sweep or an operator can retry
        recorded = AppointmentRepository.update_appointment(
            db,
            appointment_id,
            expected_payment_status=PAYMENT_AUTHORIZED,
            append_note=f"Erro ao capturar pagamento: {e}",
        )
        if not recorded:
            # Another run already moved this appointment out of 'authorized'
            logger.info(f"ℹ️ Appointment #{appointment_id} already settled by another run")
            return "skipped"
        notify_payment_failed(db, appointment)
        return "failed"

    captured = AppointmentRepository.update_appointment(
        db,
        appointment_id,
        expected_payment_status=PAYMENT_AUTHORIZED,
        payment_status=PAYMENT_COMPLETED,
        payment_captured_at=now,
        append_note=CAPTURED_NOTE,
    )
    if not captured:
        logger.warning(f"⚠️ Appointment #{appointment_id} was settled concurrently; not recorded twice")
        return "skipped"

    logger.info(f"✅ Payment captured for appointment #{appointment_id}")
    notify_payment_captured(db, appointment)
    return "captured"


def process_appointment_payments(db: Session, gateway, now: Optional[datetime] = None) -> dict:
    """
    Capture holds for scheduled appointments entering the capture window.
    Should be run hourly so consecutive windows cover every appointment once.

    Returns:
        dict: Summary of the run
    """
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    window_start, window_end = get_capture_window(now)
    summary = {"found": 0, "captured": 0, "failed": 0, "skipped": 0}

    logger.info(f"🔄 Processing appointment payments for window {window_start} - {window_end}")

    try:
        appointments = AppointmentRepository.get_appointments_for_payment_processing(
            db, window_start, window_end
        )
    except Exception as e:
        logger.error(f"❌ Error loading appointments for payment processing: {str(e)}")
        db.rollback()
        raise

    summary["found"] = len(appointments)
    logger.info(f"📋 Found {len(appointments)} appointments to capture")

    for appointment in appointments:
        appointment_id = appointment.id
        logger.info(f"💳 Processing payment for appointment #{appointment_id}")
        try:
            outcome = _capture_one(db, gateway, appointment, now)
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Unexpected error processing appointment #{appointment_id}: {str(e)}")
            outcome = "failed"
        summary[outcome] += 1

    logger.info(f"📊 Payment processing summary: {summary}")
    return summary


def _release_one(db: Session, gateway, appointment: Appointment) -> bool:
    """Release a cancelled appointment's hold; True if this run recorded the release"""
    intent_id = appointment.payment_intent_id

    try:
        gateway.cancel(intent_id)
    except GatewayError as e:
        if not e.is_unexpected_state:
            raise
        # Holds expire at the processor after 7 days; an already released one only needs recording
        intent = gateway.check_status(intent_id)
        if intent.status != "canceled":
            raise
        logger.info(f"ℹ️ Hold for appointment #{appointment.id} already released at the processor")

    return AppointmentRepository.update_appointment(
        db,
        appointment.id,
        expected_payment_status=PAYMENT_AUTHORIZED,
        payment_status=PAYMENT_CANCELLED,
        append_note=RELEASED_NOTE,
    )


def cancel_expired_preauthorizations(db: Session, gateway) -> dict:
    """
    Release holds on cancelled appointments that still have an authorized payment.

    Returns:
        dict: Summary of the run
    """
    summary = {"found": 0, "released": 0, "failed": 0, "skipped": 0}

    logger.info("🔄 Checking pre-authorizations of cancelled appointments")

    try:
        appointments = AppointmentRepository.get_cancelled_appointments_with_pending_payment(db)
    except Exception as e:
        logger.error(f"❌ Error loading cancelled appointments: {str(e)}")
        db.rollback()
        raise

    summary["found"] = len(appointments)
    logger.info(f"📋 Found {len(appointments)} pre-authorizations to release")

    for appointment in appointments:
        appointment_id = appointment.id
        try:
            released = _release_one(db, gateway, appointment)
        except Exception as e:
            db.rollback()
            logger.error(
                f"❌ Failed to release pre-authorization for appointment #{appointment_id}: {str(e)}"
            )
            summary["failed"] += 1
            continue

        if released:
            summary["released"] += 1
            logger.info(f"✅ Pre-authorization released for appointment #{appointment_id}")
        else:
            summary["skipped"] += 1

    logger.info(f"📊 Pre-authorization release summary: {summary}")
    return summary
