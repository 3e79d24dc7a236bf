"""
Payment notifications for patients
Records are read by the patient dashboard; no email/SMS channel here
"""

import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ..config import DISPLAY_TIMEZONE
from ..domain.payments.repository import AppointmentRepository
from ..domain.payments.schemas import NotificationCreate
from ..models import Appointment, Notification

logger = logging.getLogger(__name__)


def format_consultation_time(date: datetime) -> str:
    """Format a naive UTC appointment time for patients (dd/mm/YYYY HH:MM, local time)"""
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    return date.astimezone(ZoneInfo(DISPLAY_TIMEZONE)).strftime("%d/%m/%Y %H:%M")


def notify_payment_captured(db: Session, appointment: Appointment) -> Notification:
    """Tell the patient the consultation payment was charged"""
    notification = AppointmentRepository.create_notification(
        db,
        NotificationCreate(
            user_id=appointment.user_id,
            type="payment",
            title="Pagamento Processado",
            message=(
                "O pagamento da sua consulta foi processado com sucesso. "
                f"A consulta está confirmada para {format_consultation_time(appointment.date)}."
            ),
            data={"appointmentId": appointment.id},
        ),
    )
    logger.info(f"✅ Payment notification created for user {appointment.user_id}")
    return notification


def notify_payment_failed(db: Session, appointment: Appointment) -> Notification:
    """Tell the patient the charge failed; processor details stay in the audit notes"""
    notification = AppointmentRepository.create_notification(
        db,
        NotificationCreate(
            user_id=appointment.user_id,
            type="error",
            title="Erro no Pagamento",
            message=(
                "Houve um problema ao processar o pagamento da sua consulta. "
                "Por favor, entre em contato com o suporte."
            ),
            data={"appointmentId": appointment.id},
        ),
    )
    logger.info(f"Payment error notification created for user {appointment.user_id}")
    return notification
