"""Consultation payment service - Business logic for booking holds and manual settlement"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ...models import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_COMPLETED,
    PAYMENT_AUTHORIZED,
    PAYMENT_CANCELLED,
    PAYMENT_COMPLETED,
    Appointment,
    User,
)
from ...plan_benefits import (
    LIMITED_EMERGENCY_PLANS,
    calculate_discount,
    should_charge_for_emergency_consultation,
)
from .repository import AppointmentRepository
from .schemas import ConsultationMetadata
from .stripe_gateway import to_minor_units

logger = logging.getLogger(__name__)

SETTLEMENT_ROLES = {"admin", "doctor"}


class PaymentStateError(Exception):
    """Raised when a payment operation is not allowed for the appointment's current state"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ConsultationPaymentService:
    """Service for consultation payment operations outside the scheduled jobs"""

    def __init__(self, db: Session, gateway):
        self.db = db
        self.gateway = gateway
        self.repo = AppointmentRepository()

    def _get_appointment(self, appointment_id: int) -> Appointment:
        appointment = self.repo.get_appointment(self.db, appointment_id)
        if not appointment:
            raise PaymentStateError("Consulta não encontrada", 404)
        return appointment

    def authorize_appointment_payment(
        self, appointment: Appointment, patient: User, base_price: float
    ) -> Optional[str]:
        """
        Place the booking-time hold for a scheduled consultation.

        Returns:
            Optional[str]: PaymentIntent ID, or None when the plan covers the full price
        """
        if appointment.is_emergency:
            raise PaymentStateError("Consultas de emergência não usam pré-autorização")

        if appointment.payment_intent_id:
            raise PaymentStateError("Esta consulta já possui um pagamento associado")

        pricing = calculate_discount(base_price, patient.subscription_plan)
        final_price = pricing["final_price"]

        if final_price <= 0:
            logger.info(f"Appointment #{appointment.id} fully covered by plan, no hold needed")
            return None

        if not patient.stripe_customer_id:
            raise PaymentStateError(
                "Você precisa ter um método de pagamento cadastrado para realizar consultas"
            )

        intent_id = self.gateway.create_hold(
            final_price,
            patient.stripe_customer_id,
            ConsultationMetadata(
                user_id=patient.id,
                doctor_id=appointment.doctor_id,
                doctor_name=appointment.doctor_name or "Médico",
                appointment_date=appointment.date,
                appointment_id=appointment.id,
            ),
        )

        self.repo.update_appointment(
            self.db,
            appointment.id,
            payment_intent_id=intent_id,
            payment_status=PAYMENT_AUTHORIZED,
            payment_amount=to_minor_units(final_price),
        )
        logger.info(
            f"✅ Hold {intent_id} placed for appointment #{appointment.id} "
            f"({pricing['discount_percentage']}% plan discount)"
        )
        return intent_id

    def resolve_emergency_charge(self, patient: User) -> bool:
        """
        Decide whether an emergency consultation is charged, consuming one
        included consultation from basic plans when it is not.
        """
        charge = should_charge_for_emergency_consultation(
            patient.subscription_plan, patient.emergency_consultations_left
        )
        if not charge and patient.subscription_plan in LIMITED_EMERGENCY_PLANS:
            if not self.repo.consume_emergency_consultation(self.db, patient.id):
                logger.info(f"Emergency allowance of user {patient.id} ran out, consultation is charged")
                return True
            logger.info(
                f"Emergency consultation included for user {patient.id} "
                f"({patient.emergency_consultations_left} left)"
            )
        return charge

    def capture_appointment_payment(self, appointment_id: int, actor: User):
        """Capture a hold on demand (doctors and admins only)"""
        if actor.role not in SETTLEMENT_ROLES:
            raise PaymentStateError("Você não tem permissão para capturar pagamentos", 403)

        appointment = self._get_appointment(appointment_id)

        if not appointment.payment_intent_id:
            raise PaymentStateError("Esta consulta não possui um pagamento associado")
        if appointment.payment_status == PAYMENT_COMPLETED:
            raise PaymentStateError("O pagamento desta consulta já foi capturado")
        if appointment.payment_status != PAYMENT_AUTHORIZED:
            raise PaymentStateError("Esta consulta não possui uma pré-autorização ativa")

        intent = self.gateway.capture(appointment.payment_intent_id)

        self.repo.update_appointment(
            self.db,
            appointment_id,
            expected_payment_status=PAYMENT_AUTHORIZED,
            payment_status=PAYMENT_COMPLETED,
            status=APPOINTMENT_COMPLETED,
            payment_captured_at=datetime.now(timezone.utc).replace(tzinfo=None),
        )
        logger.info(f"✅ Payment for appointment #{appointment_id} captured by user {actor.id}")
        return intent

    def cancel_appointment_payment(
        self, appointment_id: int, actor: User, reason: Optional[str] = None
    ):
        """Cancel an appointment and release its hold (patient, assigned doctor or admin)"""
        appointment = self._get_appointment(appointment_id)

        allowed = (
            actor.id == appointment.user_id
            or actor.role == "admin"
            or (actor.role == "doctor" and actor.id == appointment.doctor_id)
        )
        if not allowed:
            raise PaymentStateError("Você não tem permissão para cancelar esta consulta", 403)

        if not appointment.payment_intent_id:
            raise PaymentStateError("Esta consulta não possui um pagamento associado")
        if appointment.payment_status == PAYMENT_COMPLETED:
            raise PaymentStateError(
                "O pagamento desta consulta já foi capturado e não pode ser cancelado"
            )
        if appointment.payment_status != PAYMENT_AUTHORIZED:
            raise PaymentStateError("Esta consulta não possui uma pré-autorização ativa")

        intent = self.gateway.cancel(appointment.payment_intent_id)

        self.repo.update_appointment(
            self.db,
            appointment_id,
            expected_payment_status=PAYMENT_AUTHORIZED,
            payment_status=PAYMENT_CANCELLED,
            status=APPOINTMENT_CANCELLED,
            append_note=f"Cancelada: {reason}" if reason else "Consulta cancelada",
        )
        logger.info(f"✅ Appointment #{appointment_id} cancelled and hold released by user {actor.id}")
        return intent

    def check_payment_status(self, appointment_id: int):
        """Look up the processor state of an appointment's payment"""
        appointment = self._get_appointment(appointment_id)
        if not appointment.payment_intent_id:
            raise PaymentStateError("Esta consulta não possui um pagamento associado")
        return self.gateway.check_status(appointment.payment_intent_id)
