"""
Tests for the scheduled capture and pre-authorization release jobs.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from cnvidas.domain.payments.repository import AppointmentRepository
from cnvidas.domain.payments.stripe_gateway import GatewayError
from cnvidas.models import Appointment, Notification
from cnvidas.services.payment_automation import (
    CAPTURED_NOTE,
    EXPIRED_HOLD_NOTE,
    RELEASED_NOTE,
    cancel_expired_preauthorizations,
    get_capture_window,
    process_appointment_payments,
)

from .conftest import NOW


def _reload(db, appointment_id) -> Appointment:
    db.expire_all()
    return db.query(Appointment).filter(Appointment.id == appointment_id).first()


def _notifications(db, **filters):
    return db.query(Notification).filter_by(**filters).all()


class TestCaptureWindow:
    """Which appointments are due for capture"""

    def test_window_is_twelve_to_thirteen_hours_ahead(self):
        start, end = get_capture_window(NOW)
        assert start == NOW + timedelta(hours=12)
        assert end == NOW + timedelta(hours=13)

    @pytest.mark.parametrize(
        "offset,selected",
        [
            (timedelta(hours=12, minutes=30), True),
            (timedelta(hours=12), True),
            (timedelta(hours=11, minutes=59), False),
            (timedelta(hours=13), False),
            (timedelta(hours=13, minutes=1), False),
        ],
    )
    def test_window_boundaries(self, db_session, gateway, make_appointment, offset, selected):
        make_appointment(date=NOW + offset)

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary["found"] == (1 if selected else 0)
        assert gateway.capture.called is selected

    def test_emergency_appointments_are_excluded(self, db_session, gateway, make_appointment):
        make_appointment(is_emergency=True)

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary["found"] == 0
        gateway.capture.assert_not_called()

    def test_appointments_without_intent_are_excluded(self, db_session, gateway, make_appointment):
        make_appointment(payment_intent_id=None)

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary["found"] == 0
        gateway.capture.assert_not_called()

    @pytest.mark.parametrize("payment_status", ["completed", "cancelled", "pending", None])
    def test_only_authorized_holds_are_captured(
        self, db_session, gateway, make_appointment, payment_status
    ):
        make_appointment(payment_status=payment_status)

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary["found"] == 0
        gateway.capture.assert_not_called()


class TestProcessAppointmentPayments:
    """Hourly capture job"""

    def test_captures_and_notifies(self, db_session, gateway, make_appointment, patient):
        appointment = make_appointment(payment_intent_id="pi_abc", notes="Retorno")

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary == {"found": 1, "captured": 1, "failed": 0, "skipped": 0}
        gateway.capture.assert_called_once_with("pi_abc")

        updated = _reload(db_session, appointment.id)
        assert updated.payment_status == "completed"
        assert updated.payment_captured_at == NOW
        assert updated.notes == f"Retorno\n\n{CAPTURED_NOTE}"
        # Appointment status is not touched by the capture
        assert updated.status == "scheduled"

        notifications = _notifications(db_session, user_id=patient.id)
        assert len(notifications) == 1
        assert notifications[0].type == "payment"
        assert notifications[0].title == "Pagamento Processado"
        assert notifications[0].is_read is False
        assert notifications[0].data == {"appointmentId": appointment.id}
        # 00:30 UTC on 11/03 is 21:30 on 10/03 in São Paulo
        assert "10/03/2026 21:30" in notifications[0].message

    def test_note_without_previous_notes(self, db_session, gateway, make_appointment):
        appointment = make_appointment()

        process_appointment_payments(db_session, gateway, now=NOW)

        assert _reload(db_session, appointment.id).notes == CAPTURED_NOTE

    def test_failure_is_isolated_per_appointment(self, db_session, gateway, make_appointment, patient):
        first = make_appointment(payment_intent_id="pi_1", date=NOW + timedelta(hours=12, minutes=10))
        second = make_appointment(payment_intent_id="pi_2", date=NOW + timedelta(hours=12, minutes=20))
        third = make_appointment(payment_intent_id="pi_3", date=NOW + timedelta(hours=12, minutes=30))

        def capture(intent_id):
            if intent_id == "pi_2":
                raise GatewayError("Your card was declined.", code="card_declined", intent_id=intent_id)

        gateway.capture.side_effect = capture

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary == {"found": 3, "captured": 2, "failed": 1, "skipped": 0}
        assert [c.args[0] for c in gateway.capture.call_args_list] == ["pi_1", "pi_2", "pi_3"]

        assert _reload(db_session, first.id).payment_status == "completed"
        assert _reload(db_session, third.id).payment_status == "completed"

        failed = _reload(db_session, second.id)
        assert failed.payment_status == "authorized"
        assert failed.payment_captured_at is None
        assert failed.notes == "Erro ao capturar pagamento: Your card was declined."

        errors = _notifications(db_session, user_id=patient.id, type="error")
        assert len(errors) == 1
        assert errors[0].title == "Erro no Pagamento"
        assert "declined" not in errors[0].message
        assert errors[0].data == {"appointmentId": second.id}
        assert len(_notifications(db_session, user_id=patient.id, type="payment")) == 2

    def test_unexpected_error_is_isolated(self, db_session, gateway, make_appointment):
        make_appointment(payment_intent_id="pi_1", date=NOW + timedelta(hours=12, minutes=10))
        make_appointment(payment_intent_id="pi_2", date=NOW + timedelta(hours=12, minutes=20))
        gateway.capture.side_effect = [RuntimeError("boom"), None]

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary["captured"] == 1
        assert summary["failed"] == 1

    def test_rerun_does_not_capture_twice(self, db_session, gateway, make_appointment):
        make_appointment()

        process_appointment_payments(db_session, gateway, now=NOW)
        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary["found"] == 0
        assert gateway.capture.call_count == 1

    def test_concurrently_settled_appointment_is_skipped(
        self, db_session, gateway, make_appointment, patient
    ):
        appointment = make_appointment()

        def settle_elsewhere(intent_id):
            AppointmentRepository.update_appointment(
                db_session, appointment.id, payment_status="completed"
            )

        gateway.capture.side_effect = settle_elsewhere

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary == {"found": 1, "captured": 0, "failed": 0, "skipped": 1}
        updated = _reload(db_session, appointment.id)
        assert updated.notes is None
        assert updated.payment_captured_at is None
        assert _notifications(db_session, user_id=patient.id) == []

    def test_gateway_error_after_concurrent_settle_is_skipped(
        self, db_session, gateway, make_appointment, patient
    ):
        appointment = make_appointment()

        def settle_then_fail(intent_id):
            AppointmentRepository.update_appointment(
                db_session, appointment.id, payment_status="completed"
            )
            raise GatewayError(
                "This PaymentIntent could not be captured",
                code="payment_intent_unexpected_state",
            )

        gateway.capture.side_effect = settle_then_fail
        gateway.check_status.return_value = MagicMock(status="succeeded")

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary["skipped"] == 1
        assert _notifications(db_session, user_id=patient.id) == []

    def test_capture_already_done_at_processor_is_recorded(
        self, db_session, gateway, make_appointment, patient
    ):
        appointment = make_appointment(payment_intent_id="pi_done")
        gateway.capture.side_effect = GatewayError(
            "This PaymentIntent could not be captured because it has a status of succeeded.",
            code="payment_intent_unexpected_state",
            intent_id="pi_done",
        )
        gateway.check_status.return_value = MagicMock(id="pi_done", status="succeeded")

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary == {"found": 1, "captured": 1, "failed": 0, "skipped": 0}
        gateway.check_status.assert_called_once_with("pi_done")
        updated = _reload(db_session, appointment.id)
        assert updated.payment_status == "completed"
        assert updated.payment_captured_at == NOW
        assert updated.notes == CAPTURED_NOTE
        assert _notifications(db_session, user_id=patient.id, type="error") == []
        assert len(_notifications(db_session, user_id=patient.id, type="payment")) == 1

    def test_hold_released_at_processor_before_capture(
        self, db_session, gateway, make_appointment, patient
    ):
        appointment = make_appointment()
        gateway.capture.side_effect = GatewayError(
            "This PaymentIntent could not be captured because it has a status of canceled.",
            code="payment_intent_unexpected_state",
        )
        gateway.check_status.return_value = MagicMock(status="canceled")

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary == {"found": 1, "captured": 0, "failed": 0, "skipped": 1}
        updated = _reload(db_session, appointment.id)
        assert updated.payment_status == "cancelled"
        assert updated.notes == EXPIRED_HOLD_NOTE
        assert _notifications(db_session, user_id=patient.id) == []

    def test_intent_in_other_state_is_left_for_review(
        self, db_session, gateway, make_appointment, patient
    ):
        appointment = make_appointment()
        gateway.capture.side_effect = GatewayError(
            "unexpected state", code="payment_intent_unexpected_state"
        )
        gateway.check_status.return_value = MagicMock(status="requires_payment_method")

        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary["skipped"] == 1
        updated = _reload(db_session, appointment.id)
        assert updated.payment_status == "authorized"
        assert "requires_payment_method" in updated.notes
        assert _notifications(db_session, user_id=patient.id) == []

    def test_query_failure_is_raised(self, db_session, gateway):
        with patch.object(
            AppointmentRepository,
            "get_appointments_for_payment_processing",
            side_effect=OperationalError("SELECT", {}, Exception("database is locked")),
        ):
            with pytest.raises(OperationalError):
                process_appointment_payments(db_session, gateway, now=NOW)

        gateway.capture.assert_not_called()

    def test_empty_run(self, db_session, gateway):
        summary = process_appointment_payments(db_session, gateway, now=NOW)

        assert summary == {"found": 0, "captured": 0, "failed": 0, "skipped": 0}


class TestCancelExpiredPreauthorizations:
    """Release job for cancelled appointments"""

    def test_releases_hold_of_cancelled_appointment(self, db_session, gateway, make_appointment):
        appointment = make_appointment(
            status="cancelled", payment_intent_id="pi_123", notes="Cancelada: paciente viajou"
        )

        summary = cancel_expired_preauthorizations(db_session, gateway)

        assert summary == {"found": 1, "released": 1, "failed": 0, "skipped": 0}
        gateway.cancel.assert_called_once_with("pi_123")

        updated = _reload(db_session, appointment.id)
        assert updated.payment_status == "cancelled"
        assert updated.notes == f"Cancelada: paciente viajou\n\n{RELEASED_NOTE}"

    def test_second_run_releases_nothing(self, db_session, gateway, make_appointment):
        make_appointment(status="cancelled", payment_intent_id="pi_123")

        cancel_expired_preauthorizations(db_session, gateway)
        summary = cancel_expired_preauthorizations(db_session, gateway)

        assert summary["found"] == 0
        gateway.cancel.assert_called_once_with("pi_123")

    def test_ignores_non_matching_appointments(self, db_session, gateway, make_appointment):
        scheduled = make_appointment(status="scheduled")
        captured = make_appointment(status="cancelled", payment_status="completed")
        released = make_appointment(status="cancelled", payment_status="cancelled")
        no_intent = make_appointment(status="cancelled", payment_intent_id=None)

        summary = cancel_expired_preauthorizations(db_session, gateway)

        assert summary["found"] == 0
        gateway.cancel.assert_not_called()
        for appointment, status in [
            (scheduled, "authorized"),
            (captured, "completed"),
            (released, "cancelled"),
            (no_intent, "authorized"),
        ]:
            assert _reload(db_session, appointment.id).payment_status == status

    def test_failure_is_isolated(self, db_session, gateway, make_appointment):
        first = make_appointment(status="cancelled", payment_intent_id="pi_1")
        second = make_appointment(status="cancelled", payment_intent_id="pi_2")

        def cancel(intent_id):
            if intent_id == "pi_1":
                raise GatewayError("No such payment_intent", code="resource_missing")

        gateway.cancel.side_effect = cancel

        summary = cancel_expired_preauthorizations(db_session, gateway)

        assert summary == {"found": 2, "released": 1, "failed": 1, "skipped": 0}
        assert _reload(db_session, first.id).payment_status == "authorized"
        assert _reload(db_session, second.id).payment_status == "cancelled"

    def test_hold_already_released_at_processor(self, db_session, gateway, make_appointment):
        appointment = make_appointment(status="cancelled", payment_intent_id="pi_expired")
        gateway.cancel.side_effect = GatewayError(
            "You cannot cancel this PaymentIntent because it has a status of canceled.",
            code="payment_intent_unexpected_state",
            intent_id="pi_expired",
        )
        gateway.check_status.return_value = MagicMock(id="pi_expired", status="canceled")

        summary = cancel_expired_preauthorizations(db_session, gateway)

        assert summary == {"found": 1, "released": 1, "failed": 0, "skipped": 0}
        gateway.check_status.assert_called_once_with("pi_expired")
        updated = _reload(db_session, appointment.id)
        assert updated.payment_status == "cancelled"
        assert updated.notes == RELEASED_NOTE

        # Reconciled rows are not picked up again
        assert cancel_expired_preauthorizations(db_session, gateway)["found"] == 0

    def test_captured_intent_is_not_marked_released(self, db_session, gateway, make_appointment):
        appointment = make_appointment(status="cancelled")
        gateway.cancel.side_effect = GatewayError(
            "You cannot cancel this PaymentIntent because it has a status of succeeded.",
            code="payment_intent_unexpected_state",
        )
        gateway.check_status.return_value = MagicMock(status="succeeded")

        summary = cancel_expired_preauthorizations(db_session, gateway)

        assert summary["failed"] == 1
        assert _reload(db_session, appointment.id).payment_status == "authorized"

    def test_no_patient_notification_on_release(self, db_session, gateway, make_appointment, patient):
        make_appointment(status="cancelled")

        cancel_expired_preauthorizations(db_session, gateway)

        assert _notifications(db_session, user_id=patient.id) == []
