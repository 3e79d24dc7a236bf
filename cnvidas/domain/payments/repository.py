"""Appointment payment repository - Database operations for consultation payments"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ...models import (
    APPOINTMENT_CANCELLED,
    PAYMENT_AUTHORIZED,
    Appointment,
    Notification,
    User,
)
from .schemas import NotificationCreate

NOTE_SEPARATOR = "\n\n"


class AppointmentRepository:
    """Repository for appointment payment database operations"""

    @staticmethod
    def get_appointment(db: Session, appointment_id: int) -> Optional[Appointment]:
        """Get appointment by ID"""
        return db.query(Appointment).filter(Appointment.id == appointment_id).first()

    @staticmethod
    def get_user(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID"""
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_appointments_for_payment_processing(
        db: Session, window_start: datetime, window_end: datetime
    ) -> list[Appointment]:
        """Scheduled appointments in [window_start, window_end) holding an uncaptured authorization"""
        return (
            db.query(Appointment)
            .filter(
                Appointment.is_emergency.is_(False),
                Appointment.date >= window_start,
                Appointment.date < window_end,
                Appointment.payment_intent_id.isnot(None),
                Appointment.payment_status == PAYMENT_AUTHORIZED,
            )
            .order_by(Appointment.date.asc())
            .all()
        )

    @staticmethod
    def get_cancelled_appointments_with_pending_payment(db: Session) -> list[Appointment]:
        """Cancelled appointments whose authorization was never released"""
        return (
            db.query(Appointment)
            .filter(
                Appointment.status == APPOINTMENT_CANCELLED,
                Appointment.payment_status == PAYMENT_AUTHORIZED,
                Appointment.payment_intent_id.isnot(None),
            )
            .all()
        )

    @staticmethod
    def update_appointment(
        db: Session,
        appointment_id: int,
        *,
        expected_payment_status: Optional[str] = None,
        append_note: Optional[str] = None,
        **fields,
    ) -> bool:
        """
        Update one appointment row in a single statement.

        Args:
            expected_payment_status: Only update while payment_status still has this value
            append_note: Line appended to the existing notes (never replaces them)
            **fields: Column values to set

        Returns:
            bool: True if the row was updated
        """
        values = dict(fields)
        if append_note:
            values["notes"] = (
                func.coalesce(Appointment.notes + NOTE_SEPARATOR, "") + append_note
            )
        if not values:
            return False

        stmt = update(Appointment).where(Appointment.id == appointment_id)
        if expected_payment_status is not None:
            stmt = stmt.where(Appointment.payment_status == expected_payment_status)

        result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        db.commit()
        return result.rowcount > 0

    @staticmethod
    def consume_emergency_consultation(db: Session, user_id: int) -> bool:
        """
        Take one included emergency consultation from the user's allowance.

        Returns:
            bool: False if no allowance was left
        """
        stmt = (
            update(User)
            .where(User.id == user_id, User.emergency_consultations_left > 0)
            .values(emergency_consultations_left=User.emergency_consultations_left - 1)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        db.commit()
        return result.rowcount > 0

    @staticmethod
    def create_notification(db: Session, notification: NotificationCreate) -> Notification:
        """Create a notification record"""
        record = Notification(**notification.model_dump())
        db.add(record)
        db.commit()
        db.refresh(record)
        return record
