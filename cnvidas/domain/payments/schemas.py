"""Payments domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, field_validator

NOTIFICATION_TYPES = {"appointment", "system", "payment", "error", "emergency"}


class ConsultationMetadata(BaseModel):
    """Metadata attached to a consultation PaymentIntent"""

    user_id: int
    doctor_id: Optional[int] = None
    doctor_name: str = "Médico"
    appointment_date: datetime
    appointment_id: int
    is_emergency: bool = False

    def to_stripe(self) -> dict:
        """Stripe metadata values must be strings"""
        return {
            "userId": str(self.user_id),
            "doctorId": str(self.doctor_id or ""),
            "doctorName": self.doctor_name,
            "appointmentDate": self.appointment_date.isoformat(),
            "appointmentId": str(self.appointment_id),
            "isEmergency": "true" if self.is_emergency else "false",
            "type": "consultation_payment",
        }


class NotificationCreate(BaseModel):
    """Schema for creating a user notification"""

    user_id: int
    type: str
    title: str
    message: str
    is_read: bool = False
    data: Optional[dict[str, Any]] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in NOTIFICATION_TYPES:
            raise ValueError(f"type must be one of {sorted(NOTIFICATION_TYPES)}")
        return v

    @field_validator("title", "message")
    @classmethod
    def validate_text(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("title and message are required")
        return v
