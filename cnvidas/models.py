from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Appointment.payment_status values
PAYMENT_AUTHORIZED = "authorized"  # hold placed, funds not captured
PAYMENT_COMPLETED = "completed"  # captured (terminal)
PAYMENT_CANCELLED = "cancelled"  # hold released (terminal)

# Appointment.status values used by the payment flows
APPOINTMENT_SCHEDULED = "scheduled"
APPOINTMENT_COMPLETED = "completed"
APPOINTMENT_CANCELLED = "cancelled"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), default="patient", nullable=False)  # patient, doctor, admin, partner
    # free, basic, basic_family, premium, premium_family, ultra, ultra_family - null means free
    subscription_plan = Column(String(50), nullable=True)
    emergency_consultations_left = Column(Integer, nullable=True)  # Only meaningful on basic plans
    stripe_customer_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    appointments = relationship(
        "Appointment", back_populates="patient", foreign_keys="Appointment.user_id"
    )
    notifications = relationship("Notification", back_populates="user")


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    type = Column(String(50), default="telemedicine", nullable=False)
    date = Column(DateTime, nullable=False, index=True)  # Scheduled consultation time (UTC)
    duration = Column(Integer, default=30, nullable=False)  # minutes
    status = Column(String(20), default=APPOINTMENT_SCHEDULED, nullable=False)
    notes = Column(Text, nullable=True)  # Append-only audit trail
    doctor_name = Column(String(255), nullable=True)
    is_emergency = Column(Boolean, default=False, nullable=False)
    # Stripe PaymentIntent holding the pre-authorized amount
    payment_intent_id = Column(String(255), nullable=True, index=True)
    payment_status = Column(String(20), nullable=True, index=True)  # authorized, completed, cancelled
    payment_amount = Column(Integer, nullable=True)  # minor units (centavos)
    payment_fee = Column(Integer, nullable=True)
    payment_captured_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    patient = relationship("User", back_populates="appointments", foreign_keys=[user_id])


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(30), nullable=False)  # payment, error, appointment, system, emergency
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    data = Column(JSON, nullable=True)  # e.g. {"appointmentId": 42}
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="notifications")
