"""
Shared pytest fixtures: in-memory database, users, appointments and a mocked gateway.
"""

import os

# Configure the environment before the package reads it
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cnvidas import models  # noqa: F401 - registers models on Base
from cnvidas.database import Base
from cnvidas.domain.payments.stripe_gateway import StripeGateway
from cnvidas.models import Appointment, User

# Fixed reference time for window calculations (naive UTC, like stored dates)
NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def session_factory():
    """Session factory over a fresh in-memory SQLite database"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _create_user(db, **fields) -> User:
    user = User(**fields)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def patient(db_session):
    return _create_user(
        db_session,
        email="paciente@example.com",
        full_name="Maria Souza",
        role="patient",
        subscription_plan="premium",
        stripe_customer_id="cus_test123",
    )


@pytest.fixture
def doctor(db_session):
    return _create_user(db_session, email="medico@example.com", full_name="Dr. Paulo", role="doctor")


@pytest.fixture
def admin(db_session):
    return _create_user(db_session, email="admin@example.com", full_name="Admin", role="admin")


@pytest.fixture
def make_appointment(db_session, patient):
    """Factory for appointments; defaults to an authorized hold 12h30 from NOW"""
    counter = {"n": 0}

    def _make(**overrides) -> Appointment:
        counter["n"] += 1
        fields = {
            "user_id": patient.id,
            "date": NOW + timedelta(hours=12, minutes=30),
            "duration": 30,
            "status": "scheduled",
            "is_emergency": False,
            "payment_intent_id": f"pi_test_{counter['n']}",
            "payment_status": "authorized",
            "payment_amount": 10000,
        }
        fields.update(overrides)
        appointment = Appointment(**fields)
        db_session.add(appointment)
        db_session.commit()
        db_session.refresh(appointment)
        return appointment

    return _make


@pytest.fixture
def gateway():
    """Mocked payment gateway"""
    return MagicMock(spec=StripeGateway)
