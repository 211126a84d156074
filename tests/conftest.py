"""Shared test fixtures for the booking & escrow engine tests."""

import base64
import itertools
import os
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Generator

# Engine modules read configuration at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault(
    "PAYMENT_WEBHOOK_SECRET", "whsec_" + base64.b64encode(b"carebook-test-signing-key").decode()
)
os.environ.setdefault("OPERATOR_API_TOKEN", "operator-test-token")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from carebook import config
from carebook.database import Base, build_engine, get_db
from carebook.domain.appointments.service import BookingService
from carebook.domain.fees import FeeCalculator
from carebook.domain.payments.gateway import PaymentGateway, PaymentGatewayError
from carebook.locks import EntityLockRegistry
from carebook.services.notification_service import Notifier

WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"carebook-test-signing-key").decode()
OPERATOR_TOKEN = "operator-test-token"

# Consultations are booked on this day; the fake clock starts earlier the same morning
SLOT_DATE = date(2030, 1, 15)
CLOCK_START = datetime(2030, 1, 15, 8, 0)


class FakeClock:
    """Controllable replacement for utcnow()"""

    def __init__(self, now: datetime = CLOCK_START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingGateway(PaymentGateway):
    """Gateway double recording every call; can be told to reject orders"""

    def __init__(self):
        self.orders: list[str] = []
        self.refunds: list[str] = []
        self.fail_orders = False
        self._ids = itertools.count(1)

    def create_order(self, txn) -> str:
        if self.fail_orders:
            raise PaymentGatewayError("card declined")
        self.orders.append(txn.id)
        return f"order_test_{next(self._ids)}"

    def refund(self, txn) -> str:
        self.refunds.append(txn.id)
        return f"rfnd_test_{next(self._ids)}"


class RecordingChannel:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


@pytest.fixture
def engine(tmp_path: Path):
    """File-backed SQLite engine with all tables created."""
    engine = build_engine(f"sqlite:///{tmp_path / 'carebook_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def locks() -> EntityLockRegistry:
    """Lock registry private to one test."""
    return EntityLockRegistry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def notifier(channel) -> Notifier:
    return Notifier(channels={"record": channel})


@pytest.fixture
def fees() -> FeeCalculator:
    return FeeCalculator(
        platform_fee_rate="0.05",
        subscription_discount_rate="0.10",
        default_emergency_multiplier="1.0",
    )


@pytest.fixture
def booking(db, locks, clock, fees, gateway, notifier) -> BookingService:
    """BookingService wired to the test database, clock and doubles."""
    return BookingService(
        db,
        locks=locks,
        clock=clock,
        fees=fees,
        gateway=gateway,
        notifier=notifier,
        release_delay_minutes=60,
    )


@pytest.fixture
def make_booking(booking):
    """Book a fresh slot per call (10:00-10:30, then 10:30-11:00, ...)."""
    starts = itertools.count(0)

    def _make(**overrides):
        n = next(starts)
        start = datetime.combine(SLOT_DATE, datetime.min.time()) + timedelta(
            hours=10, minutes=30 * n
        )
        end = start + timedelta(minutes=30)
        params = {
            "patient_id": "patient_1",
            "doctor_id": "doctor_1",
            "slot_date": SLOT_DATE,
            "start_time": start.strftime("%H:%M"),
            "end_time": end.strftime("%H:%M"),
            "consultation_fee": 1000,
        }
        params.update(overrides)
        return booking.create_appointment(**params)

    return _make


@pytest.fixture
def operator_config(monkeypatch):
    """Operator token and webhook secret as the API reads them."""
    monkeypatch.setattr(config, "OPERATOR_API_TOKEN", OPERATOR_TOKEN)
    monkeypatch.setattr(config, "PAYMENT_WEBHOOK_SECRET", WEBHOOK_SECRET)


@pytest.fixture
def client(session_factory, operator_config) -> Generator[TestClient, None, None]:
    """API client whose requests use the test database."""
    from carebook.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
