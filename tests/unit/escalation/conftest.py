"""Shared fixtures for the escalation services."""

import pytest

from escalation.config import ConsentConfig, EscalationConfig, NotificationConfig
from escalation.domain.models import CallerIdentity, GeoLocation, NotificationChannel
from escalation.services.consent import ConsentCoordinator
from escalation.services.controller import EmergencyController
from escalation.services.notifications import NotificationDispatcher
from escalation.services.store import InMemoryEmergencyStore

from .doubles import START, FakeClock, FixedLocationProvider, RecordingSender, seed


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryEmergencyStore:
    return seed(InMemoryEmergencyStore())


@pytest.fixture
def patient() -> CallerIdentity:
    return CallerIdentity(user_id="p1", user_agent="pytest-browser")


@pytest.fixture
def doctor() -> CallerIdentity:
    return CallerIdentity(user_id="dr-house")


@pytest.fixture
def stranger() -> CallerIdentity:
    return CallerIdentity(user_id="nurse-1")


@pytest.fixture
def controller(store: InMemoryEmergencyStore, clock: FakeClock) -> EmergencyController:
    return EmergencyController(store, EscalationConfig(rate_limit_window_seconds=60), clock=clock)


@pytest.fixture
def location() -> GeoLocation:
    return GeoLocation(latitude=40.748817, longitude=-73.985428, accuracy=15.0, captured_at=START)


@pytest.fixture
def location_provider(location: GeoLocation) -> FixedLocationProvider:
    return FixedLocationProvider(location)


@pytest.fixture
def consent(
    store: InMemoryEmergencyStore, clock: FakeClock, location_provider: FixedLocationProvider
) -> ConsentCoordinator:
    return ConsentCoordinator(
        store, location_provider, ConsentConfig(location_timeout_seconds=0.5), clock=clock
    )


@pytest.fixture
def email_sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def sms_sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def dispatcher(
    store: InMemoryEmergencyStore,
    clock: FakeClock,
    email_sender: RecordingSender,
    sms_sender: RecordingSender,
) -> NotificationDispatcher:
    return NotificationDispatcher(
        store,
        {NotificationChannel.EMAIL: email_sender, NotificationChannel.SMS: sms_sender},
        NotificationConfig(),
        clock=clock,
    )
