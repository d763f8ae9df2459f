"""Test doubles for the escalation services: protocol implementations, no mocking library."""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from escalation.domain.errors import LocationError, StoreError
from escalation.domain.models import (
    GeoLocation,
    NotificationChannel,
    PatientProfile,
    Role,
    TransportMessage,
    TransportReceipt,
)
from escalation.services.store import InMemoryEmergencyStore

START = datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FailingStore(InMemoryEmergencyStore):
    """In-memory store whose named operations raise StoreError."""

    def __init__(self, *failing: str) -> None:
        self.failing = set(failing)
        super().__init__()

    def __getattribute__(self, name: str) -> Any:
        if name != "failing" and name in object.__getattribute__(self, "failing"):

            async def fail(*args: Any, **kwargs: Any) -> Any:
                raise StoreError(f"{name} unavailable")

            return fail
        return object.__getattribute__(self, name)


class RecordingSender:
    """Channel sender that records messages and returns scripted receipts."""

    provider_name = "recording"

    def __init__(self, *receipts: TransportReceipt) -> None:
        self.receipts = list(receipts)
        self.sent: list[TransportMessage] = []

    async def send(self, message: TransportMessage) -> TransportReceipt:
        self.sent.append(message)
        if self.receipts:
            return self.receipts.pop(0)
        return TransportReceipt(success=True, message_id=f"msg-{len(self.sent)}")


class RaisingSender:
    provider_name = "raising"

    async def send(self, message: TransportMessage) -> TransportReceipt:
        raise RuntimeError("socket closed")


class FixedLocationProvider:
    def __init__(self, location: GeoLocation) -> None:
        self.location = location
        self.calls = 0

    async def current_position(self, *, high_accuracy: bool, max_age_seconds: float) -> GeoLocation:
        self.calls += 1
        return self.location


class DeniedLocationProvider:
    async def current_position(self, *, high_accuracy: bool, max_age_seconds: float) -> GeoLocation:
        raise LocationError("User denied Geolocation", permission_denied=True)


class UnavailableLocationProvider:
    async def current_position(self, *, high_accuracy: bool, max_age_seconds: float) -> GeoLocation:
        raise LocationError("Position unavailable")


class HangingLocationProvider:
    async def current_position(self, *, high_accuracy: bool, max_age_seconds: float) -> GeoLocation:
        await asyncio.sleep(10)
        raise AssertionError("unreachable")


JANE = PatientProfile(
    id="p1",
    email="jane@example.com",
    full_name="Jane Doe",
    phone="+15550100",
    emergency_contact_name="John Doe",
    emergency_contact_email="john@example.com",
    emergency_contact_phone="+15550199",
)

NO_CONTACT = PatientProfile(
    id="p2", email="alone@example.com", full_name="Sam Alone", emergency_contact_name=""
)

SMS_ONLY = PatientProfile(
    id="p3",
    email="ravi@example.com",
    full_name="Ravi Patel",
    emergency_contact_name="Priya Patel",
    emergency_contact_phone="+15550123",
    emergency_contact_channel=NotificationChannel.SMS,
)


def seed(store: InMemoryEmergencyStore) -> InMemoryEmergencyStore:
    store.add_patient(JANE)
    store.add_patient(NO_CONTACT)
    store.add_patient(SMS_ONLY)
    store.set_role("dr-house", Role.DOCTOR)
    store.set_role("nurse-1", Role.PATIENT)
    return store
