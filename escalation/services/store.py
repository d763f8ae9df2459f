"""
Data store boundary for the escalation services.

EmergencyStore is the only way the services touch durable state. The three
mutable tables (events, consent audit, notification attempts) are written
exclusively through it; patients, roles and vitals are read-only projections.

InMemoryEmergencyStore backs tests and the demo. The relational implementation
lives in escalation.adapters.storage.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Protocol

from escalation.domain.models import (
    ConsentRecord,
    ConsentType,
    EmergencyEvent,
    NotificationAttempt,
    PatientProfile,
    Role,
    VitalsSnapshot,
)

EVENT_MUTABLE_FIELDS = frozenset(
    {"location_consented", "location_lat", "location_lng", "status", "notes", "updated_at"}
)
ATTEMPT_MUTABLE_FIELDS = frozenset({"status", "message_id", "error_message", "sent_at"})


class EmergencyStore(Protocol):
    """
    Async persistence protocol.

    Implementations raise StoreError for any failure of the underlying store.
    Updates are unconditional field writes (last write wins).
    """

    async def get_patient(self, patient_id: str) -> PatientProfile | None: ...

    async def get_user_role(self, user_id: str) -> Role | None: ...

    async def get_latest_vitals(self, patient_id: str) -> VitalsSnapshot | None: ...

    async def find_recent_event(self, patient_id: str, since: datetime) -> EmergencyEvent | None:
        """Most recent event for the patient triggered at or after `since`."""
        ...

    async def create_event_if_quiet(
        self, event: EmergencyEvent, window_start: datetime
    ) -> EmergencyEvent | None:
        """Insert `event` unless the patient has one at or after `window_start`.

        The check and the insert happen atomically. Returns None when a recent
        event blocked the insert.
        """
        ...

    async def get_event(self, event_id: str) -> EmergencyEvent | None: ...

    async def update_event(self, event_id: str, **fields: Any) -> EmergencyEvent | None: ...

    async def list_events(self, patient_id: str) -> list[EmergencyEvent]:
        """Events for the patient, newest `triggered_at` first."""
        ...

    async def insert_consent(self, record: ConsentRecord) -> ConsentRecord: ...

    async def list_consents(
        self, user_id: str, consent_type: ConsentType, since: datetime | None = None
    ) -> list[ConsentRecord]:
        """Consent records for the user and type, newest first."""
        ...

    async def insert_attempt(self, attempt: NotificationAttempt) -> NotificationAttempt: ...

    async def update_attempt(
        self, attempt_id: str, **fields: Any
    ) -> NotificationAttempt | None: ...

    async def list_attempts(self, event_id: str) -> list[NotificationAttempt]: ...


def _check_fields(fields: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Fields not updatable: {sorted(unknown)}")


class InMemoryEmergencyStore:
    """Process-local store with the same semantics as the relational one."""

    def __init__(self) -> None:
        self.patients: dict[str, PatientProfile] = {}
        self.roles: dict[str, Role] = {}
        self.vitals: dict[str, list[VitalsSnapshot]] = defaultdict(list)
        self.events: dict[str, EmergencyEvent] = {}
        self.consents: list[ConsentRecord] = []
        self.attempts: dict[str, NotificationAttempt] = {}
        self._event_lock = asyncio.Lock()

    # Seeding helpers for read-only projections
    def add_patient(self, patient: PatientProfile, role: Role = Role.PATIENT) -> None:
        self.patients[patient.id] = patient
        self.roles[patient.id] = role

    def set_role(self, user_id: str, role: Role) -> None:
        self.roles[user_id] = role

    def add_vitals(self, patient_id: str, snapshot: VitalsSnapshot) -> None:
        self.vitals[patient_id].append(snapshot)

    async def get_patient(self, patient_id: str) -> PatientProfile | None:
        return self.patients.get(patient_id)

    async def get_user_role(self, user_id: str) -> Role | None:
        return self.roles.get(user_id)

    async def get_latest_vitals(self, patient_id: str) -> VitalsSnapshot | None:
        readings = self.vitals.get(patient_id)
        if not readings:
            return None
        return max(readings, key=lambda v: v.created_at)

    def _latest_event(self, patient_id: str, since: datetime) -> EmergencyEvent | None:
        recent = [
            e
            for e in self.events.values()
            if e.patient_id == patient_id and e.triggered_at >= since
        ]
        return max(recent, key=lambda e: e.triggered_at) if recent else None

    async def find_recent_event(self, patient_id: str, since: datetime) -> EmergencyEvent | None:
        latest = self._latest_event(patient_id, since)
        return latest.model_copy() if latest else None

    async def create_event_if_quiet(
        self, event: EmergencyEvent, window_start: datetime
    ) -> EmergencyEvent | None:
        async with self._event_lock:
            if self._latest_event(event.patient_id, window_start) is not None:
                return None
            self.events[event.id] = event.model_copy()
            return event.model_copy()

    async def get_event(self, event_id: str) -> EmergencyEvent | None:
        event = self.events.get(event_id)
        return event.model_copy() if event else None

    async def update_event(self, event_id: str, **fields: Any) -> EmergencyEvent | None:
        _check_fields(fields, EVENT_MUTABLE_FIELDS)
        event = self.events.get(event_id)
        if event is None:
            return None
        updated = event.model_copy(update=fields)
        self.events[event_id] = updated
        return updated.model_copy()

    async def list_events(self, patient_id: str) -> list[EmergencyEvent]:
        events = [e.model_copy() for e in self.events.values() if e.patient_id == patient_id]
        return sorted(events, key=lambda e: e.triggered_at, reverse=True)

    async def insert_consent(self, record: ConsentRecord) -> ConsentRecord:
        self.consents.append(record)
        return record

    async def list_consents(
        self, user_id: str, consent_type: ConsentType, since: datetime | None = None
    ) -> list[ConsentRecord]:
        records = [
            r
            for r in self.consents
            if r.user_id == user_id
            and r.consent_type == consent_type
            and (since is None or r.created_at >= since)
        ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def insert_attempt(self, attempt: NotificationAttempt) -> NotificationAttempt:
        self.attempts[attempt.id] = attempt.model_copy()
        return attempt.model_copy()

    async def update_attempt(self, attempt_id: str, **fields: Any) -> NotificationAttempt | None:
        _check_fields(fields, ATTEMPT_MUTABLE_FIELDS)
        attempt = self.attempts.get(attempt_id)
        if attempt is None:
            return None
        updated = attempt.model_copy(update=fields)
        self.attempts[attempt_id] = updated
        return updated.model_copy()

    async def list_attempts(self, event_id: str) -> list[NotificationAttempt]:
        attempts = [a.model_copy() for a in self.attempts.values() if a.event_id == event_id]
        return sorted(attempts, key=lambda a: a.created_at)
