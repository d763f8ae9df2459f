"""
Relational EmergencyStore backed by SQLAlchemy.

Tables: patients, user_roles and vitals are read-only projections owned by
other subsystems; emergency_events, consent_audit and emergency_notifications
are written only through this store. Blocking ORM work runs in a worker thread
so the async services never stall the event loop.
"""

import asyncio
import threading
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from escalation.domain.errors import StoreError
from escalation.domain.models import (
    ConsentRecord,
    ConsentType,
    EmergencyEvent,
    EmergencyStatus,
    NotificationAttempt,
    NotificationChannel,
    NotificationStatus,
    PatientProfile,
    Role,
    VitalsSnapshot,
)
from escalation.services.common import logger
from escalation.services.store import ATTEMPT_MUTABLE_FIELDS, EVENT_MUTABLE_FIELDS

Base = declarative_base()

T = TypeVar("T")


class PatientRow(Base):
    __tablename__ = "patients"
    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=False)
    full_name = Column(String(255))
    phone = Column(String(40))
    emergency_contact_name = Column(String(255))
    emergency_contact_phone = Column(String(40))
    emergency_contact_email = Column(String(255))
    emergency_contact_channel = Column(String(16))


class UserRoleRow(Base):
    __tablename__ = "user_roles"
    user_id = Column(String(64), primary_key=True)
    role = Column(String(16), nullable=False)


class VitalsRow(Base):
    __tablename__ = "vitals"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("patients.id"), nullable=False, index=True)
    heart_rate = Column(Float)
    blood_pressure_systolic = Column(Integer)
    blood_pressure_diastolic = Column(Integer)
    temperature = Column(Float)
    oxygen_saturation = Column(Float)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class EmergencyEventRow(Base):
    __tablename__ = "emergency_events"
    id = Column(String(36), primary_key=True)
    patient_id = Column(String(64), ForeignKey("patients.id"), nullable=False, index=True)
    triggered_by = Column(String(64), nullable=False)
    triggered_at = Column(DateTime(timezone=True), nullable=False, index=True)
    location_consented = Column(Boolean, nullable=False, default=False)
    location_lat = Column(Float)
    location_lng = Column(Float)
    status = Column(String(16), nullable=False)  # pending | sent | failed
    notes = Column(Text)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ConsentAuditRow(Base):
    __tablename__ = "consent_audit"
    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    consent_type = Column(String(32), nullable=False)
    granted = Column(Boolean, nullable=False)
    user_agent = Column(Text)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class NotificationRow(Base):
    __tablename__ = "emergency_notifications"
    id = Column(String(36), primary_key=True)
    event_id = Column(String(36), ForeignKey("emergency_events.id"), nullable=False, index=True)
    recipient_type = Column(String(16), nullable=False)
    recipient_address = Column(String(255), nullable=False)
    channel = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False)
    message_id = Column(String(255))
    error_message = Column(Text)
    sent_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)


def create_store_engine(url: str, echo: bool = False) -> Engine:
    """Engine suitable for worker-thread access, including in-memory SQLite."""
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in {"sqlite://", "sqlite:///"}:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(url, echo=echo, pool_pre_ping=True)


def _utc(value: datetime | None) -> datetime | None:
    """Normalize to aware UTC; SQLite hands back naive datetimes."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _event(row: EmergencyEventRow) -> EmergencyEvent:
    return EmergencyEvent(
        id=row.id,
        patient_id=row.patient_id,
        triggered_by=row.triggered_by,
        triggered_at=_utc(row.triggered_at),
        location_consented=row.location_consented,
        location_lat=row.location_lat,
        location_lng=row.location_lng,
        status=EmergencyStatus(row.status),
        notes=row.notes,
        updated_at=_utc(row.updated_at),
    )


def _consent(row: ConsentAuditRow) -> ConsentRecord:
    return ConsentRecord(
        id=row.id,
        user_id=row.user_id,
        consent_type=ConsentType(row.consent_type),
        granted=row.granted,
        user_agent=row.user_agent,
        metadata=row.metadata_ or {},
        created_at=_utc(row.created_at),
    )


def _attempt(row: NotificationRow) -> NotificationAttempt:
    return NotificationAttempt(
        id=row.id,
        event_id=row.event_id,
        channel=NotificationChannel(row.channel),
        recipient_address=row.recipient_address,
        status=NotificationStatus(row.status),
        message_id=row.message_id,
        error_message=row.error_message,
        sent_at=_utc(row.sent_at),
        created_at=_utc(row.created_at),
    )


def _column_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _utc(value)
    if isinstance(value, (EmergencyStatus, NotificationStatus)):
        return value.value
    return value


class SqlAlchemyEmergencyStore:
    """EmergencyStore over any SQLAlchemy-supported database."""

    def __init__(self, engine: Engine, create_tables: bool = True) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        # Serializes the rate-limit check-and-insert within this process
        self._insert_lock = threading.Lock()
        self.logger = logger.bind(component="sqlalchemy_store", dialect=engine.dialect.name)
        if create_tables:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "SqlAlchemyEmergencyStore":
        return cls(create_store_engine(url, echo=echo))

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    async def _run(
        self,
        operation: str,
        fn: Callable[[Session], T],
        lock: AbstractContextManager[Any] | None = None,
    ) -> T:
        def work() -> T:
            # The lock, when given, is held until the transaction has committed
            with lock or nullcontext(), self.session() as session:
                return fn(session)

        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as e:
            self.logger.error("store_operation_failed", operation=operation, error=str(e))
            raise StoreError(f"{operation} failed: {e}") from e

    # Seeding for read-only projections (demo and tests)
    def add_patient(self, patient: PatientProfile, role: Role = Role.PATIENT) -> None:
        with self.session() as session:
            session.merge(
                PatientRow(
                    id=patient.id,
                    email=patient.email,
                    full_name=patient.full_name,
                    phone=patient.phone,
                    emergency_contact_name=patient.emergency_contact_name,
                    emergency_contact_phone=patient.emergency_contact_phone,
                    emergency_contact_email=patient.emergency_contact_email,
                    emergency_contact_channel=(
                        patient.emergency_contact_channel.value
                        if patient.emergency_contact_channel
                        else None
                    ),
                )
            )
            session.merge(UserRoleRow(user_id=patient.id, role=role.value))

    def set_role(self, user_id: str, role: Role) -> None:
        with self.session() as session:
            session.merge(UserRoleRow(user_id=user_id, role=role.value))

    def add_vitals(self, patient_id: str, snapshot: VitalsSnapshot) -> None:
        with self.session() as session:
            session.add(
                VitalsRow(
                    user_id=patient_id,
                    heart_rate=snapshot.heart_rate,
                    blood_pressure_systolic=snapshot.blood_pressure_systolic,
                    blood_pressure_diastolic=snapshot.blood_pressure_diastolic,
                    temperature=snapshot.temperature,
                    oxygen_saturation=snapshot.oxygen_saturation,
                    created_at=_utc(snapshot.created_at),
                )
            )

    async def get_patient(self, patient_id: str) -> PatientProfile | None:
        def fn(session: Session) -> PatientProfile | None:
            row = session.get(PatientRow, patient_id)
            if row is None:
                return None
            return PatientProfile(
                id=row.id,
                email=row.email,
                full_name=row.full_name,
                phone=row.phone,
                emergency_contact_name=row.emergency_contact_name,
                emergency_contact_phone=row.emergency_contact_phone,
                emergency_contact_email=row.emergency_contact_email,
                emergency_contact_channel=(
                    NotificationChannel(row.emergency_contact_channel)
                    if row.emergency_contact_channel
                    else None
                ),
            )

        return await self._run("get_patient", fn)

    async def get_user_role(self, user_id: str) -> Role | None:
        def fn(session: Session) -> Role | None:
            row = session.get(UserRoleRow, user_id)
            return Role(row.role) if row else None

        return await self._run("get_user_role", fn)

    async def get_latest_vitals(self, patient_id: str) -> VitalsSnapshot | None:
        def fn(session: Session) -> VitalsSnapshot | None:
            row = session.scalars(
                select(VitalsRow)
                .where(VitalsRow.user_id == patient_id)
                .order_by(VitalsRow.created_at.desc())
                .limit(1)
            ).first()
            if row is None:
                return None
            return VitalsSnapshot(
                heart_rate=row.heart_rate,
                blood_pressure_systolic=row.blood_pressure_systolic,
                blood_pressure_diastolic=row.blood_pressure_diastolic,
                temperature=row.temperature,
                oxygen_saturation=row.oxygen_saturation,
                created_at=_utc(row.created_at),
            )

        return await self._run("get_latest_vitals", fn)

    @staticmethod
    def _recent_event(
        session: Session, patient_id: str, since: datetime
    ) -> EmergencyEventRow | None:
        return session.scalars(
            select(EmergencyEventRow)
            .where(
                EmergencyEventRow.patient_id == patient_id,
                EmergencyEventRow.triggered_at >= _utc(since),
            )
            .order_by(EmergencyEventRow.triggered_at.desc())
            .limit(1)
        ).first()

    async def find_recent_event(self, patient_id: str, since: datetime) -> EmergencyEvent | None:
        def fn(session: Session) -> EmergencyEvent | None:
            row = self._recent_event(session, patient_id, since)
            return _event(row) if row else None

        return await self._run("find_recent_event", fn)

    async def create_event_if_quiet(
        self, event: EmergencyEvent, window_start: datetime
    ) -> EmergencyEvent | None:
        def fn(session: Session) -> EmergencyEvent | None:
            # Row lock on the patient serializes concurrent writers on
            # databases that support it; SQLite ignores FOR UPDATE
            session.execute(
                select(PatientRow.id).where(PatientRow.id == event.patient_id).with_for_update()
            )
            if self._recent_event(session, event.patient_id, window_start) is not None:
                return None
            session.add(
                EmergencyEventRow(
                    id=event.id,
                    patient_id=event.patient_id,
                    triggered_by=event.triggered_by,
                    triggered_at=_utc(event.triggered_at),
                    location_consented=event.location_consented,
                    location_lat=event.location_lat,
                    location_lng=event.location_lng,
                    status=event.status.value,
                    notes=event.notes,
                    updated_at=_utc(event.updated_at),
                )
            )
            session.flush()
            return event.model_copy()

        return await self._run("create_event_if_quiet", fn, lock=self._insert_lock)

    async def get_event(self, event_id: str) -> EmergencyEvent | None:
        def fn(session: Session) -> EmergencyEvent | None:
            row = session.get(EmergencyEventRow, event_id)
            return _event(row) if row else None

        return await self._run("get_event", fn)

    async def update_event(self, event_id: str, **fields: Any) -> EmergencyEvent | None:
        unknown = set(fields) - EVENT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        def fn(session: Session) -> EmergencyEvent | None:
            row = session.get(EmergencyEventRow, event_id)
            if row is None:
                return None
            for name, value in fields.items():
                setattr(row, name, _column_value(value))
            session.flush()
            return _event(row)

        return await self._run("update_event", fn)

    async def list_events(self, patient_id: str) -> list[EmergencyEvent]:
        def fn(session: Session) -> list[EmergencyEvent]:
            rows = session.scalars(
                select(EmergencyEventRow)
                .where(EmergencyEventRow.patient_id == patient_id)
                .order_by(EmergencyEventRow.triggered_at.desc())
            ).all()
            return [_event(row) for row in rows]

        return await self._run("list_events", fn)

    async def insert_consent(self, record: ConsentRecord) -> ConsentRecord:
        def fn(session: Session) -> ConsentRecord:
            session.add(
                ConsentAuditRow(
                    id=record.id,
                    user_id=record.user_id,
                    consent_type=record.consent_type.value,
                    granted=record.granted,
                    user_agent=record.user_agent,
                    metadata_=record.metadata,
                    created_at=_utc(record.created_at),
                )
            )
            return record

        return await self._run("insert_consent", fn)

    async def list_consents(
        self, user_id: str, consent_type: ConsentType, since: datetime | None = None
    ) -> list[ConsentRecord]:
        def fn(session: Session) -> list[ConsentRecord]:
            query = select(ConsentAuditRow).where(
                ConsentAuditRow.user_id == user_id,
                ConsentAuditRow.consent_type == consent_type.value,
            )
            if since is not None:
                query = query.where(ConsentAuditRow.created_at >= _utc(since))
            rows = session.scalars(query.order_by(ConsentAuditRow.created_at.desc())).all()
            return [_consent(row) for row in rows]

        return await self._run("list_consents", fn)

    async def insert_attempt(self, attempt: NotificationAttempt) -> NotificationAttempt:
        def fn(session: Session) -> NotificationAttempt:
            session.add(
                NotificationRow(
                    id=attempt.id,
                    event_id=attempt.event_id,
                    recipient_type=attempt.channel.value,
                    recipient_address=attempt.recipient_address,
                    channel=attempt.channel.value,
                    status=attempt.status.value,
                    message_id=attempt.message_id,
                    error_message=attempt.error_message,
                    sent_at=_utc(attempt.sent_at),
                    created_at=_utc(attempt.created_at),
                )
            )
            return attempt

        return await self._run("insert_attempt", fn)

    async def update_attempt(self, attempt_id: str, **fields: Any) -> NotificationAttempt | None:
        unknown = set(fields) - ATTEMPT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        def fn(session: Session) -> NotificationAttempt | None:
            row = session.get(NotificationRow, attempt_id)
            if row is None:
                return None
            for name, value in fields.items():
                setattr(row, name, _column_value(value))
            session.flush()
            return _attempt(row)

        return await self._run("update_attempt", fn)

    async def list_attempts(self, event_id: str) -> list[NotificationAttempt]:
        def fn(session: Session) -> list[NotificationAttempt]:
            rows = session.scalars(
                select(NotificationRow)
                .where(NotificationRow.event_id == event_id)
                .order_by(NotificationRow.created_at)
            ).all()
            return [_attempt(row) for row in rows]

        return await self._run("list_attempts", fn)
