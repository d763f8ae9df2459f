"""
Domain models for emergency escalation.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation; value objects are frozen, records that the
store mutates are copied with ``model_copy(update=...)``.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from escalation.domain.errors import EmergencyErrorCode


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class EmergencyStatus(str, Enum):
    """Lifecycle of an emergency event."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not EmergencyStatus.PENDING


class NotificationStatus(str, Enum):
    """Lifecycle of a single notification attempt."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationChannel(str, Enum):
    """Closed set of delivery media. Unknown channels fail validation."""

    EMAIL = "email"
    SMS = "sms"


class ConsentType(str, Enum):
    LOCATION = "location"


class Role(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class CallerIdentity(BaseModel):
    """Authenticated caller, supplied by the identity provider on every call."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    user_agent: str | None = Field(default=None, description="Client user agent for audit")


class GeoLocation(BaseModel):
    """A single device location fix."""

    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    accuracy: float | None = Field(default=None, ge=0.0, description="Accuracy radius in meters")
    captured_at: datetime = Field(default_factory=utc_now)


class LocationValidation(BaseModel):
    """Outcome of checking a fix before it is attached to an event."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    poor_accuracy: bool = False
    reason: str | None = None


class VitalsSnapshot(BaseModel):
    """Most recent vitals reading, used as context in notifications."""

    model_config = ConfigDict(frozen=True)

    heart_rate: float | None = None
    blood_pressure_systolic: int | None = None
    blood_pressure_diastolic: int | None = None
    temperature: float | None = None
    oxygen_saturation: float | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def blood_pressure(self) -> str | None:
        if self.blood_pressure_systolic and self.blood_pressure_diastolic:
            return f"{self.blood_pressure_systolic}/{self.blood_pressure_diastolic}"
        return None

    @property
    def is_empty(self) -> bool:
        return not any(
            (self.heart_rate, self.blood_pressure, self.temperature, self.oxygen_saturation)
        )


class EmergencyContact(BaseModel):
    """The person to notify, derived from patient profile fields."""

    model_config = ConfigDict(frozen=True)

    name: str
    email: str | None = None
    phone: str | None = None
    preferred_channel: NotificationChannel = NotificationChannel.EMAIL

    @property
    def is_configured(self) -> bool:
        return bool(self.name.strip()) and bool(self.phone or self.email)

    def address_for(self, channel: NotificationChannel) -> str | None:
        address = self.email if channel is NotificationChannel.EMAIL else self.phone
        return address.strip() if address and address.strip() else None


class PatientProfile(BaseModel):
    """Read-only projection of the patients table."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    full_name: str | None = None
    phone: str | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None
    emergency_contact_email: str | None = None
    emergency_contact_channel: NotificationChannel | None = None

    @property
    def display_name(self) -> str:
        return self.full_name or "Unknown Patient"

    @property
    def contact_line(self) -> str:
        return self.phone or self.email or "No contact info"

    def emergency_contact(self) -> EmergencyContact | None:
        """Return the configured contact, or None when the profile lacks one.

        The patient's own email is used when no separate contact email exists.
        """
        contact = EmergencyContact(
            name=(self.emergency_contact_name or "").strip(),
            email=self.emergency_contact_email or self.email or None,
            phone=self.emergency_contact_phone or None,
            preferred_channel=self.emergency_contact_channel or NotificationChannel.EMAIL,
        )
        return contact if contact.is_configured else None


class EmergencyEvent(BaseModel):
    """Durable record of one trigger action and its eventual outcome."""

    id: str = Field(default_factory=new_id)
    patient_id: str
    triggered_by: str
    triggered_at: datetime = Field(default_factory=utc_now)
    location_consented: bool = False
    location_lat: float | None = None
    location_lng: float | None = None
    status: EmergencyStatus = EmergencyStatus.PENDING
    notes: str | None = None
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def has_location(self) -> bool:
        return (
            self.location_consented
            and self.location_lat is not None
            and self.location_lng is not None
        )


class ConsentRecord(BaseModel):
    """Append-only audit entry for one consent decision."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    user_id: str
    consent_type: ConsentType = ConsentType.LOCATION
    granted: bool
    user_agent: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class NotificationAttempt(BaseModel):
    """Durable record of one outbound delivery try on one channel."""

    id: str = Field(default_factory=new_id)
    event_id: str
    channel: NotificationChannel
    recipient_address: str
    status: NotificationStatus = NotificationStatus.PENDING
    message_id: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def recipient_type(self) -> NotificationChannel:
        return self.channel


# Consent outcome as a tagged variant
class LocationGranted(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["granted"] = "granted"
    location: GeoLocation


class ConsentDenied(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["denied"] = "denied"
    reason: str


class LocationUnavailable(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["unavailable"] = "unavailable"
    reason: str


ConsentOutcome = Annotated[
    LocationGranted | ConsentDenied | LocationUnavailable, Field(discriminator="kind")
]


class ConsentResult(BaseModel):
    """Consent outcome plus the id of the audit record written for it."""

    model_config = ConfigDict(frozen=True)

    outcome: ConsentOutcome
    consent_id: str | None = None

    @property
    def granted(self) -> bool:
        return isinstance(self.outcome, LocationGranted)

    @property
    def location(self) -> GeoLocation | None:
        return self.outcome.location if isinstance(self.outcome, LocationGranted) else None

    @property
    def error(self) -> str | None:
        return None if isinstance(self.outcome, LocationGranted) else self.outcome.reason


class EmergencyResult(BaseModel):
    """Result of trigger_emergency. Failures share the same shape."""

    success: bool
    event_id: str | None = None
    message: str
    notification_status: NotificationStatus
    error: EmergencyErrorCode | None = None


class UpdateResult(BaseModel):
    """Result of an event mutation."""

    success: bool
    message: str = ""
    error: EmergencyErrorCode | None = None


class TransportMessage(BaseModel):
    """Channel-formatted payload handed to a transport sender."""

    model_config = ConfigDict(frozen=True)

    recipient: str
    subject: str | None = None
    html_body: str | None = None
    text_body: str


class TransportReceipt(BaseModel):
    """What a transport sender reports back."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message_id: str | None = None
    error: str | None = None


class NotificationContent(BaseModel):
    """Channel-independent content of an emergency notification."""

    model_config = ConfigDict(frozen=True)

    patient_name: str
    patient_contact: str
    triggered_at: datetime
    location: GeoLocation | None = None
    vitals: VitalsSnapshot | None = None
    disclaimer: str


class NotificationResult(BaseModel):
    """Structured outcome of one dispatch, never raised."""

    success: bool
    # The requested channel as given, even when it was not a supported one
    channel: NotificationChannel | str
    recipient: str
    message_id: str | None = None
    error: str | None = None
    error_code: EmergencyErrorCode | None = None
    delivered_at: datetime | None = None
    attempt_id: str | None = None
