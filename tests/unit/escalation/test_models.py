"""
Tests for domain models, the error taxonomy and the Result type.

Property-based tests cover contact derivation and coordinate handling.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import TypeAdapter, ValidationError

from escalation.domain.errors import EmergencyError, EmergencyErrorCode, unexpected
from escalation.domain.models import (
    CallerIdentity,
    ConsentDenied,
    ConsentOutcome,
    ConsentResult,
    EmergencyContact,
    EmergencyStatus,
    GeoLocation,
    LocationGranted,
    LocationUnavailable,
    NotificationChannel,
    PatientProfile,
    VitalsSnapshot,
)
from escalation.services.common import Result, mask_address


class TestResult:
    """Explicit error handling for reads."""

    def test_ok_may_hold_none(self) -> None:
        result: Result[str | None, EmergencyError] = Result.ok(None)

        assert result.is_ok()
        assert result.unwrap() is None

    def test_err_unwrap_raises_the_error(self) -> None:
        error = EmergencyError("nope", EmergencyErrorCode.DATABASE_ERROR)
        result: Result[int, EmergencyError] = Result.err(error)

        assert result.is_err()
        assert result.unwrap_or(7) == 7
        assert result.unwrap_err() is error
        with pytest.raises(EmergencyError, match="nope"):
            result.unwrap()

    def test_unwrap_err_on_ok(self) -> None:
        with pytest.raises(ValueError):
            Result.ok(1).unwrap_err()

    def test_cannot_hold_both(self) -> None:
        with pytest.raises(ValueError):
            Result(value=1, error=ValueError("x"))


class TestErrors:
    def test_codes_are_stable_strings(self) -> None:
        assert {code.value for code in EmergencyErrorCode} == {
            "AUTHENTICATION_FAILED",
            "INVALID_PATIENT_ID",
            "MISSING_EMERGENCY_CONTACT",
            "RATE_LIMIT_EXCEEDED",
            "VALIDATION_ERROR",
            "DATABASE_ERROR",
            "LOCATION_PERMISSION_DENIED",
            "NOTIFICATION_SERVICE_UNAVAILABLE",
            "NETWORK_ERROR",
        }

    def test_unexpected_maps_to_database_error(self) -> None:
        error = unexpected(KeyError("k"), "Something broke")

        assert error.code is EmergencyErrorCode.DATABASE_ERROR
        assert error.message == "Something broke"
        assert error.details["original_error"].startswith("KeyError")


class TestEmergencyContact:
    def test_blank_name_is_not_configured(self) -> None:
        profile = PatientProfile(id="p2", email="a@example.com", emergency_contact_name="  ")

        assert profile.emergency_contact() is None

    def test_patient_email_is_the_fallback_address(self) -> None:
        profile = PatientProfile(
            id="p1", email="jane@example.com", emergency_contact_name="Jane Doe"
        )

        contact = profile.emergency_contact()

        assert contact is not None
        assert contact.email == "jane@example.com"
        assert contact.phone is None
        assert contact.preferred_channel is NotificationChannel.EMAIL

    @given(
        name=st.text(min_size=1, max_size=40).filter(lambda s: s.strip()),
        phone=st.one_of(st.none(), st.from_regex(r"\+1555\d{7}", fullmatch=True)),
    )
    def test_named_contact_with_any_address_is_configured(
        self, name: str, phone: str | None
    ) -> None:
        contact = PatientProfile(
            id="p",
            email="p@example.com",
            emergency_contact_name=name,
            emergency_contact_phone=phone,
        ).emergency_contact()

        assert contact is not None
        assert contact.name == name.strip()
        assert contact.address_for(NotificationChannel.SMS) == phone

    def test_address_for_ignores_blank_values(self) -> None:
        contact = EmergencyContact(name="X", email="  ", phone="+15550100")

        assert contact.address_for(NotificationChannel.EMAIL) is None
        assert contact.address_for(NotificationChannel.SMS) == "+15550100"


class TestConsentOutcome:
    def test_discriminated_parsing(self) -> None:
        adapter = TypeAdapter(ConsentOutcome)

        denied = adapter.validate_python({"kind": "denied", "reason": "no"})
        assert isinstance(denied, ConsentDenied)
        assert isinstance(
            adapter.validate_python({"kind": "unavailable", "reason": "timeout"}),
            LocationUnavailable,
        )
        granted = adapter.validate_python(
            {"kind": "granted", "location": {"latitude": 1.0, "longitude": 2.0}}
        )
        assert isinstance(granted, LocationGranted)

    def test_unknown_kind_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TypeAdapter(ConsentOutcome).validate_python({"kind": "maybe", "reason": "?"})

    @given(
        lat=st.floats(min_value=-90.0, max_value=90.0),
        lng=st.floats(min_value=-180.0, max_value=180.0),
    )
    def test_granted_result_exposes_location(self, lat: float, lng: float) -> None:
        location = GeoLocation(latitude=lat, longitude=lng)
        result = ConsentResult(outcome=LocationGranted(location=location))

        assert result.granted
        assert result.location == location
        assert result.error is None

    def test_denied_result_exposes_reason(self) -> None:
        result = ConsentResult(outcome=ConsentDenied(reason="declined"), consent_id="c1")

        assert not result.granted
        assert result.location is None
        assert result.error == "declined"


class TestValueObjects:
    def test_caller_identity_requires_user_id(self) -> None:
        with pytest.raises(ValidationError):
            CallerIdentity(user_id="")

    def test_value_objects_are_frozen(self) -> None:
        location = GeoLocation(latitude=1.0, longitude=1.0)

        with pytest.raises(ValidationError, match="frozen"):
            location.latitude = 2.0  # type: ignore

    def test_negative_accuracy_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GeoLocation(latitude=1.0, longitude=1.0, accuracy=-5.0)

    def test_vitals_blood_pressure(self) -> None:
        assert VitalsSnapshot(blood_pressure_systolic=120).blood_pressure is None
        assert VitalsSnapshot().is_empty
        vitals = VitalsSnapshot(blood_pressure_systolic=120, blood_pressure_diastolic=80)
        assert vitals.blood_pressure == "120/80"
        assert not vitals.is_empty

    def test_terminal_statuses(self) -> None:
        assert not EmergencyStatus.PENDING.is_terminal
        assert EmergencyStatus.SENT.is_terminal
        assert EmergencyStatus.FAILED.is_terminal


class TestMaskAddress:
    @pytest.mark.parametrize(
        "address,masked",
        [
            ("john@example.com", "j***@example.com"),
            ("+15550199", "***0199"),
            ("123", "***"),
            (None, "<none>"),
        ],
    )
    def test_masking(self, address: str | None, masked: str) -> None:
        assert mask_address(address) == masked
