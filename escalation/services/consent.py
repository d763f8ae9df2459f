"""
Location consent coordination.

Requests a one-shot, time-bounded location fix from the caller's device and
writes exactly one append-only consent record per request, whatever the
outcome. Denial and unavailability are normal outcomes, not errors: the
emergency flow continues without location.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Protocol

from escalation.config import ConsentConfig
from escalation.domain.errors import EmergencyError, EmergencyErrorCode, LocationError, StoreError
from escalation.domain.models import (
    CallerIdentity,
    ConsentDenied,
    ConsentRecord,
    ConsentResult,
    ConsentType,
    GeoLocation,
    LocationGranted,
    LocationUnavailable,
    LocationValidation,
    utc_now,
)
from escalation.services.common import Result, logger
from escalation.services.store import EmergencyStore

POOR_ACCURACY_METERS = 1000.0
MAPS_URL = "https://maps.google.com/?q={lat},{lng}"

SOURCE_EMERGENCY_REQUEST = "emergency_request"
SOURCE_DIALOG_DENIAL = "user_dialog_denial"


def validate_location_data(
    location: GeoLocation, poor_accuracy_meters: float = POOR_ACCURACY_METERS
) -> LocationValidation:
    """Reject out-of-range coordinates; flag, but accept, poor accuracy."""
    if not -90.0 <= location.latitude <= 90.0:
        return LocationValidation(valid=False, reason=f"Latitude {location.latitude} out of range")
    if not -180.0 <= location.longitude <= 180.0:
        return LocationValidation(
            valid=False, reason=f"Longitude {location.longitude} out of range"
        )
    if location.accuracy is not None and location.accuracy > poor_accuracy_meters:
        logger.warning("location_accuracy_poor", accuracy_meters=location.accuracy)
        return LocationValidation(
            valid=True,
            poor_accuracy=True,
            reason=f"Accuracy {round(location.accuracy)}m exceeds {round(poor_accuracy_meters)}m",
        )
    return LocationValidation(valid=True)


def maps_link(latitude: float, longitude: float) -> str:
    return MAPS_URL.format(lat=f"{latitude:.6f}", lng=f"{longitude:.6f}")


def format_location_for_notification(location: GeoLocation) -> str:
    """Human-readable location line plus a map deep link."""
    accuracy = f"{round(location.accuracy)}" if location.accuracy is not None else "unknown"
    return (
        f"Location: {location.latitude:.6f}, {location.longitude:.6f} (±{accuracy}m accuracy)\n"
        f"Google Maps: {maps_link(location.latitude, location.longitude)}"
    )


class LocationProvider(Protocol):
    """Device location capability. Raises LocationError when no fix is available."""

    async def current_position(
        self, *, high_accuracy: bool, max_age_seconds: float
    ) -> GeoLocation: ...


class CachedLocationProvider:
    """Reuses the last fix while it is younger than the requested maximum age."""

    def __init__(
        self, delegate: LocationProvider, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.delegate = delegate
        self.clock = clock
        self._last_fix: GeoLocation | None = None

    async def current_position(
        self, *, high_accuracy: bool, max_age_seconds: float
    ) -> GeoLocation:
        if self._last_fix is not None:
            age = self.clock() - self._last_fix.captured_at
            if age <= timedelta(seconds=max_age_seconds):
                logger.debug("location_cache_hit", age_seconds=round(age.total_seconds(), 3))
                return self._last_fix

        fix = await self.delegate.current_position(
            high_accuracy=high_accuracy, max_age_seconds=max_age_seconds
        )
        self._last_fix = fix
        return fix


class StaticLocationProvider:
    """Fixed-position provider for demos and kiosk deployments."""

    def __init__(self, latitude: float, longitude: float, accuracy: float | None = None) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self.accuracy = accuracy

    async def current_position(
        self, *, high_accuracy: bool, max_age_seconds: float
    ) -> GeoLocation:
        return GeoLocation(latitude=self.latitude, longitude=self.longitude, accuracy=self.accuracy)


class ConsentCoordinator:
    """
    Stateless consent service over an injected store and location provider.

    A provider of None means the platform has no location capability at all.
    """

    def __init__(
        self,
        store: EmergencyStore,
        location_provider: LocationProvider | None,
        config: ConsentConfig | None = None,
        privileged_roles: frozenset[str] = frozenset({"doctor", "admin"}),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.location_provider = location_provider
        self.config = config or ConsentConfig()
        self.privileged_roles = privileged_roles
        self.clock = clock
        self.logger = logger.bind(component="consent_coordinator")

    async def request_location_consent(
        self, caller: CallerIdentity | None, patient_id: str
    ) -> ConsentResult:
        """Read the device location once and record the decision.

        Always writes exactly one consent record. Never raises.
        """
        user_agent = caller.user_agent if caller else None
        metadata: dict[str, Any] = {"source": SOURCE_EMERGENCY_REQUEST}

        if caller is None or caller.user_id != patient_id:
            # Only the patient can share their own device location
            reason = "Location consent can only be given by the patient"
            metadata["error"] = reason
            consent_id = await self._record(patient_id, False, metadata, user_agent)
            return ConsentResult(outcome=ConsentDenied(reason=reason), consent_id=consent_id)

        if self.location_provider is None:
            reason = "Geolocation is not supported on this device"
            metadata["error"] = reason
            consent_id = await self._record(patient_id, False, metadata, user_agent)
            return ConsentResult(outcome=LocationUnavailable(reason=reason), consent_id=consent_id)

        try:
            fix = await asyncio.wait_for(
                self.location_provider.current_position(
                    high_accuracy=self.config.high_accuracy,
                    max_age_seconds=self.config.max_location_age_seconds,
                ),
                timeout=self.config.location_timeout_seconds,
            )
        except TimeoutError:
            reason = f"Location request timed out after {self.config.location_timeout_seconds:g}s"
            return await self._unavailable(patient_id, reason, metadata, user_agent)
        except LocationError as e:
            if e.permission_denied:
                metadata["error"] = str(e)
                metadata["code"] = EmergencyErrorCode.LOCATION_PERMISSION_DENIED.value
                consent_id = await self._record(patient_id, False, metadata, user_agent)
                self.logger.info("location_permission_denied", patient_id=patient_id)
                return ConsentResult(outcome=ConsentDenied(reason=str(e)), consent_id=consent_id)
            return await self._unavailable(patient_id, str(e), metadata, user_agent)
        except Exception as e:
            self.logger.exception("location_read_failed", patient_id=patient_id, error=str(e))
            return await self._unavailable(
                patient_id, str(e) or "Failed to get location", metadata, user_agent
            )

        validation = validate_location_data(fix, self.config.poor_accuracy_meters)
        if not validation.valid:
            return await self._unavailable(
                patient_id, validation.reason or "Invalid location", metadata, user_agent
            )

        metadata.update(
            accuracy=fix.accuracy,
            timestamp=fix.captured_at.isoformat(),
            poor_accuracy=validation.poor_accuracy,
        )
        consent_id = await self._record(patient_id, True, metadata, user_agent)
        self.logger.info(
            "location_consent_granted",
            patient_id=patient_id,
            accuracy_meters=fix.accuracy,
            poor_accuracy=validation.poor_accuracy,
        )
        return ConsentResult(outcome=LocationGranted(location=fix), consent_id=consent_id)

    async def record_dialog_decision(
        self, caller: CallerIdentity | None, patient_id: str, granted: bool
    ) -> ConsentResult:
        """Apply the user's answer to the consent dialog.

        Accepting performs the location read; declining records a denial
        without touching the device.
        """
        if granted:
            return await self.request_location_consent(caller, patient_id)

        consent_id = await self._record(
            patient_id,
            False,
            {"source": SOURCE_DIALOG_DENIAL},
            caller.user_agent if caller else None,
        )
        return ConsentResult(
            outcome=ConsentDenied(reason="Location sharing declined by user"),
            consent_id=consent_id,
        )

    async def log_consent_decision(
        self,
        patient_id: str,
        consent_type: ConsentType,
        granted: bool,
        metadata: dict[str, Any] | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Append one consent record and return its id. Raises DATABASE_ERROR on failure."""
        record = ConsentRecord(
            user_id=patient_id,
            consent_type=consent_type,
            granted=granted,
            user_agent=user_agent,
            metadata=metadata or {},
            created_at=self.clock(),
        )
        try:
            stored = await self.store.insert_consent(record)
        except StoreError as e:
            raise EmergencyError(
                f"Failed to log consent: {e}",
                EmergencyErrorCode.DATABASE_ERROR,
                {"original_error": str(e)},
            ) from e
        self.logger.info(
            "consent_recorded",
            consent_id=stored.id,
            user_id=patient_id,
            consent_type=consent_type.value,
            granted=granted,
        )
        return stored.id

    async def get_consent_history(
        self,
        caller: CallerIdentity | None,
        user_id: str,
        consent_type: ConsentType = ConsentType.LOCATION,
    ) -> Result[list[ConsentRecord], EmergencyError]:
        """All consent records of a type for the user, newest first."""
        try:
            await self._authorize(caller, user_id)
            records = await self.store.list_consents(user_id, consent_type)
            return Result.ok(sorted(records, key=lambda r: r.created_at, reverse=True))
        except EmergencyError as e:
            return Result.err(e)
        except StoreError as e:
            self.logger.error("consent_history_failed", user_id=user_id, error=str(e))
            return Result.err(
                EmergencyError(
                    f"Failed to fetch consent history: {e}", EmergencyErrorCode.DATABASE_ERROR
                )
            )

    async def has_recent_consent(
        self,
        caller: CallerIdentity | None,
        user_id: str,
        consent_type: ConsentType = ConsentType.LOCATION,
        within_minutes: int | None = None,
    ) -> bool:
        """True only if the newest record inside the window granted consent."""
        minutes = (
            within_minutes if within_minutes is not None else self.config.recent_consent_minutes
        )
        cutoff = self.clock() - timedelta(minutes=minutes)
        try:
            await self._authorize(caller, user_id)
            records = await self.store.list_consents(user_id, consent_type, since=cutoff)
        except (EmergencyError, StoreError) as e:
            self.logger.warning("recent_consent_check_failed", user_id=user_id, error=str(e))
            return False
        if not records:
            return False
        return max(records, key=lambda r: r.created_at).granted

    def validate_location_data(self, location: GeoLocation) -> LocationValidation:
        return validate_location_data(location, self.config.poor_accuracy_meters)

    async def _unavailable(
        self, patient_id: str, reason: str, metadata: dict[str, Any], user_agent: str | None
    ) -> ConsentResult:
        metadata["error"] = reason
        consent_id = await self._record(patient_id, False, metadata, user_agent)
        self.logger.info("location_unavailable", patient_id=patient_id, reason=reason)
        return ConsentResult(outcome=LocationUnavailable(reason=reason), consent_id=consent_id)

    async def _record(
        self, patient_id: str, granted: bool, metadata: dict[str, Any], user_agent: str | None
    ) -> str | None:
        """Write the audit record; a failed write is logged and leaves the outcome intact."""
        try:
            return await self.log_consent_decision(
                patient_id, ConsentType.LOCATION, granted, metadata, user_agent
            )
        except EmergencyError as e:
            self.logger.error("consent_record_failed", user_id=patient_id, error=e.message)
            return None

    async def _authorize(self, caller: CallerIdentity | None, user_id: str) -> None:
        if caller is None:
            raise EmergencyError(
                "Authentication required", EmergencyErrorCode.AUTHENTICATION_FAILED
            )
        if caller.user_id == user_id:
            return
        role = await self.store.get_user_role(caller.user_id)
        if role is None or role.value not in self.privileged_roles:
            raise EmergencyError(
                "Insufficient permissions to read this user's consent history",
                EmergencyErrorCode.AUTHENTICATION_FAILED,
            )
