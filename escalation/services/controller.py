"""
Emergency controller: the entry point of the escalation flow.

The controller validates the caller, enforces the per-patient rate limit,
verifies that an emergency contact is configured and records the event. It
does not request consent or send notifications; callers sequence the
ConsentCoordinator and NotificationDispatcher around it (see pipeline.py).

Every public operation returns a structured result. EmergencyError is raised
internally and converted at the boundary; anything else is logged and mapped
to DATABASE_ERROR.
"""

import math
from collections.abc import Callable
from datetime import datetime, timedelta

from escalation.config import EscalationConfig
from escalation.domain.errors import EmergencyError, EmergencyErrorCode, StoreError, unexpected
from escalation.domain.models import (
    CallerIdentity,
    ConsentResult,
    EmergencyContact,
    EmergencyEvent,
    EmergencyResult,
    EmergencyStatus,
    NotificationStatus,
    PatientProfile,
    UpdateResult,
    VitalsSnapshot,
    utc_now,
)
from escalation.services.common import Result, logger
from escalation.services.consent import validate_location_data
from escalation.services.store import EmergencyStore

TRIGGER_SUCCESS_MESSAGE = (
    "Emergency event created successfully. "
    "Location consent and notification will be processed next."
)
UNEXPECTED_MESSAGE = "An unexpected error occurred while processing your emergency request."


class EmergencyController:
    """Stateless orchestrator over an injected store."""

    def __init__(
        self,
        store: EmergencyStore,
        config: EscalationConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.config = config or EscalationConfig()
        self.clock = clock
        self.logger = logger.bind(component="emergency_controller")

    async def trigger_emergency(
        self, caller: CallerIdentity | None, patient_id: str
    ) -> EmergencyResult:
        """Validate, rate-limit and record a new emergency event in state pending."""
        self.logger.info("emergency_trigger_requested", patient_id=patient_id)

        try:
            if caller is None:
                raise EmergencyError(
                    "Authentication required", EmergencyErrorCode.AUTHENTICATION_FAILED
                )
            patient = await self._authorize(caller, patient_id)

            now = self.clock()
            window_start = now - timedelta(seconds=self.config.rate_limit_window_seconds)
            await self._check_rate_limit(patient_id, now, window_start)

            # Contact must exist before any event row is written
            self._require_contact(patient)

            event = EmergencyEvent(
                patient_id=patient_id,
                triggered_by=patient_id,
                triggered_at=now,
                updated_at=now,
                status=EmergencyStatus.PENDING,
                location_consented=False,
                notes=self.config.trigger_note,
            )
            try:
                created = await self.store.create_event_if_quiet(event, window_start)
            except StoreError as e:
                raise EmergencyError(
                    "Failed to create emergency event",
                    EmergencyErrorCode.DATABASE_ERROR,
                    {"original_error": str(e)},
                ) from e

            if created is None:
                # Lost a race with a concurrent trigger for the same patient
                recent = await self.store.find_recent_event(patient_id, window_start)
                raise self._rate_limit_error(now, recent.triggered_at if recent else now)

            self.logger.info(
                "emergency_triggered",
                event_id=created.id,
                patient_id=patient_id,
                acting_user=caller.user_id,
            )
            return EmergencyResult(
                success=True,
                event_id=created.id,
                message=TRIGGER_SUCCESS_MESSAGE,
                notification_status=NotificationStatus.PENDING,
            )

        except EmergencyError as e:
            self.logger.warning(
                "emergency_trigger_rejected", patient_id=patient_id, code=e.code.value
            )
            return self._trigger_failure(e)
        except Exception as e:
            self.logger.exception("emergency_trigger_failed", patient_id=patient_id, error=str(e))
            return self._trigger_failure(unexpected(e, UNEXPECTED_MESSAGE))

    async def update_emergency_with_location(
        self,
        caller: CallerIdentity | None,
        event_id: str,
        consent_result: ConsentResult,
    ) -> UpdateResult:
        """Record the consent outcome on the event, copying coordinates only when granted."""
        try:
            await self._load_authorized_event(caller, event_id)

            fields: dict[str, object] = {
                "location_consented": consent_result.granted,
                "updated_at": self.clock(),
            }
            location = consent_result.location
            if consent_result.granted and location is not None:
                validation = validate_location_data(location)
                if validation.valid:
                    fields["location_lat"] = location.latitude
                    fields["location_lng"] = location.longitude
                else:
                    # Missing location never fails the flow
                    self.logger.warning(
                        "location_discarded", event_id=event_id, reason=validation.reason
                    )

            await self._write_event(
                event_id, fields, "Failed to update emergency event with location data"
            )
            self.logger.info(
                "emergency_location_updated",
                event_id=event_id,
                consented=consent_result.granted,
                has_coordinates="location_lat" in fields,
            )
            return UpdateResult(
                success=True, message="Emergency event updated with consent outcome"
            )

        except EmergencyError as e:
            self.logger.warning(
                "emergency_location_update_rejected", event_id=event_id, code=e.code.value
            )
            return UpdateResult(success=False, message=e.message, error=e.code)
        except Exception as e:
            self.logger.exception(
                "emergency_location_update_failed", event_id=event_id, error=str(e)
            )
            failure = unexpected(e, "Failed to update emergency event with location data")
            return UpdateResult(success=False, message=failure.message, error=failure.code)

    async def update_emergency_status(
        self,
        caller: CallerIdentity | None,
        event_id: str,
        status: EmergencyStatus | str,
        notes: str | None = None,
    ) -> UpdateResult:
        """Move the event to its terminal status. Repeating the current status is a no-op."""
        try:
            try:
                new_status = EmergencyStatus(status)
            except ValueError as e:
                raise EmergencyError(
                    f"Invalid emergency status: {status}", EmergencyErrorCode.VALIDATION_ERROR
                ) from e

            event = await self._load_authorized_event(caller, event_id)

            if event.status is new_status:
                return UpdateResult(
                    success=True, message=f"Emergency event already {new_status.value}"
                )
            if event.status.is_terminal:
                raise EmergencyError(
                    f"Emergency event is already {event.status.value} and cannot become "
                    f"{new_status.value}",
                    EmergencyErrorCode.VALIDATION_ERROR,
                )

            fields: dict[str, object] = {"status": new_status, "updated_at": self.clock()}
            if notes:
                fields["notes"] = notes
            await self._write_event(event_id, fields, "Failed to update emergency event status")

            self.logger.info("emergency_status_updated", event_id=event_id, status=new_status.value)
            return UpdateResult(success=True, message=f"Emergency event marked {new_status.value}")

        except EmergencyError as e:
            self.logger.warning(
                "emergency_status_update_rejected", event_id=event_id, code=e.code.value
            )
            return UpdateResult(success=False, message=e.message, error=e.code)
        except Exception as e:
            self.logger.exception("emergency_status_update_failed", event_id=event_id, error=str(e))
            failure = unexpected(e, "Failed to update emergency event status")
            return UpdateResult(success=False, message=failure.message, error=failure.code)

    async def get_emergency_history(
        self, caller: CallerIdentity | None, patient_id: str
    ) -> Result[list[EmergencyEvent], EmergencyError]:
        """Events for the patient, newest first."""
        try:
            await self._authorize(caller, patient_id)
            try:
                events = await self.store.list_events(patient_id)
            except StoreError as e:
                raise EmergencyError(
                    "Failed to fetch emergency history", EmergencyErrorCode.DATABASE_ERROR
                ) from e
            events = [e for e in events if e.patient_id == patient_id]
            events.sort(key=lambda e: e.triggered_at, reverse=True)
            return Result.ok(events)
        except EmergencyError as e:
            self.logger.warning(
                "emergency_history_rejected", patient_id=patient_id, code=e.code.value
            )
            return Result.err(e)
        except Exception as e:
            self.logger.exception("emergency_history_failed", patient_id=patient_id, error=str(e))
            return Result.err(unexpected(e, "Failed to fetch emergency history"))

    async def get_emergency_event(
        self, caller: CallerIdentity | None, event_id: str, patient_id: str
    ) -> Result[EmergencyEvent | None, EmergencyError]:
        """The event if it exists and belongs to the patient, otherwise Ok(None)."""
        try:
            await self._authorize(caller, patient_id)
            try:
                event = await self.store.get_event(event_id)
            except StoreError as e:
                raise EmergencyError(
                    "Failed to fetch emergency event", EmergencyErrorCode.DATABASE_ERROR
                ) from e
            if event is None or event.patient_id != patient_id:
                return Result.ok(None)
            return Result.ok(event)
        except EmergencyError as e:
            self.logger.warning("emergency_event_rejected", event_id=event_id, code=e.code.value)
            return Result.err(e)
        except Exception as e:
            self.logger.exception("emergency_event_failed", event_id=event_id, error=str(e))
            return Result.err(unexpected(e, "Failed to fetch emergency event"))

    async def get_emergency_contact(
        self, caller: CallerIdentity | None, patient_id: str
    ) -> Result[EmergencyContact, EmergencyError]:
        """The configured contact, or MISSING_EMERGENCY_CONTACT."""
        try:
            patient = await self._authorize(caller, patient_id)
            return Result.ok(self._require_contact(patient))
        except EmergencyError as e:
            return Result.err(e)
        except Exception as e:
            self.logger.exception("emergency_contact_failed", patient_id=patient_id, error=str(e))
            return Result.err(unexpected(e, "Failed to load emergency contact"))

    async def get_latest_vitals(
        self, caller: CallerIdentity | None, patient_id: str
    ) -> VitalsSnapshot | None:
        """Best-effort vitals context; None on absence or any failure."""
        try:
            await self._authorize(caller, patient_id)
            return await self.store.get_latest_vitals(patient_id)
        except Exception as e:
            self.logger.warning("latest_vitals_unavailable", patient_id=patient_id, error=str(e))
            return None

    async def _authorize(self, caller: CallerIdentity | None, patient_id: str) -> PatientProfile:
        """Caller must be the patient or hold a privileged role; the patient must exist."""
        if not patient_id or not patient_id.strip():
            raise EmergencyError("Patient ID is required", EmergencyErrorCode.VALIDATION_ERROR)
        if caller is None:
            raise EmergencyError(
                "Authentication required", EmergencyErrorCode.AUTHENTICATION_FAILED
            )

        try:
            if caller.user_id != patient_id:
                role = await self.store.get_user_role(caller.user_id)
                if role is None or role.value not in self.config.privileged_roles:
                    raise EmergencyError(
                        "Insufficient permissions to access this patient's emergency data",
                        EmergencyErrorCode.AUTHENTICATION_FAILED,
                    )
            patient = await self.store.get_patient(patient_id)
        except StoreError as e:
            raise EmergencyError(
                "Failed to validate patient access",
                EmergencyErrorCode.DATABASE_ERROR,
                {"original_error": str(e)},
            ) from e

        if patient is None:
            raise EmergencyError("Patient not found", EmergencyErrorCode.INVALID_PATIENT_ID)
        return patient

    async def _check_rate_limit(
        self, patient_id: str, now: datetime, window_start: datetime
    ) -> None:
        try:
            recent = await self.store.find_recent_event(patient_id, window_start)
        except StoreError as e:
            # The atomic insert still guards the window
            self.logger.warning("rate_limit_check_failed", patient_id=patient_id, error=str(e))
            return
        if recent is not None:
            raise self._rate_limit_error(now, recent.triggered_at)

    def _rate_limit_error(self, now: datetime, last_triggered_at: datetime) -> EmergencyError:
        seconds = seconds_remaining(now, last_triggered_at, self.config.rate_limit_window_seconds)
        self.logger.info("rate_limit_exceeded", seconds_remaining=seconds)
        return EmergencyError(
            f"Please wait {seconds} seconds before triggering another emergency alert. "
            "This prevents accidental spam and ensures each alert is taken seriously.",
            EmergencyErrorCode.RATE_LIMIT_EXCEEDED,
            {"seconds_remaining": seconds},
        )

    @staticmethod
    def _require_contact(patient: PatientProfile) -> EmergencyContact:
        contact = patient.emergency_contact()
        if contact is None:
            raise EmergencyError(
                "No emergency contact configured. "
                "Please set up an emergency contact in your profile settings.",
                EmergencyErrorCode.MISSING_EMERGENCY_CONTACT,
            )
        return contact

    async def _load_authorized_event(
        self, caller: CallerIdentity | None, event_id: str
    ) -> EmergencyEvent:
        if caller is None:
            raise EmergencyError(
                "Authentication required", EmergencyErrorCode.AUTHENTICATION_FAILED
            )
        try:
            event = await self.store.get_event(event_id)
        except StoreError as e:
            raise EmergencyError(
                "Failed to fetch emergency event", EmergencyErrorCode.DATABASE_ERROR
            ) from e
        if event is None:
            raise EmergencyError(
                f"Emergency event {event_id} not found", EmergencyErrorCode.VALIDATION_ERROR
            )
        await self._authorize(caller, event.patient_id)
        return event

    async def _write_event(self, event_id: str, fields: dict[str, object], message: str) -> None:
        try:
            updated = await self.store.update_event(event_id, **fields)
        except StoreError as e:
            raise EmergencyError(
                message, EmergencyErrorCode.DATABASE_ERROR, {"original_error": str(e)}
            ) from e
        if updated is None:
            raise EmergencyError(
                f"Emergency event {event_id} not found", EmergencyErrorCode.VALIDATION_ERROR
            )

    @staticmethod
    def _trigger_failure(error: EmergencyError) -> EmergencyResult:
        return EmergencyResult(
            success=False,
            event_id=None,
            message=error.message,
            notification_status=NotificationStatus.FAILED,
            error=error.code,
        )


def seconds_remaining(now: datetime, last_triggered_at: datetime, window_seconds: float) -> int:
    """Whole seconds until the rate limit window opens again, at least 1."""
    elapsed = (now - last_triggered_at).total_seconds()
    return max(1, math.ceil(window_seconds - elapsed))
