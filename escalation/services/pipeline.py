"""
End-to-end escalation pipeline.

Sequences the three services in the order the flow requires:

    trigger -> consent -> attach location -> notify (with retry) -> final status

The controller never changes an event's status on its own. After dispatch the
pipeline always makes the second call, update_emergency_status, with sent or
failed, so an event never stays pending once its notification has resolved.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx

from escalation.adapters.storage.sqlalchemy_store import SqlAlchemyEmergencyStore
from escalation.adapters.transports import build_senders
from escalation.config import AppConfig, NotificationConfig, get_config
from escalation.domain.errors import EmergencyErrorCode
from escalation.domain.models import (
    CallerIdentity,
    ConsentResult,
    EmergencyContact,
    EmergencyEvent,
    EmergencyResult,
    EmergencyStatus,
    NotificationResult,
)
from escalation.services.common import configure_logging, logger
from escalation.services.consent import ConsentCoordinator, LocationProvider
from escalation.services.content import caller_feedback
from escalation.services.controller import EmergencyController
from escalation.services.notifications import NotificationDispatcher
from escalation.services.store import EmergencyStore

# Failures that a retry cannot fix
NON_RETRYABLE_CODES = frozenset(
    {
        EmergencyErrorCode.VALIDATION_ERROR,
        EmergencyErrorCode.INVALID_PATIENT_ID,
        EmergencyErrorCode.NOTIFICATION_SERVICE_UNAVAILABLE,
    }
)


@dataclass
class EscalationOutcome:
    """Everything one run produced, in the order it happened."""

    emergency: EmergencyResult
    consent: ConsentResult | None = None
    notifications: list[NotificationResult] = field(default_factory=list)
    final_status: EmergencyStatus | None = None
    user_message: str = ""

    @property
    def event_id(self) -> str | None:
        return self.emergency.event_id

    @property
    def delivered(self) -> bool:
        return any(n.success for n in self.notifications)


class EscalationPipeline:
    """Reference caller for the controller, consent coordinator and dispatcher."""

    def __init__(
        self,
        controller: EmergencyController,
        consent: ConsentCoordinator,
        dispatcher: NotificationDispatcher,
        config: NotificationConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.controller = controller
        self.consent = consent
        self.dispatcher = dispatcher
        self.config = config or dispatcher.config
        self.sleep = sleep
        self.logger = logger.bind(component="escalation_pipeline")

    async def __aenter__(self) -> "EscalationPipeline":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP clients the channel senders created for themselves."""
        for sender in self.dispatcher.senders.values():
            close = getattr(sender, "aclose", None)
            if close is not None:
                await close()

    async def run(
        self, caller: CallerIdentity | None, patient_id: str, share_location: bool = True
    ) -> EscalationOutcome:
        """Run one emergency from trigger to final status. Never raises."""
        emergency = await self.controller.trigger_emergency(caller, patient_id)
        outcome = EscalationOutcome(emergency=emergency, user_message=emergency.message)
        if not emergency.success or emergency.event_id is None:
            return outcome

        event_id = emergency.event_id
        log = self.logger.bind(event_id=event_id, patient_id=patient_id)

        outcome.consent = await self.consent.record_dialog_decision(
            caller, patient_id, share_location
        )
        located = await self.controller.update_emergency_with_location(
            caller, event_id, outcome.consent
        )
        if not located.success:
            # The alert goes out without location rather than not at all
            log.warning("location_attach_failed", error=located.message)

        event, contact = await self._load_for_dispatch(caller, event_id, patient_id)
        if event is None or contact is None:
            await self._finish(caller, outcome, EmergencyStatus.FAILED, None, None)
            return outcome

        outcome.notifications = await self._notify_with_retry(event, contact)
        last = outcome.notifications[-1]
        status = EmergencyStatus.SENT if last.success else EmergencyStatus.FAILED
        await self._finish(caller, outcome, status, last, contact.name)
        return outcome

    async def _load_for_dispatch(
        self, caller: CallerIdentity | None, event_id: str, patient_id: str
    ) -> tuple[EmergencyEvent | None, EmergencyContact | None]:
        event_result = await self.controller.get_emergency_event(caller, event_id, patient_id)
        contact_result = await self.controller.get_emergency_contact(caller, patient_id)
        if event_result.is_err() or contact_result.is_err():
            failed = event_result if event_result.is_err() else contact_result
            self.logger.error(
                "dispatch_context_unavailable", event_id=event_id, error=failed.unwrap_err().message
            )
            return None, None
        return event_result.unwrap(), contact_result.unwrap()

    async def _notify_with_retry(
        self, event: EmergencyEvent, contact: EmergencyContact
    ) -> list[NotificationResult]:
        results: list[NotificationResult] = []
        for attempt in range(1, self.config.max_attempts + 1):
            result = await self.dispatcher.send_emergency_notification(event, contact)
            results.append(result)
            if result.success or result.error_code in NON_RETRYABLE_CODES:
                break
            if attempt < self.config.max_attempts:
                delay = self.config.retry_backoff_seconds * 2 ** (attempt - 1)
                self.logger.info(
                    "notification_retry_scheduled",
                    event_id=event.id,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                await self.sleep(delay)
        return results

    async def _finish(
        self,
        caller: CallerIdentity | None,
        outcome: EscalationOutcome,
        status: EmergencyStatus,
        last: NotificationResult | None,
        contact_name: str | None,
    ) -> None:
        if last is not None and last.success:
            channel = getattr(last.channel, "value", last.channel)
            notes = f"Notification sent via {channel} (message {last.message_id})"
        elif last is not None:
            notes = f"Notification failed: {last.error}"
        else:
            notes = "Notification could not be dispatched"

        update = await self.controller.update_emergency_status(
            caller, outcome.emergency.event_id or "", status, notes
        )
        if not update.success:
            self.logger.error(
                "final_status_write_failed",
                event_id=outcome.emergency.event_id,
                status=status.value,
                error=update.message,
            )
        outcome.final_status = status
        outcome.user_message = caller_feedback(last, contact_name, self.config.emergency_number)


def build_pipeline(
    config: AppConfig | None = None,
    *,
    store: EmergencyStore | None = None,
    location_provider: LocationProvider | None = None,
    client: httpx.AsyncClient | None = None,
) -> EscalationPipeline:
    """Wire the services from configuration.

    Without an explicit store, the relational store at config.database.url is used.
    """
    config = config or get_config()
    configure_logging(config.logging)

    if store is None:
        store = SqlAlchemyEmergencyStore.from_url(config.database.url, echo=config.database.echo)

    controller = EmergencyController(store, config.escalation)
    consent = ConsentCoordinator(
        store,
        location_provider,
        config.consent,
        privileged_roles=config.escalation.privileged_roles,
    )
    dispatcher = NotificationDispatcher(
        store, build_senders(config.notifications, client), config.notifications
    )
    return EscalationPipeline(controller, consent, dispatcher, config.notifications)
