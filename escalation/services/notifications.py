"""
Notification dispatch to the emergency contact.

Each NotificationChannel has exactly one ChannelStrategy that renders content
for it, and at most one ChannelSender that delivers it. The dispatcher is
agnostic to which provider backs a sender.

Attempt bookkeeping: one attempt row is inserted before the transport call and
updated exactly once afterwards. Failures found before any network call
(unknown channel, missing address, no sender) create no attempt row.
"""

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Protocol

from escalation.config import NotificationConfig
from escalation.domain.errors import EmergencyError, EmergencyErrorCode, StoreError, unexpected
from escalation.domain.models import (
    EmergencyContact,
    EmergencyEvent,
    NotificationAttempt,
    NotificationChannel,
    NotificationContent,
    NotificationResult,
    NotificationStatus,
    TransportMessage,
    TransportReceipt,
    VitalsSnapshot,
    utc_now,
)
from escalation.services.common import Result, logger, mask_address
from escalation.services.content import (
    build_notification_content,
    email_subject,
    format_email_html,
    format_sms,
    format_text,
)
from escalation.services.store import EmergencyStore


class ChannelSender(Protocol):
    """Outbound transport for one channel.

    Delivery problems are reported in the receipt; raising is reserved for
    programming errors.
    """

    provider_name: str

    async def send(self, message: TransportMessage) -> TransportReceipt: ...


class ChannelStrategy(Protocol):
    channel: NotificationChannel

    def render(self, content: NotificationContent, address: str) -> TransportMessage: ...


class EmailChannel:
    """HTML plus text rendering for email."""

    channel = NotificationChannel.EMAIL

    def __init__(self, system_name: str) -> None:
        self.system_name = system_name

    def render(self, content: NotificationContent, address: str) -> TransportMessage:
        return TransportMessage(
            recipient=address,
            subject=email_subject(content),
            html_body=format_email_html(content, self.system_name),
            text_body=format_text(content, self.system_name),
        )


class SmsChannel:
    """Single short text block for SMS."""

    channel = NotificationChannel.SMS

    def __init__(self, system_name: str, emergency_number: str) -> None:
        self.system_name = system_name
        self.emergency_number = emergency_number

    def render(self, content: NotificationContent, address: str) -> TransportMessage:
        return TransportMessage(
            recipient=address,
            text_body=format_sms(content, self.system_name, self.emergency_number),
        )


def validate_notification_channel(channel: object) -> NotificationChannel | None:
    """Coerce to a supported channel, or None when unsupported."""
    try:
        return NotificationChannel(channel)
    except ValueError:
        return None


class NotificationDispatcher:
    """Builds, logs and delivers one notification per call. Never raises."""

    def __init__(
        self,
        store: EmergencyStore,
        senders: Mapping[NotificationChannel, ChannelSender],
        config: NotificationConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.senders = dict(senders)
        self.config = config or NotificationConfig()
        self.clock = clock
        self.strategies: dict[NotificationChannel, ChannelStrategy] = {
            NotificationChannel.EMAIL: EmailChannel(self.config.system_name),
            NotificationChannel.SMS: SmsChannel(
                self.config.system_name, self.config.emergency_number
            ),
        }
        self.logger = logger.bind(component="notification_dispatcher")

    async def send_emergency_notification(
        self, event: EmergencyEvent, contact: EmergencyContact
    ) -> NotificationResult:
        """Deliver the emergency notification on the contact's preferred channel."""
        requested = contact.preferred_channel
        channel = validate_notification_channel(requested)
        fallback_recipient = (channel and contact.address_for(channel)) or "unknown"
        channel_name = str(getattr(requested, "value", requested))
        log = self.logger.bind(event_id=event.id, channel=channel_name)

        try:
            if channel is None:
                raise EmergencyError(
                    f"Invalid notification channel: {channel_name}",
                    EmergencyErrorCode.VALIDATION_ERROR,
                )

            content = await self._build_content(event)

            address = contact.address_for(channel)
            if address is None:
                raise EmergencyError(
                    f"No {channel.value} address available for recipient",
                    EmergencyErrorCode.VALIDATION_ERROR,
                )
            sender = self.senders.get(channel)
            if sender is None:
                raise EmergencyError(
                    f"No {channel.value} transport is configured",
                    EmergencyErrorCode.NOTIFICATION_SERVICE_UNAVAILABLE,
                )

            message = self.strategies[channel].render(content, address)
            attempt_id = await self._log_attempt(event.id, channel, address)

            receipt = await self._deliver(sender, message)
            delivered_at = self.clock() if receipt.success else None
            result = NotificationResult(
                success=receipt.success,
                channel=channel,
                recipient=address,
                message_id=receipt.message_id,
                error=receipt.error,
                error_code=None if receipt.success else EmergencyErrorCode.NETWORK_ERROR,
                delivered_at=delivered_at,
                attempt_id=attempt_id,
            )

            await self._finish_attempt(attempt_id, result)

            if result.success:
                log.info(
                    "notification_sent",
                    recipient=mask_address(address),
                    provider=sender.provider_name,
                    message_id=result.message_id,
                )
            else:
                log.warning(
                    "notification_failed",
                    recipient=mask_address(address),
                    provider=sender.provider_name,
                    error=result.error,
                )
            return result

        except EmergencyError as e:
            log.warning("notification_rejected", code=e.code.value, error=e.message)
            return self._failure(requested, fallback_recipient, e)
        except Exception as e:
            log.exception("notification_dispatch_failed", error=str(e))
            return self._failure(
                requested, fallback_recipient, unexpected(e, "Notification dispatch failed")
            )

    async def get_notification_attempts(
        self, event_id: str
    ) -> Result[list[NotificationAttempt], EmergencyError]:
        try:
            return Result.ok(await self.store.list_attempts(event_id))
        except StoreError:
            return Result.err(
                EmergencyError(
                    "Failed to fetch notification attempts", EmergencyErrorCode.DATABASE_ERROR
                )
            )

    async def _build_content(self, event: EmergencyEvent) -> NotificationContent:
        try:
            patient = await self.store.get_patient(event.patient_id)
        except StoreError as e:
            raise EmergencyError(
                "Failed to load patient information",
                EmergencyErrorCode.DATABASE_ERROR,
                {"original_error": str(e)},
            ) from e
        if patient is None:
            raise EmergencyError(
                "Patient information not found", EmergencyErrorCode.INVALID_PATIENT_ID
            )

        vitals: VitalsSnapshot | None = None
        try:
            vitals = await self.store.get_latest_vitals(event.patient_id)
        except StoreError as e:
            self.logger.warning("vitals_unavailable", patient_id=event.patient_id, error=str(e))

        return build_notification_content(event, patient, vitals, self.config.emergency_number)

    async def _log_attempt(
        self, event_id: str, channel: NotificationChannel, address: str
    ) -> str | None:
        attempt = NotificationAttempt(
            event_id=event_id,
            channel=channel,
            recipient_address=address,
            status=NotificationStatus.PENDING,
            created_at=self.clock(),
        )
        try:
            stored = await self.store.insert_attempt(attempt)
        except StoreError as e:
            # Delivery still goes ahead without its audit row
            self.logger.error("notification_attempt_log_failed", event_id=event_id, error=str(e))
            return None
        return stored.id

    async def _deliver(self, sender: ChannelSender, message: TransportMessage) -> TransportReceipt:
        try:
            return await sender.send(message)
        except Exception as e:
            self.logger.exception(
                "transport_raised", provider=getattr(sender, "provider_name", "unknown")
            )
            return TransportReceipt(success=False, error=f"Transport error: {e}")

    async def _finish_attempt(self, attempt_id: str | None, result: NotificationResult) -> None:
        if attempt_id is None:
            return
        try:
            await self.store.update_attempt(
                attempt_id,
                status=NotificationStatus.SENT if result.success else NotificationStatus.FAILED,
                message_id=result.message_id,
                error_message=result.error,
                sent_at=result.delivered_at,
            )
        except StoreError as e:
            # The notification may already be delivered; report it regardless
            self.logger.error(
                "notification_attempt_update_failed", attempt_id=attempt_id, error=str(e)
            )

    @staticmethod
    def _failure(
        requested: NotificationChannel | str, recipient: str, error: EmergencyError
    ) -> NotificationResult:
        return NotificationResult(
            success=False,
            channel=requested,
            recipient=recipient,
            error=error.message,
            error_code=error.code,
        )
