"""
Tests for notification dispatch.

Covers:
- Channel strategy selection and rendering
- Attempt bookkeeping: one row per transport call, updated exactly once
- Pre-transport validation failures create no attempt row
- Transport failures reported as NETWORK_ERROR, never raised
"""

import pytest

from escalation.config import NotificationConfig
from escalation.domain.errors import EmergencyErrorCode
from escalation.domain.models import (
    EmergencyContact,
    EmergencyEvent,
    NotificationChannel,
    NotificationStatus,
    TransportReceipt,
    VitalsSnapshot,
)
from escalation.services.content import build_notification_content
from escalation.services.notifications import (
    EmailChannel,
    NotificationDispatcher,
    SmsChannel,
    validate_notification_channel,
)
from escalation.services.store import InMemoryEmergencyStore

from .doubles import JANE, START, FailingStore, FakeClock, RaisingSender, RecordingSender, seed

CONTACT = EmergencyContact(name="John Doe", email="john@example.com", phone="+15550199")


def make_event(store: InMemoryEmergencyStore, patient_id: str = "p1", **fields) -> EmergencyEvent:
    event = EmergencyEvent(
        patient_id=patient_id, triggered_by=patient_id, triggered_at=START, **fields
    )
    store.events[event.id] = event
    return event


class TestValidateNotificationChannel:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("email", NotificationChannel.EMAIL),
            ("sms", NotificationChannel.SMS),
            (NotificationChannel.SMS, NotificationChannel.SMS),
            ("pager", None),
            ("", None),
        ],
    )
    def test_closed_set(self, value, expected) -> None:
        assert validate_notification_channel(value) is expected


class TestSendEmergencyNotification:
    async def test_email_success(
        self,
        dispatcher: NotificationDispatcher,
        store: InMemoryEmergencyStore,
        email_sender: RecordingSender,
        clock: FakeClock,
    ) -> None:
        event = make_event(store)

        result = await dispatcher.send_emergency_notification(event, CONTACT)

        assert result.success
        assert result.channel is NotificationChannel.EMAIL
        assert result.recipient == "john@example.com"
        assert result.message_id == "msg-1"
        assert result.delivered_at == clock()
        assert result.error_code is None

        [message] = email_sender.sent
        assert message.subject == "🚨 Emergency Alert - Jane Doe"
        assert "does not contact emergency services (911)" in message.text_body
        assert message.html_body is not None

        [attempt] = store.attempts.values()
        assert attempt.id == result.attempt_id
        assert attempt.event_id == event.id
        assert attempt.status is NotificationStatus.SENT
        assert attempt.message_id == "msg-1"
        assert attempt.sent_at == clock()
        assert attempt.recipient_type is NotificationChannel.EMAIL

    async def test_sms_goes_to_phone(
        self,
        dispatcher: NotificationDispatcher,
        store: InMemoryEmergencyStore,
        sms_sender: RecordingSender,
        email_sender: RecordingSender,
    ) -> None:
        contact = CONTACT.model_copy(update={"preferred_channel": NotificationChannel.SMS})

        result = await dispatcher.send_emergency_notification(make_event(store), contact)

        assert result.success
        assert result.recipient == "+15550199"
        assert email_sender.sent == []
        assert sms_sender.sent[0].subject is None
        assert "Call emergency services if needed" in sms_sender.sent[0].text_body

    async def test_sms_without_phone_is_rejected_before_transport(
        self,
        dispatcher: NotificationDispatcher,
        store: InMemoryEmergencyStore,
        sms_sender: RecordingSender,
    ) -> None:
        contact = EmergencyContact(
            name="Jane Doe", email="jane@example.com", preferred_channel=NotificationChannel.SMS
        )

        result = await dispatcher.send_emergency_notification(make_event(store), contact)

        assert not result.success
        assert result.recipient == "unknown"
        assert result.error_code is EmergencyErrorCode.VALIDATION_ERROR
        assert sms_sender.sent == []
        assert store.attempts == {}

    async def test_unknown_channel_is_rejected(
        self, dispatcher: NotificationDispatcher, store: InMemoryEmergencyStore
    ) -> None:
        contact = EmergencyContact.model_construct(
            name="Jane Doe", email="jane@example.com", phone=None, preferred_channel="pager"
        )

        result = await dispatcher.send_emergency_notification(make_event(store), contact)

        assert result.error_code is EmergencyErrorCode.VALIDATION_ERROR
        assert result.channel == "pager"
        assert result.recipient == "unknown"
        assert "Invalid notification channel" in result.error
        assert store.attempts == {}

    async def test_transport_failure_is_recorded(
        self, store: InMemoryEmergencyStore, clock: FakeClock
    ) -> None:
        sender = RecordingSender(
            TransportReceipt(success=False, error="Email delivery failed: 500")
        )
        dispatcher = NotificationDispatcher(
            store, {NotificationChannel.EMAIL: sender}, clock=clock
        )

        result = await dispatcher.send_emergency_notification(make_event(store), CONTACT)

        assert not result.success
        assert result.error_code is EmergencyErrorCode.NETWORK_ERROR
        assert result.delivered_at is None
        [attempt] = store.attempts.values()
        assert attempt.status is NotificationStatus.FAILED
        assert attempt.error_message == "Email delivery failed: 500"
        assert attempt.sent_at is None

    async def test_raising_transport_becomes_failed_result(
        self, store: InMemoryEmergencyStore, clock: FakeClock
    ) -> None:
        dispatcher = NotificationDispatcher(
            store, {NotificationChannel.EMAIL: RaisingSender()}, clock=clock
        )

        result = await dispatcher.send_emergency_notification(make_event(store), CONTACT)

        assert not result.success
        assert result.error == "Transport error: socket closed"
        [attempt] = store.attempts.values()
        assert attempt.status is NotificationStatus.FAILED

    async def test_missing_sender_is_service_unavailable(
        self, store: InMemoryEmergencyStore, clock: FakeClock
    ) -> None:
        dispatcher = NotificationDispatcher(store, {}, clock=clock)

        result = await dispatcher.send_emergency_notification(make_event(store), CONTACT)

        assert result.error_code is EmergencyErrorCode.NOTIFICATION_SERVICE_UNAVAILABLE
        assert store.attempts == {}

    async def test_unknown_patient(
        self, dispatcher: NotificationDispatcher, store: InMemoryEmergencyStore
    ) -> None:
        result = await dispatcher.send_emergency_notification(make_event(store, "ghost"), CONTACT)

        assert result.error_code is EmergencyErrorCode.INVALID_PATIENT_ID
        assert result.recipient == "john@example.com"

    async def test_patient_lookup_failure(self, clock: FakeClock) -> None:
        store = seed(FailingStore("get_patient"))
        dispatcher = NotificationDispatcher(
            store, {NotificationChannel.EMAIL: RecordingSender()}, clock=clock
        )

        result = await dispatcher.send_emergency_notification(make_event(store), CONTACT)

        assert result.error_code is EmergencyErrorCode.DATABASE_ERROR

    async def test_attempt_log_failure_does_not_stop_delivery(self, clock: FakeClock) -> None:
        store = seed(FailingStore("insert_attempt"))
        sender = RecordingSender()
        dispatcher = NotificationDispatcher(store, {NotificationChannel.EMAIL: sender}, clock=clock)

        result = await dispatcher.send_emergency_notification(make_event(store), CONTACT)

        assert result.success
        assert result.attempt_id is None
        assert len(sender.sent) == 1

    async def test_vitals_lookup_failure_is_tolerated(self, clock: FakeClock) -> None:
        store = seed(FailingStore("get_latest_vitals"))
        dispatcher = NotificationDispatcher(
            store, {NotificationChannel.EMAIL: RecordingSender()}, clock=clock
        )

        result = await dispatcher.send_emergency_notification(make_event(store), CONTACT)

        assert result.success

    async def test_location_and_vitals_reach_the_message(
        self,
        dispatcher: NotificationDispatcher,
        store: InMemoryEmergencyStore,
        email_sender: RecordingSender,
    ) -> None:
        store.add_vitals("p1", VitalsSnapshot(heart_rate=118, oxygen_saturation=93))
        event = make_event(
            store, location_consented=True, location_lat=40.748817, location_lng=-73.985428
        )

        await dispatcher.send_emergency_notification(event, CONTACT)

        text = email_sender.sent[0].text_body
        assert "https://maps.google.com/?q=40.748817,-73.985428" in text
        assert "Heart Rate: 118 bpm" in text
        assert "Oxygen Saturation: 93%" in text

    async def test_each_call_creates_a_new_attempt(
        self, dispatcher: NotificationDispatcher, store: InMemoryEmergencyStore
    ) -> None:
        event = make_event(store)

        await dispatcher.send_emergency_notification(event, CONTACT)
        await dispatcher.send_emergency_notification(event, CONTACT)

        attempts = (await dispatcher.get_notification_attempts(event.id)).unwrap()
        assert len(attempts) == 2
        assert len({a.id for a in attempts}) == 2

    async def test_dispatcher_never_touches_event_status(
        self, dispatcher: NotificationDispatcher, store: InMemoryEmergencyStore
    ) -> None:
        event = make_event(store)

        await dispatcher.send_emergency_notification(event, CONTACT)

        assert store.events[event.id].status is event.status

    async def test_attempt_history_store_failure(self, clock: FakeClock) -> None:
        dispatcher = NotificationDispatcher(seed(FailingStore("list_attempts")), {}, clock=clock)

        result = await dispatcher.get_notification_attempts("e1")

        assert result.unwrap_err().code is EmergencyErrorCode.DATABASE_ERROR


class TestChannelStrategies:
    def test_email_and_sms_render_differently(self, store: InMemoryEmergencyStore) -> None:
        content = build_notification_content(make_event(store), JANE, None, "112")
        email = EmailChannel("Care Portal").render(content, "john@example.com")
        sms = SmsChannel("Care Portal", "112").render(content, "+15550199")

        assert email.subject and email.html_body
        assert "This message was sent by Care Portal" in email.html_body
        assert sms.html_body is None
        assert "This does not contact 112" in sms.text_body

    def test_config_drives_emergency_number(self, store: InMemoryEmergencyStore) -> None:
        dispatcher = NotificationDispatcher(store, {}, NotificationConfig(emergency_number="112"))

        assert dispatcher.strategies[NotificationChannel.SMS].emergency_number == "112"
