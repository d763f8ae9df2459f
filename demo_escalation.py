"""
End-to-end demonstration of the emergency escalation flow.

This script walks through:
1. Configuration loading and validation
2. A successful emergency with location shared
3. A repeated trigger inside the rate limit window
4. A patient without an emergency contact
5. A declined location dialog
6. A failing transport with retry and a terminal failed status
7. Emergency history and the audit trail

Everything runs against an in-memory SQLite database and console transports.

Run with: uv run python demo_escalation.py
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from escalation.adapters.storage import SqlAlchemyEmergencyStore
from escalation.adapters.transports import ConsoleSender
from escalation.config import AppConfig, DatabaseConfig, LoggingConfig, NotificationConfig
from escalation.domain.models import (
    CallerIdentity,
    NotificationChannel,
    PatientProfile,
    TransportMessage,
    TransportReceipt,
    VitalsSnapshot,
)
from escalation.services.consent import StaticLocationProvider
from escalation.services.pipeline import EscalationOutcome, EscalationPipeline, build_pipeline

console = Console()

DEMO_USER_AGENT = "demo-escalation/1.0"


class FlakySmsSender:
    """SMS sender that fails a fixed number of times before delivering."""

    provider_name = "flaky-sms"

    def __init__(self, failures: int) -> None:
        self.remaining_failures = failures

    async def send(self, message: TransportMessage) -> TransportReceipt:
        if self.remaining_failures > 0:
            self.remaining_failures -= 1
            return TransportReceipt(success=False, error="SMS delivery failed: carrier unreachable")
        return TransportReceipt(success=True, message_id="flaky-sms-ok")


def seed(store: SqlAlchemyEmergencyStore) -> None:
    store.add_patient(
        PatientProfile(
            id="patient-jane",
            email="jane@example.com",
            full_name="Jane Doe",
            phone="+15550100",
            emergency_contact_name="John Doe",
            emergency_contact_email="john@example.com",
            emergency_contact_phone="+15550199",
        )
    )
    store.add_vitals(
        "patient-jane",
        VitalsSnapshot(
            heart_rate=118,
            blood_pressure_systolic=150,
            blood_pressure_diastolic=95,
            oxygen_saturation=93,
        ),
    )
    store.add_patient(
        PatientProfile(id="patient-alone", email="alone@example.com", full_name="Sam Alone")
    )
    store.add_patient(
        PatientProfile(
            id="patient-sms",
            email="ravi@example.com",
            full_name="Ravi Patel",
            emergency_contact_name="Priya Patel",
            emergency_contact_phone="+15550123",
            emergency_contact_channel=NotificationChannel.SMS,
        )
    )


def caller(user_id: str) -> CallerIdentity:
    return CallerIdentity(user_id=user_id, user_agent=DEMO_USER_AGENT)


def show_outcome(title: str, outcome: EscalationOutcome) -> None:
    table = Table(title=title)
    table.add_column("Step", style="cyan")
    table.add_column("Result", style="white")

    emergency = outcome.emergency
    table.add_row(
        "Trigger",
        "✅ event " + (emergency.event_id or "")
        if emergency.success
        else f"❌ {emergency.error.value if emergency.error else 'failed'}",
    )
    if outcome.consent is not None:
        fix = outcome.consent.location
        table.add_row(
            "Location",
            f"📍 {fix.latitude:.4f}, {fix.longitude:.4f}"
            if fix
            else f"🚫 {outcome.consent.error}",
        )
    for i, notification in enumerate(outcome.notifications, 1):
        table.add_row(
            f"Notification #{i}",
            f"✅ {getattr(notification.channel, 'value', notification.channel)} "
            f"{notification.message_id}"
            if notification.success
            else f"❌ {notification.error}",
        )
    if outcome.final_status is not None:
        table.add_row("Final status", outcome.final_status.value)
    table.add_row("User message", outcome.user_message)
    console.print(table)


async def demo_configuration() -> AppConfig | None:
    console.print(Panel("🔧 Configuration", style="blue"))
    try:
        config = AppConfig(
            database=DatabaseConfig(url="sqlite:///:memory:"),
            logging=LoggingConfig(level="WARNING", format="console"),
            notifications=NotificationConfig(max_attempts=3, retry_backoff_seconds=0.1),
        )
    except ValueError as e:
        console.print(f"❌ Configuration invalid: {e}", style="red")
        return None
    console.print(
        f"✅ Rate limit window {config.escalation.rate_limit_window_seconds:g}s, "
        f"email via {config.notifications.email_provider}, "
        f"sms via {config.notifications.sms_provider}",
        style="green",
    )
    return config


async def run_demo() -> None:
    console.print(Panel("🚨 Emergency Escalation - Demo", style="bold blue"))

    config = await demo_configuration()
    if config is None:
        return

    store = SqlAlchemyEmergencyStore.from_url(config.database.url)
    seed(store)
    pipeline: EscalationPipeline = build_pipeline(
        config,
        store=store,
        location_provider=StaticLocationProvider(40.748817, -73.985428, accuracy=12.0),
    )

    console.print(Panel("1️⃣  Emergency with location shared", style="blue"))
    outcome = await pipeline.run(caller("patient-jane"), "patient-jane", share_location=True)
    show_outcome("Jane triggers an emergency", outcome)

    email_sender = pipeline.dispatcher.senders[NotificationChannel.EMAIL]
    if isinstance(email_sender, ConsoleSender) and email_sender.outbox:
        console.print(Panel(email_sender.outbox[-1].text_body, title="Email text part"))

    console.print(Panel("2️⃣  Repeated trigger inside the window", style="blue"))
    outcome = await pipeline.run(caller("patient-jane"), "patient-jane")
    show_outcome("Jane triggers again", outcome)

    console.print(Panel("3️⃣  No emergency contact configured", style="blue"))
    outcome = await pipeline.run(caller("patient-alone"), "patient-alone")
    show_outcome("Sam triggers an emergency", outcome)

    console.print(Panel("4️⃣  Location declined, SMS contact, flaky carrier", style="blue"))
    pipeline.dispatcher.senders[NotificationChannel.SMS] = FlakySmsSender(failures=1)
    outcome = await pipeline.run(caller("patient-sms"), "patient-sms", share_location=False)
    show_outcome("Ravi triggers an emergency", outcome)

    console.print(Panel("5️⃣  Carrier down for every retry", style="blue"))
    pipeline.controller.config = pipeline.controller.config.model_copy(
        update={"rate_limit_window_seconds": 0.001}
    )
    await asyncio.sleep(0.01)
    pipeline.dispatcher.senders[NotificationChannel.SMS] = FlakySmsSender(failures=10)
    outcome = await pipeline.run(caller("patient-sms"), "patient-sms", share_location=False)
    show_outcome("Ravi triggers again after the window", outcome)

    console.print(Panel("📋 History and audit trail", style="bold"))
    history = await pipeline.controller.get_emergency_history(caller("patient-sms"), "patient-sms")
    table = Table(title="Ravi's emergency history")
    table.add_column("Event", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Attempts", style="white")
    for event in history.unwrap_or([]):
        attempts = await pipeline.dispatcher.get_notification_attempts(event.id)
        table.add_row(event.id[:8], event.status.value, str(len(attempts.unwrap_or([]))))
    console.print(table)

    consents = await pipeline.consent.get_consent_history(caller("patient-jane"), "patient-jane")
    for record in consents.unwrap_or([]):
        console.print(
            f"Consent {record.id[:8]} granted={record.granted} "
            f"source={record.metadata.get('source')}"
        )

    await pipeline.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        console.print("\n👋 Demo stopped by user", style="yellow")
