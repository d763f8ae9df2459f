"""
Notification content: what the emergency contact receives, per channel.

Every rendering carries the disclaimer that this system does not contact
emergency services.
"""

from html import escape

from escalation.domain.models import (
    EmergencyEvent,
    GeoLocation,
    NotificationContent,
    NotificationResult,
    PatientProfile,
    VitalsSnapshot,
)
from escalation.services.consent import maps_link

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S UTC"


def disclaimer(emergency_number: str) -> str:
    return (
        f"⚠️ IMPORTANT: This does not contact emergency services ({emergency_number}). "
        f"If this is a life-threatening emergency, please call {emergency_number} immediately."
    )


def build_notification_content(
    event: EmergencyEvent,
    patient: PatientProfile,
    vitals: VitalsSnapshot | None,
    emergency_number: str,
) -> NotificationContent:
    """Assemble channel-independent content from the event and its context."""
    location = None
    if event.has_location:
        location = GeoLocation(
            latitude=event.location_lat,  # type: ignore[arg-type]
            longitude=event.location_lng,  # type: ignore[arg-type]
            captured_at=event.triggered_at,
        )

    return NotificationContent(
        patient_name=patient.display_name,
        patient_contact=patient.contact_line,
        triggered_at=event.triggered_at,
        location=location,
        vitals=vitals if vitals is not None and not vitals.is_empty else None,
        disclaimer=disclaimer(emergency_number),
    )


def email_subject(content: NotificationContent) -> str:
    return f"🚨 Emergency Alert - {content.patient_name}"


def _vitals_lines(vitals: VitalsSnapshot) -> list[tuple[str, str]]:
    lines = []
    if vitals.heart_rate:
        lines.append(("Heart Rate", f"{vitals.heart_rate:g} bpm"))
    if vitals.blood_pressure:
        lines.append(("Blood Pressure", f"{vitals.blood_pressure} mmHg"))
    if vitals.temperature:
        lines.append(("Temperature", f"{vitals.temperature:g}°F"))
    if vitals.oxygen_saturation:
        lines.append(("Oxygen Saturation", f"{vitals.oxygen_saturation:g}%"))
    return lines


def _section(title: str, body: str) -> str:
    return (
        '<div style="background-color: white; padding: 15px; border-radius: 5px; margin: 15px 0;">'
        f'<h3 style="margin-top: 0; color: #333;">{title}</h3>{body}</div>'
    )


def format_email_html(content: NotificationContent, system_name: str) -> str:
    name = escape(content.patient_name)
    patient_block = (
        f"<p><strong>Name:</strong> {name}</p>"
        f"<p><strong>Contact:</strong> {escape(content.patient_contact)}</p>"
        f"<p><strong>Time:</strong> {content.triggered_at.strftime(TIMESTAMP_FORMAT)}</p>"
    )
    parts = [
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">',
        '<div style="background-color: #dc2626; color: white; padding: 20px; text-align: center;">',
        '<h1 style="margin: 0; font-size: 24px;">🚨 EMERGENCY ALERT</h1></div>',
        '<div style="padding: 20px; background-color: #f9f9f9;">',
        f'<h2 style="color: #dc2626; margin-top: 0;">Emergency Alert for {name}</h2>',
        _section("Patient Information", patient_block),
    ]

    if content.vitals:
        rows = "".join(
            f"<p><strong>{label}:</strong> {escape(value)}</p>"
            for label, value in _vitals_lines(content.vitals)
        )
        parts.append(_section("Latest Vital Signs", rows))

    if content.location:
        lat, lng = content.location.latitude, content.location.longitude
        parts.append(
            _section(
                "Location",
                f"<p><strong>Coordinates:</strong> {lat:.6f}, {lng:.6f}</p>"
                f'<p><a href="{maps_link(lat, lng)}" target="_blank" style="color: #2563eb;">'
                "View on Google Maps</a></p>",
            )
        )

    parts.extend(
        [
            '<div style="background-color: #fef3c7; border: 2px solid #f59e0b; padding: 15px; '
            'border-radius: 5px; margin: 20px 0;">',
            f'<p style="margin: 0; color: #92400e; font-weight: bold;">'
            f"{escape(content.disclaimer)}</p></div>",
            '<div style="text-align: center; margin-top: 20px; color: #666;">',
            f"<p>This message was sent by {escape(system_name)}</p></div>",
            "</div></div>",
        ]
    )
    return "\n".join(parts)


def format_text(content: NotificationContent, system_name: str) -> str:
    """Plain text rendering, used as the email text part."""
    lines = [
        "🚨 EMERGENCY ALERT",
        "",
        f"Patient: {content.patient_name}",
        f"Contact: {content.patient_contact}",
        f"Time: {content.triggered_at.strftime(TIMESTAMP_FORMAT)}",
        "",
    ]
    if content.vitals:
        lines.append("VITAL SIGNS:")
        lines.extend(f"{label}: {value}" for label, value in _vitals_lines(content.vitals))
        lines.append("")
    if content.location:
        lat, lng = content.location.latitude, content.location.longitude
        lines.extend(
            ["LOCATION:", f"{lat:.6f}, {lng:.6f}", f"Google Maps: {maps_link(lat, lng)}", ""]
        )
    lines.extend([content.disclaimer, "", f"- {system_name}"])
    return "\n".join(lines)


def format_sms(content: NotificationContent, system_name: str, emergency_number: str) -> str:
    """Single short text block for SMS."""
    lines = [
        f"🚨 EMERGENCY: {content.patient_name}",
        f"Time: {content.triggered_at.strftime(TIMESTAMP_FORMAT)}",
        f"Contact: {content.patient_contact}",
    ]
    if content.location:
        lines.append(
            f"Location: {maps_link(content.location.latitude, content.location.longitude)}"
        )
    lines.extend(
        [
            "",
            f"⚠️ This does not contact {emergency_number}. Call emergency services if needed.",
            f"- {system_name}",
        ]
    )
    return "\n".join(lines)


def caller_feedback(
    result: NotificationResult | None, contact_name: str | None, emergency_number: str
) -> str:
    """Message surfaced to the patient once dispatch has resolved.

    Any failure must tell the user to contact emergency services directly.
    """
    if result is not None and result.success:
        return (
            "Emergency notification sent successfully to "
            f"{contact_name or 'your emergency contact'}."
        )
    if result is not None and result.error:
        return (
            f"Failed to send emergency notification: {result.error}. "
            f"Please contact emergency services directly at {emergency_number}."
        )
    return (
        "Emergency event was recorded but notification may have failed. "
        f"Please contact emergency services directly at {emergency_number} if needed."
    )
