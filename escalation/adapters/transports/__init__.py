"""Channel senders and the factory that wires them from configuration."""

import httpx

from escalation.adapters.transports.console import ConsoleSender
from escalation.adapters.transports.email import ResendEmailSender, SendGridEmailSender
from escalation.adapters.transports.sms import TwilioSmsSender
from escalation.config import NotificationConfig
from escalation.domain.models import NotificationChannel
from escalation.services.notifications import ChannelSender


def build_senders(
    config: NotificationConfig, client: httpx.AsyncClient | None = None
) -> dict[NotificationChannel, ChannelSender]:
    """One sender per channel, chosen by the configured provider."""
    timeout = config.request_timeout_seconds
    senders: dict[NotificationChannel, ChannelSender] = {}

    if config.email_provider == "resend":
        senders[NotificationChannel.EMAIL] = ResendEmailSender(
            config.email_api_key or "",
            config.email_from_address,
            config.email_from_name,
            client=client,
            timeout_seconds=timeout,
        )
    elif config.email_provider == "sendgrid":
        senders[NotificationChannel.EMAIL] = SendGridEmailSender(
            config.email_api_key or "",
            config.email_from_address,
            config.email_from_name,
            client=client,
            timeout_seconds=timeout,
        )
    else:
        senders[NotificationChannel.EMAIL] = ConsoleSender(NotificationChannel.EMAIL)

    if config.sms_provider == "twilio":
        senders[NotificationChannel.SMS] = TwilioSmsSender(
            config.sms_account_sid or "",
            config.sms_auth_token or "",
            config.sms_from_number or "",
            client=client,
            timeout_seconds=timeout,
        )
    else:
        senders[NotificationChannel.SMS] = ConsoleSender(NotificationChannel.SMS)

    return senders


__all__ = [
    "ConsoleSender",
    "ResendEmailSender",
    "SendGridEmailSender",
    "TwilioSmsSender",
    "build_senders",
]
