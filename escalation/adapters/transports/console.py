"""Development sender: logs the message instead of delivering it."""

from uuid import uuid4

from escalation.domain.models import NotificationChannel, TransportMessage, TransportReceipt
from escalation.services.common import logger, mask_address


class ConsoleSender:
    """Stands in for a provider in development; keeps what it 'sent'."""

    provider_name = "console"

    def __init__(self, channel: NotificationChannel) -> None:
        self.channel = channel
        self.outbox: list[TransportMessage] = []
        self.logger = logger.bind(component="transport", provider=self.provider_name)

    async def send(self, message: TransportMessage) -> TransportReceipt:
        self.outbox.append(message)
        message_id = f"console-{self.channel.value}-{uuid4().hex[:12]}"
        self.logger.info(
            "console_message_sent",
            channel=self.channel.value,
            recipient=mask_address(message.recipient),
            subject=message.subject,
            message_id=message_id,
        )
        return TransportReceipt(success=True, message_id=message_id)
