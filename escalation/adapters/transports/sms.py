"""SMS sender for the Twilio Messages API."""

import httpx

from escalation.adapters.transports.base import HttpSender, is_valid_phone, normalize_phone
from escalation.domain.models import TransportMessage, TransportReceipt


class TwilioSmsSender(HttpSender):
    provider_name = "twilio"
    url_template = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        super().__init__(client, timeout_seconds)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number

    async def send(self, message: TransportMessage) -> TransportReceipt:
        if not message.text_body:
            return TransportReceipt(success=False, error="Missing required fields: to, message")
        if not is_valid_phone(message.recipient):
            return TransportReceipt(success=False, error="Invalid phone number format")

        response = await self._post(
            self.url_template.format(sid=self.account_sid),
            auth=(self.account_sid, self.auth_token),
            data={
                "From": self.from_number,
                "To": normalize_phone(message.recipient),
                "Body": message.text_body,
            },
        )
        if isinstance(response, TransportReceipt):
            return response

        data = self._json(response)
        if response.is_success:
            return TransportReceipt(success=True, message_id=data.get("sid") or "sms-sent")
        self.logger.warning("provider_rejected", status_code=response.status_code)
        return TransportReceipt(
            success=False,
            error=f"SMS delivery failed: {data.get('message') or 'SMS sending failed'}",
        )
