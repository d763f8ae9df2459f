"""Email senders for the Resend and SendGrid HTTP APIs."""

import httpx

from escalation.adapters.transports.base import HttpSender, is_valid_email
from escalation.domain.models import TransportMessage, TransportReceipt


class _EmailSender(HttpSender):
    def __init__(
        self,
        api_key: str,
        from_address: str,
        from_name: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        super().__init__(client, timeout_seconds)
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name

    def _precheck(self, message: TransportMessage) -> TransportReceipt | None:
        if not message.subject or not (message.html_body or message.text_body):
            return TransportReceipt(success=False, error="Missing required fields: subject, body")
        if not is_valid_email(message.recipient):
            return TransportReceipt(success=False, error="Invalid email address format")
        return None


class ResendEmailSender(_EmailSender):
    provider_name = "resend"
    url = "https://api.resend.com/emails"

    async def send(self, message: TransportMessage) -> TransportReceipt:
        rejected = self._precheck(message)
        if rejected:
            return rejected

        response = await self._post(
            self.url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from": f"{self.from_name} <{self.from_address}>",
                "to": [message.recipient],
                "subject": message.subject,
                "html": message.html_body,
                "text": message.text_body,
            },
        )
        if isinstance(response, TransportReceipt):
            return response

        data = self._json(response)
        if response.is_success:
            return TransportReceipt(success=True, message_id=data.get("id") or "email-sent")
        self.logger.warning("provider_rejected", status_code=response.status_code)
        return TransportReceipt(
            success=False,
            error=f"Email delivery failed: {data.get('message') or 'Email sending failed'}",
        )


class SendGridEmailSender(_EmailSender):
    provider_name = "sendgrid"
    url = "https://api.sendgrid.com/v3/mail/send"

    async def send(self, message: TransportMessage) -> TransportReceipt:
        rejected = self._precheck(message)
        if rejected:
            return rejected

        content = [{"type": "text/plain", "value": message.text_body}]
        if message.html_body:
            content.append({"type": "text/html", "value": message.html_body})

        response = await self._post(
            self.url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "personalizations": [
                    {"to": [{"email": message.recipient}], "subject": message.subject}
                ],
                "from": {"email": self.from_address, "name": self.from_name},
                "content": content,
            },
        )
        if isinstance(response, TransportReceipt):
            return response

        if response.is_success:
            # 202 with an empty body; the id travels in a header
            return TransportReceipt(
                success=True, message_id=response.headers.get("x-message-id") or "sendgrid-sent"
            )
        errors = self._json(response).get("errors") or [{}]
        self.logger.warning("provider_rejected", status_code=response.status_code)
        return TransportReceipt(
            success=False,
            error=f"Email delivery failed: {errors[0].get('message') or 'Email sending failed'}",
        )
