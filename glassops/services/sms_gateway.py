"""
SMS gateway client.

Sends text messages through the messaging provider's REST API. When no
API key / sender is configured, messages are logged and not sent.
"""
import re
import httpx

from glassops.config import settings
from glassops.exceptions import TransientDependencyError
from glassops.logging_config import get_logger

log = get_logger(component="sms_gateway")

SERVICE_NAME = "sms"


def format_phone_number(phone: str) -> str:
    """
    Normalize a US phone number to E.164 (+1XXXXXXXXXX).

    Numbers that already start with '+' and do not match a US shape are kept.
    """
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    if (phone or "").startswith("+"):
        return phone
    return f"+{digits}"


class SmsGateway:
    """Outbound SMS over HTTPS."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        from_number: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.SMS_API_BASE_URL
        self.api_key = api_key if api_key is not None else settings.SMS_API_KEY
        self.from_number = from_number if from_number is not None else settings.SMS_FROM_NUMBER
        self.timeout = timeout or settings.SMS_TIMEOUT_SECONDS
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.from_number)

    async def send(self, to: str, text: str) -> str | None:
        """
        Send one message.

        Args:
            to: Recipient phone number, any common US format
            text: Message body

        Returns:
            Provider message id, or None when the gateway is not configured

        Raises:
            TransientDependencyError: timeout, non-2xx or network failure
        """
        recipient = format_phone_number(to)

        if not self.is_configured:
            log.info("sms_not_configured", to=recipient, preview=text[:50])
            return None

        url = f"{self.base_url.rstrip('/')}/messages"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    url,
                    json={"from": self.from_number, "to": [recipient], "content": text},
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.TimeoutException as exc:
            raise TransientDependencyError(
                f"SMS request timed out after {self.timeout}s", service=SERVICE_NAME
            ) from exc
        except httpx.RequestError as exc:
            raise TransientDependencyError(f"SMS network error: {exc}", service=SERVICE_NAME) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TransientDependencyError(
                f"SMS API error ({response.status_code}): {response.text[:200]}",
                service=SERVICE_NAME,
                dependency_status=response.status_code,
            )

        message_id = _message_id(response)
        log.info("sms_sent", to=recipient, message_id=message_id)
        return message_id


def _message_id(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict) or data.get("id") is None:
        return None
    return str(data["id"])
