"""
Message transports for deposit notifications

BrevoEmailTransport delivers through the Brevo transactional email API. When no
API key is configured the engine falls back to ConsoleTransport, which writes the
notification to the log and always succeeds.
"""

import asyncio
import logging
from typing import Optional

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

from config import Config

logger = logging.getLogger(__name__)


class MessageTransport:
    """Delivery channel interface: deliver() reports success as a bool"""

    # Live transports talk to a rate-limited downstream and get paced sends
    is_live = False

    async def deliver(self, recipient: str, subject: str, body: str, html: Optional[str] = None) -> bool:
        raise NotImplementedError


class ConsoleTransport(MessageTransport):
    """No-op sink used when no email provider is configured"""

    is_live = False

    async def deliver(self, recipient: str, subject: str, body: str, html: Optional[str] = None) -> bool:
        banner = "=" * 50
        logger.info(
            f"\n{banner}\nNOTIFICATION SENT\n{banner}\n"
            f"Recipient: {recipient}\nSubject: {subject}\nMessage: {body}\n{banner}"
        )
        return True


class BrevoEmailTransport(MessageTransport):
    """Email delivery through Brevo (sib_api_v3_sdk)"""

    is_live = True

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None, from_name: Optional[str] = None):
        """Initialize email service with Brevo API"""
        api_key = api_key or Config.BREVO_API_KEY
        if not api_key:
            raise ValueError("BREVO_API_KEY is required for BrevoEmailTransport")

        self.from_email = from_email or Config.FROM_EMAIL
        self.from_name = from_name or Config.FROM_NAME

        configuration = sib_api_v3_sdk.Configuration()
        configuration.api_key["api-key"] = api_key
        self.api_client = sib_api_v3_sdk.ApiClient(configuration)
        self.transactional_emails_api = sib_api_v3_sdk.TransactionalEmailsApi(
            self.api_client
        )

    async def deliver(self, recipient: str, subject: str, body: str, html: Optional[str] = None) -> bool:
        """
        Send one transactional email

        Returns:
            bool: True if Brevo accepted the email, False otherwise
        """
        send_smtp_email = sib_api_v3_sdk.SendSmtpEmail(
            to=[sib_api_v3_sdk.SendSmtpEmailTo(email=recipient)],
            sender=sib_api_v3_sdk.SendSmtpEmailSender(
                email=self.from_email, name=self.from_name
            ),
            subject=subject,
            html_content=html or f"<p>{body}</p>",
            text_content=body,
            tags=["deposit", "notification"],
        )

        try:
            # The SDK is synchronous; keep the event loop free while it talks to Brevo
            api_response = await asyncio.to_thread(
                self.transactional_emails_api.send_transac_email, send_smtp_email
            )
            logger.info(f"✅ EMAIL_SENT: {recipient} - Message ID: {api_response.message_id}")
            return True
        except ApiException as e:
            logger.error(f"❌ EMAIL_FAILED: {recipient}: Brevo API error {e.status}: {e.reason}")
            return False


def build_transport() -> MessageTransport:
    """Pick the configured transport, falling back to the console sink"""
    if Config.BREVO_API_KEY:
        return BrevoEmailTransport()
    logger.info("Email configuration not found. Using console notifications.")
    return ConsoleTransport()
