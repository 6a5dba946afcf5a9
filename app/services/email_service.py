"""Email delivery via SendGrid."""

import asyncio
import logging
from typing import Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from app.core.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    """Thin SendGrid wrapper. Disabled (log only) when no API key is configured."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.SENDGRID_API_KEY
        self.from_email = settings.SENDGRID_FROM_EMAIL
        self.from_name = settings.SENDGRID_FROM_NAME

        if not self.api_key:
            logger.warning("SENDGRID_API_KEY not configured. Emails will not be sent.")
            self.client = None
            self.enabled = False
        else:
            self.client = SendGridAPIClient(self.api_key)
            self.enabled = True
            logger.info("Email service initialized successfully")

    async def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        plain_body: Optional[str] = None,
    ) -> bool:
        """Send one email. Returns True on a 2xx from SendGrid."""
        if not self.enabled:
            logger.info("Email service disabled. Would have sent to %s: %s", to, subject)
            return False

        message = Mail(
            from_email=(self.from_email, self.from_name),
            to_emails=to,
            subject=subject,
            html_content=html_body,
        )
        if plain_body:
            message.plain_text_content = plain_body

        # SendGrid's client is blocking
        response = await asyncio.to_thread(self.client.send, message)
        if 200 <= response.status_code < 300:
            logger.info("Email sent to %s: %s", to, subject)
            return True

        logger.error("Failed to send email to %s: %s %s", to, response.status_code, response.body)
        return False

    async def send_booking_update(self, to: str, subject: str, lines: list[str]) -> bool:
        html_items = "".join(f"<p>{line}</p>" for line in lines)
        html_body = f"""
        <html>
            <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
                <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
                    <h2 style="color: #4A90E2;">{subject}</h2>
                    {html_items}
                    <p style="color: #666; font-size: 14px; margin-top: 40px;">{self.from_name}</p>
                </div>
            </body>
        </html>
        """
        return await self.send_email(to, subject, html_body, "\n".join(lines))
