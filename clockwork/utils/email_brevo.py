import aiohttp
from pathlib import Path
from typing import Any, Dict, Optional
import logging

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy.ext.asyncio import AsyncSession

from clockwork.config.settings import settings
from clockwork.models.notification import Notification

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

# Subject line per template; the body lives in templates/email/<name>.html
EMAIL_SUBJECTS = {
    "limit_reached": "Client Limit Reached - Upgrade to Continue Growing",
    "approaching_limit": "You're at {percent_used}% of your client limit",
    "pending_archive": "Action Required: Inactive Clients Will Be Archived",
    "trial_ending": "Your ClockWork trial ends soon",
    "invoice_overdue": "Invoice {invoice_number} is overdue",
    "payment_failed": "Payment failed - update your payment method",
    "cancellation": "Your subscription will end on {cancel_date}",
    "subscription_canceled": "We'd love to have you back",
}


class BrevoEmailService:
    def __init__(self):
        self.api_key = settings.brevo_api_key
        self.base_url = "https://api.brevo.com/v3"
        self.templates = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )

        if not self.api_key:
            logger.warning("BREVO_API_KEY not configured - email sending will fail")

    def render(self, template: str, context: Dict[str, Any]) -> Dict[str, str]:
        """Render subject and HTML body for a template"""
        if template not in EMAIL_SUBJECTS:
            raise ValueError(f"Unknown email template: {template}")
        context = {"app_url": settings.app_url, "upgrade_url": settings.upgrade_url, **context}
        subject = EMAIL_SUBJECTS[template].format(**context)
        html = self.templates.get_template(f"{template}.html").render(**context)
        return {"subject": subject, "html": html}

    async def send_template_email(
        self,
        to_email: str,
        template: str,
        context: Dict[str, Any],
        to_name: Optional[str] = None,
        db: Optional[AsyncSession] = None,
        account_id=None,
    ) -> bool:
        """Send a templated email using Brevo API

        Args:
            to_email: Recipient email address
            template: Template name (see EMAIL_SUBJECTS)
            context: Template variables
            to_name: Recipient name (optional)
            db: When given, a Notification row is added to this session
            account_id: Account the notification belongs to

        Returns:
            bool: True if email sent successfully, False otherwise
        """
        rendered = self.render(template, context)
        recipient_name = to_name or to_email.split('@')[0]
        message_id = None
        error_message = None
        success = False

        try:
            if not self.api_key:
                error_message = "BREVO_API_KEY not configured"
                logger.error(f"Cannot send email - {error_message}")
            else:
                url = f"{self.base_url}/smtp/email"

                headers = {
                    "accept": "application/json",
                    "content-type": "application/json",
                    "api-key": self.api_key
                }

                data = {
                    "sender": {
                        "name": settings.email_sender_name,
                        "email": settings.email_sender_address
                    },
                    "to": [{"email": to_email, "name": recipient_name}],
                    "subject": rendered["subject"],
                    "htmlContent": rendered["html"]
                }

                logger.info(f"Sending {template} email to {to_email}")

                async with aiohttp.ClientSession() as session:
                    async with session.post(url, json=data, headers=headers) as response:
                        response_text = await response.text()

                        if response.status == 201:
                            body = await response.json(content_type=None)
                            message_id = body.get("messageId") if isinstance(body, dict) else None
                            success = True
                            logger.info(f"{template} email successfully sent to {to_email}")
                        else:
                            error_message = f"Status: {response.status}, Response: {response_text}"
                            logger.error(f"Failed to send {template} email to {to_email}. {error_message}")

        except aiohttp.ClientError as e:
            error_message = str(e)
            logger.error(f"Email send error for {to_email}: {e}", exc_info=True)

        if db is not None:
            db.add(Notification(
                account_id=account_id,
                template=template,
                recipient=to_email,
                provider_msg_id=message_id,
                success=success,
                error_message=error_message,
            ))

        return success


# Create singleton instance
email_service = BrevoEmailService()
