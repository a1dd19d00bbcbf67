"""
SendGrid transactional email: account verification and invite links
"""
import logging
import re
from typing import Dict, Any, Optional
from urllib.parse import urlencode

from jinja2 import Environment, BaseLoader
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, From, To, Subject, PlainTextContent, HtmlContent

from trilled.core.config import settings

logger = logging.getLogger(__name__)

INVITE_TEMPLATE = {
    "subject": "You're invited to {{ app_name }}",
    "html_content": """
    <html>
    <body>
        <p>Hi {{ first_name or "there" }},</p>
        <p>{{ inviter_name }} has invited you to join {{ app_name }}.</p>
        <p><a href="{{ link }}">Accept your invitation</a></p>
        <p>This link expires in {{ expires_hours }} hours.</p>
    </body>
    </html>
    """
}

VERIFY_TEMPLATE = {
    "subject": "Confirm your {{ app_name }} account",
    "html_content": """
    <html>
    <body>
        <p>Hi {{ first_name or "there" }},</p>
        <p>Confirm your email address to finish setting up {{ app_name }}.</p>
        <p><a href="{{ link }}">Confirm email</a></p>
    </body>
    </html>
    """
}


class SendGridEmailService:
    """SendGrid email service with template support"""

    def __init__(self):
        self.api_key = settings.SENDGRID_API_KEY
        if not self.api_key:
            logger.warning("⚠️  SENDGRID_API_KEY not configured, transactional email runs in mock mode")
            self.client = None
        else:
            self.client = SendGridAPIClient(api_key=self.api_key)

        self.jinja_env = Environment(loader=BaseLoader(), autoescape=True)
        self.from_email = settings.SENDGRID_FROM_EMAIL
        self.from_name = settings.SENDGRID_FROM_NAME

    def is_configured(self) -> bool:
        return self.client is not None

    def render_template(self, template_content: str, variables: Dict[str, Any]) -> str:
        try:
            return self.jinja_env.from_string(template_content).render(**variables)
        except Exception as e:
            logger.error(f"Template rendering error: {str(e)}")
            raise ValueError(f"Template rendering failed: {str(e)}")

    @staticmethod
    def verification_link(code: str, link_type: str) -> str:
        """Link that lands on /auth/callback and exchanges the code for a session."""
        query = urlencode({"code": code, "type": link_type})
        return f"{settings.APP_URL.rstrip('/')}/auth/callback?{query}"

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> Dict[str, Any]:
        if not self.is_configured():
            logger.info(f"🧪 MOCK: email '{subject}' to {to_email} not sent")
            return {"success": False, "mock": True, "to_email": to_email, "subject": subject}

        try:
            mail = Mail()
            mail.from_email = From(email=self.from_email, name=self.from_name)
            mail.to = To(email=to_email)
            mail.subject = Subject(subject)
            mail.content = [
                PlainTextContent(text_content or self._html_to_text(html_content)),
                HtmlContent(html_content)
            ]

            response = self.client.send(mail)
            logger.info(f"📨 Email sent to {to_email}. Status: {response.status_code}")

            return {
                "success": True,
                "status_code": response.status_code,
                "message_id": response.headers.get('X-Message-Id'),
                "to_email": to_email,
                "subject": subject
            }

        except Exception as e:
            logger.error(f"❌ Failed to send email to {to_email}: {str(e)}")
            return {"success": False, "error": str(e), "to_email": to_email, "subject": subject}

    async def send_templated(self, template: Dict[str, str], to_email: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        variables = {"app_name": settings.PROJECT_NAME, "expires_hours": settings.AUTH_CODE_EXPIRE_HOURS, **variables}
        return await self.send_email(
            to_email=to_email,
            subject=self.render_template(template["subject"], variables),
            html_content=self.render_template(template["html_content"], variables)
        )

    async def send_invite_email(self, to_email: str, code: str, first_name: Optional[str], inviter_name: str) -> Dict[str, Any]:
        return await self.send_templated(INVITE_TEMPLATE, to_email, {
            "first_name": first_name,
            "inviter_name": inviter_name,
            "link": self.verification_link(code, "invite")
        })

    async def send_verification_email(self, to_email: str, code: str, first_name: Optional[str]) -> Dict[str, Any]:
        return await self.send_templated(VERIFY_TEMPLATE, to_email, {
            "first_name": first_name,
            "link": self.verification_link(code, "signup")
        })

    def _html_to_text(self, html_content: str) -> str:
        text = re.sub(r'<[^>]+>', '', html_content)
        return re.sub(r'\n\s*\n', '\n\n', text).strip()


# Global email service instance
email_service = SendGridEmailService()
