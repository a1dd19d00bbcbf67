# trilled/services/email_integration_service.py
"""
Gmail and Outlook mailbox integrations.

Users connect their own mailbox through OAuth; we keep the refresh token and
send mail on their behalf through the Gmail API or Microsoft Graph.
"""

import base64
import logging
from email import policy
from email.mime.text import MIMEText
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode
from uuid import UUID

import aiohttp
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.core.config import settings
from trilled.models.models import EmailIntegration, EmailProvider

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/userinfo.email",
]

MICROSOFT_AUTHORITY = "https://login.microsoftonline.com/organizations"
GRAPH_ME_URL = "https://graph.microsoft.com/v1.0/me"
GRAPH_SEND_URL = "https://graph.microsoft.com/v1.0/me/sendMail"
OUTLOOK_SCOPES = ["openid", "offline_access", "profile", "User.Read", "Mail.Read", "Mail.ReadWrite", "Mail.Send"]

# Refresh slightly before the provider's expiry
EXPIRY_MARGIN = timedelta(seconds=60)

RECONNECT_MESSAGES = (
    ("invalid_grant", "Email integration needs to be reconnected. Please go to Settings to reconnect your email account."),
    ("invalid_token", "Email integration token has expired. Please go to Settings to reconnect your email account."),
    ("token refresh", "Failed to refresh email token. Please reconnect your email account in Settings."),
)


class EmailProviderError(Exception):
    """A mailbox provider rejected a request; the message carries the provider's error body."""


def reconnect_message(error: Exception) -> Optional[str]:
    """User-facing reconnect prompt for credential failures, or None for other errors."""
    text = str(error)
    for marker, message in RECONNECT_MESSAGES:
        if marker in text:
            return message
    return None


def has_line_break(value: Optional[str]) -> bool:
    return bool(value) and ("\r" in value or "\n" in value)


def build_gmail_raw_message(to: str, sender: str, subject: str, content: str) -> str:
    """HTML MIME message, base64url encoded without padding as the Gmail API expects.

    Header values containing CR or LF raise ValueError. Non-ASCII subjects are RFC 2047 encoded.
    """
    if any(has_line_break(value) for value in (to, sender, subject)):
        raise ValueError("Email headers may not contain line breaks")

    message = MIMEText(content, "html", "utf-8", policy=policy.SMTP)
    message["To"] = to
    message["From"] = sender
    message["Subject"] = subject
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")


class EmailIntegrationService:
    """OAuth flows and sending for user mailboxes"""

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def get_gmail_auth_url(self) -> str:
        if settings.GOOGLE_CLIENT_ID == "NONE" or not settings.GOOGLE_REDIRECT_URI:
            raise ValueError("Google OAuth is not configured")
        params = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "redirect_uri": settings.GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": " ".join(GMAIL_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def get_outlook_auth_url(self) -> str:
        if settings.MICROSOFT_CLIENT_ID == "NONE" or not settings.MICROSOFT_REDIRECT_URI:
            raise ValueError("Microsoft OAuth is not configured")
        params = {
            "client_id": settings.MICROSOFT_CLIENT_ID,
            "redirect_uri": settings.MICROSOFT_REDIRECT_URI,
            "response_type": "code",
            "response_mode": "query",
            "scope": " ".join(OUTLOOK_SCOPES),
            "prompt": "consent",
        }
        return f"{MICROSOFT_AUTHORITY}/oauth2/v2.0/authorize?{urlencode(params)}"

    async def exchange_google_code(self, code: str) -> Dict[str, Any]:
        return await self._request("POST", GOOGLE_TOKEN_URL, data={
            "code": code,
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "redirect_uri": settings.GOOGLE_REDIRECT_URI,
            "grant_type": "authorization_code",
        })

    async def get_google_email(self, access_token: str) -> str:
        profile = await self._request("GET", GOOGLE_USERINFO_URL, headers=self._bearer(access_token))
        if not profile.get("email"):
            raise EmailProviderError("Google profile has no email address")
        return profile["email"]

    async def exchange_microsoft_code(self, code: str) -> Dict[str, Any]:
        tokens = await self._request("POST", f"{MICROSOFT_AUTHORITY}/oauth2/v2.0/token", data={
            "client_id": settings.MICROSOFT_CLIENT_ID,
            "client_secret": settings.MICROSOFT_CLIENT_SECRET,
            "code": code,
            "redirect_uri": settings.MICROSOFT_REDIRECT_URI,
            "grant_type": "authorization_code",
            "scope": " ".join(OUTLOOK_SCOPES),
        })
        if not tokens.get("refresh_token"):
            raise EmailProviderError("No refresh token received from Microsoft")
        return tokens

    async def get_microsoft_email(self, access_token: str) -> str:
        profile = await self._request("GET", GRAPH_ME_URL, headers=self._bearer(access_token))
        email = profile.get("mail") or profile.get("userPrincipalName")
        if not email:
            raise EmailProviderError("Microsoft profile has no email address")
        return email

    async def save_integration(
        self,
        db: AsyncSession,
        user_id: UUID,
        provider: str,
        email: str,
        tokens: Dict[str, Any]
    ) -> EmailIntegration:
        """Create or refresh the (user, provider, email) integration from a token response."""
        result = await db.execute(
            select(EmailIntegration).where(
                EmailIntegration.user_id == user_id,
                EmailIntegration.provider == provider,
                EmailIntegration.email == email
            )
        )
        integration = result.scalar_one_or_none()
        expires_at = self._expires_at(tokens)

        if integration is None:
            integration = EmailIntegration(
                user_id=user_id,
                provider=provider,
                email=email,
                refresh_token=tokens.get("refresh_token"),
                access_token=tokens.get("access_token"),
                token_expires_at=expires_at
            )
            db.add(integration)
        else:
            # Google only returns a refresh token on consent; keep the old one otherwise
            if tokens.get("refresh_token"):
                integration.refresh_token = tokens["refresh_token"]
            integration.access_token = tokens.get("access_token")
            integration.token_expires_at = expires_at
            integration.deleted_at = None

        await db.commit()
        await db.refresh(integration)
        logger.info(f"✅ {provider} integration saved for user {user_id}: {email}")
        return integration

    async def get_latest_integration(
        self,
        db: AsyncSession,
        user_id: UUID,
        provider: Optional[str] = None
    ) -> Optional[EmailIntegration]:
        query = select(EmailIntegration).where(
            EmailIntegration.user_id == user_id,
            EmailIntegration.deleted_at.is_(None)
        )
        if provider:
            query = query.where(EmailIntegration.provider == provider)
        result = await db.execute(query.order_by(EmailIntegration.created_at.desc()).limit(1))
        return result.scalars().first()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def refresh_access_token(self, integration: EmailIntegration) -> Tuple[str, Optional[datetime]]:
        if integration.provider == EmailProvider.GMAIL.value:
            url = GOOGLE_TOKEN_URL
            data = {
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "refresh_token": integration.refresh_token,
                "grant_type": "refresh_token",
            }
        elif integration.provider == EmailProvider.OUTLOOK.value:
            url = f"{MICROSOFT_AUTHORITY}/oauth2/v2.0/token"
            data = {
                "client_id": settings.MICROSOFT_CLIENT_ID,
                "client_secret": settings.MICROSOFT_CLIENT_SECRET,
                "refresh_token": integration.refresh_token,
                "grant_type": "refresh_token",
                "scope": " ".join(OUTLOOK_SCOPES),
            }
        else:
            raise EmailProviderError(f"Unsupported email provider: {integration.provider}")

        try:
            tokens = await self._request("POST", url, data=data)
        except EmailProviderError as e:
            raise EmailProviderError(f"token refresh failed: {e}") from e

        if not tokens.get("access_token"):
            raise EmailProviderError("token refresh returned no access token")
        return tokens["access_token"], self._expires_at(tokens)

    async def ensure_access_token(self, db: AsyncSession, integration: EmailIntegration) -> str:
        """Current access token, refreshed and persisted when missing or about to expire."""
        now = datetime.now(timezone.utc)
        if (
            integration.access_token
            and integration.token_expires_at
            and integration.token_expires_at - EXPIRY_MARGIN > now
        ):
            return integration.access_token

        logger.info(f"🔄 Refreshing {integration.provider} token for {integration.email}")
        access_token, expires_at = await self.refresh_access_token(integration)
        integration.access_token = access_token
        integration.token_expires_at = expires_at
        await db.commit()
        return access_token

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_email(
        self,
        db: AsyncSession,
        integration: EmailIntegration,
        to: str,
        subject: str,
        content: str
    ) -> Dict[str, Any]:
        if integration.provider not in (EmailProvider.GMAIL.value, EmailProvider.OUTLOOK.value):
            raise EmailProviderError(f"Unsupported email provider: {integration.provider}")

        access_token = await self.ensure_access_token(db, integration)

        if integration.provider == EmailProvider.GMAIL.value:
            raw = build_gmail_raw_message(to, integration.email, subject, content)
            result = await self._request(
                "POST", GMAIL_SEND_URL,
                headers=self._bearer(access_token),
                json={"raw": raw}
            )
            logger.info(f"📨 Gmail message sent from {integration.email} to {to}: {result.get('id')}")
            return {"success": True, "provider": integration.provider, "id": result.get("id")}

        await self._request(
            "POST", GRAPH_SEND_URL,
            headers=self._bearer(access_token),
            json={
                "message": {
                    "subject": subject,
                    "body": {"contentType": "HTML", "content": content},
                    "toRecipients": [{"emailAddress": {"address": to}}],
                },
                "saveToSentItems": True,
            }
        )
        logger.info(f"📨 Outlook message sent from {integration.email} to {to}")
        return {"success": True, "provider": integration.provider}

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    @staticmethod
    def _bearer(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    @staticmethod
    def _expires_at(tokens: Dict[str, Any]) -> Optional[datetime]:
        expires_in = tokens.get("expires_in")
        if not expires_in:
            return None
        return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=30)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, **kwargs) as response:
                    if 200 <= response.status < 300:
                        if response.status == 202 or response.content_length == 0:
                            return {}
                        return await response.json(content_type=None) or {}
                    error_text = await response.text()
                    logger.error(f"❌ {method} {url} failed: {response.status} - {error_text}")
                    raise EmailProviderError(f"{response.status}: {error_text}")
        except aiohttp.ClientError as e:
            raise EmailProviderError(f"Request to {url} failed: {e}") from e


# Global instance
email_integration_service = EmailIntegrationService()
