# trilled/api/integrations.py
import html
import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.api.auth import app_url
from trilled.auth.auth import get_current_active_user, get_optional_user
from trilled.db.database import get_db
from trilled.models.models import (
    Communication, CommunicationDirection, CommunicationType, EmailIntegration, EmailProvider, User
)
from trilled.schemas.schemas import EmailSendRequest, EmailIntegrationResponse
from trilled.services.email_integration_service import (
    email_integration_service, reconnect_message, has_line_break, EmailProviderError
)

router = APIRouter(tags=["integrations"])
logger = logging.getLogger(__name__)

INTEGRATIONS_PAGE = "/settings/integrations"

TEST_EMAIL_SUBJECT = "Test Email from Trilled CRM"
TEST_EMAIL_BODY = """
<h1>Test Email</h1>
<p>This is a test email sent from your Trilled CRM Outlook integration.</p>
<p>If you're seeing this, the integration is working correctly!</p>
<p>Sent at: {sent_at}</p>
"""


def outlook_error_page(message: str) -> HTMLResponse:
    content = f"""<html><body>
<h1>Error connecting to Outlook</h1>
<p>Error: {html.escape(message)}</p>
<p>Time: {datetime.now(timezone.utc).isoformat()}</p>
<p>Please contact support with this information.</p>
<p><a href="{INTEGRATIONS_PAGE}">Return to Integrations</a></p>
</body></html>"""
    return HTMLResponse(content=content, status_code=500)


@router.get("/auth/gmail/authorize")
async def gmail_authorize(current_user: User = Depends(get_current_active_user)):
    try:
        return {"url": email_integration_service.get_gmail_auth_url()}
    except ValueError as e:
        logger.error(f"❌ Gmail authorize failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/auth/outlook/authorize")
async def outlook_authorize(current_user: User = Depends(get_current_active_user)):
    try:
        return {"url": email_integration_service.get_outlook_auth_url()}
    except ValueError as e:
        logger.error(f"❌ Outlook authorize failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/auth/callback/google")
async def google_callback(
    code: Optional[str] = None,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    """Google redirects the browser here after consent; the session cookie identifies the user."""
    try:
        if current_user is None:
            raise EmailProviderError("Not authenticated")
        if not code:
            raise EmailProviderError("No code provided")

        tokens = await email_integration_service.exchange_google_code(code)
        email = await email_integration_service.get_google_email(tokens["access_token"])
        await email_integration_service.save_integration(
            db, current_user.id, EmailProvider.GMAIL.value, email, tokens
        )
    except (EmailProviderError, KeyError) as e:
        logger.error(f"❌ Gmail OAuth callback error: {e}")
        return RedirectResponse(app_url(INTEGRATIONS_PAGE, {"error": "Failed to connect Gmail"}), status_code=302)

    return RedirectResponse(app_url(INTEGRATIONS_PAGE), status_code=302)


@router.get("/auth/callback/microsoft")
async def microsoft_callback(
    code: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    try:
        if error:
            raise EmailProviderError(f"OAuth error: {error} - {error_description or ''}".strip())
        if not code:
            raise EmailProviderError("No code provided")
        if current_user is None:
            raise EmailProviderError("Not authenticated")

        tokens = await email_integration_service.exchange_microsoft_code(code)
        email = await email_integration_service.get_microsoft_email(tokens["access_token"])
        await email_integration_service.save_integration(
            db, current_user.id, EmailProvider.OUTLOOK.value, email, tokens
        )
    except (EmailProviderError, KeyError) as e:
        logger.error(f"❌ Outlook OAuth callback error: {e}")
        return outlook_error_page(str(e))

    return RedirectResponse(app_url(INTEGRATIONS_PAGE, {"success": "connected"}), status_code=302)


def _provider_failure(e: Exception) -> HTTPException:
    message = reconnect_message(e)
    if message:
        return HTTPException(status_code=401, detail=message)
    return HTTPException(status_code=500, detail=str(e) or "Failed to send email")


@router.post("/email/send")
async def send_email(
    request: EmailSendRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Send mail from the caller's connected mailbox and log it on the recipient's timeline."""
    missing = [field for field in ("to", "subject", "content") if not getattr(request, field)]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")
    if has_line_break(request.to) or has_line_break(request.subject):
        raise HTTPException(status_code=400, detail="Recipient and subject must be a single line")

    integration = await email_integration_service.get_latest_integration(db, current_user.id)
    if integration is None:
        raise HTTPException(
            status_code=400,
            detail="No email integration found. Please connect your email account in Settings."
        )

    try:
        result = await email_integration_service.send_email(
            db, integration, request.to, request.subject, request.content
        )
    except EmailProviderError as e:
        logger.error(f"❌ Error sending email for {current_user.email}: {e}")
        raise _provider_failure(e)

    if request.user_id:
        db.add(Communication(
            direction=CommunicationDirection.OUTBOUND.value,
            to_address=request.to,
            from_address=integration.email,
            delivered_at=datetime.now(timezone.utc),
            agent_id=current_user.id,
            user_id=request.user_id,
            content=request.content,
            communication_type=CommunicationType.EMAIL.value,
            communication_type_id=result.get("id")
        ))
        await db.commit()

    return result


@router.post("/email/test")
async def send_test_email(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    integration = await email_integration_service.get_latest_integration(
        db, current_user.id, EmailProvider.OUTLOOK.value
    )
    if integration is None:
        raise HTTPException(status_code=404, detail="No Outlook integration found")

    try:
        result = await email_integration_service.send_email(
            db,
            integration,
            integration.email,
            TEST_EMAIL_SUBJECT,
            TEST_EMAIL_BODY.format(sent_at=datetime.now(timezone.utc).isoformat())
        )
    except EmailProviderError as e:
        logger.error(f"❌ Error sending test email: {e}")
        raise _provider_failure(e)

    return {"success": True, "result": result}


@router.get("/integrations", response_model=List[EmailIntegrationResponse])
async def list_integrations(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(EmailIntegration).where(
            EmailIntegration.user_id == current_user.id,
            EmailIntegration.deleted_at.is_(None)
        ).order_by(EmailIntegration.created_at.desc())
    )
    return result.scalars().all()


@router.delete("/integrations/email/{integration_id}")
async def delete_integration(
    integration_id: UUID,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    integration = await db.get(EmailIntegration, integration_id)
    if integration is None or integration.deleted_at is not None or integration.user_id != current_user.id:
        raise HTTPException(status_code=404, detail="Integration not found")

    integration.deleted_at = datetime.now(timezone.utc)
    await db.commit()
    logger.info(f"🗑️  {integration.provider} integration {integration.email} removed for {current_user.email}")
    return {"message": "Integration removed successfully"}
