# trilled/api/calls.py
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.base.exceptions import TwilioException, TwilioRestException

from trilled.auth.auth import get_current_active_user, get_optional_user
from trilled.db.database import get_db
from trilled.models.models import (
    Communication, CommunicationDirection, CommunicationType, User
)
from trilled.schemas.schemas import CallCreateRequest, CallSidRequest, SmsRequest, PhoneStatusUpdate
from trilled.services import twiml_builder
from trilled.services.telephony_service import telephony_service, TelephonyNotConfigured

router = APIRouter(tags=["telephony"])
logger = logging.getLogger(__name__)


@router.post("/calls")
async def create_call(
    request: CallCreateRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    """Place an outbound call; Twilio fetches the call's TwiML from the given url."""
    if not all([request.from_, request.to, request.url]):
        raise HTTPException(status_code=400, detail="Missing required parameters")

    try:
        call_sid = telephony_service.create_call(request.from_, request.to, request.url)
    except (TelephonyNotConfigured, TwilioException) as e:
        logger.error(f"❌ Error creating call: {e}")
        raise HTTPException(status_code=500, detail="Failed to create call")

    # The call is already live; a failed insert must not hide its SID
    try:
        await telephony_service.record_outbound_call(
            db,
            call_sid,
            from_number=request.from_,
            to_number=request.to,
            from_user_id=current_user.id if current_user else None
        )
    except SQLAlchemyError as e:
        logger.error(f"❌ Failed to record outbound call {call_sid}: {e}")
        await db.rollback()
    return {"callSid": call_sid}


@router.post("/calls/hangup")
async def hangup_call(
    request: CallSidRequest,
    db: AsyncSession = Depends(get_db)
):
    if not request.call_sid:
        raise HTTPException(status_code=400, detail="Call SID is required")

    try:
        call_status = telephony_service.hangup_call(request.call_sid)
    except TwilioRestException as e:
        logger.error(f"❌ Twilio error hanging up {request.call_sid}: {e.msg}")
        return JSONResponse(
            status_code=e.status or 500,
            content={"success": False, "message": e.msg, "code": e.code}
        )
    except TelephonyNotConfigured as e:
        raise HTTPException(status_code=500, detail=str(e))

    await telephony_service.update_call_status(db, request.call_sid, "completed")

    return {
        "success": True,
        "message": f"Call {request.call_sid} hangup initiated.",
        "status": call_status
    }


@router.post("/calls/assign-user")
async def assign_user_to_call(
    request: CallSidRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    """Attribute an answered call to the agent whose browser client picked it up."""
    if current_user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not request.call_sid:
        raise HTTPException(status_code=400, detail="Missing callSid parameter")

    call = await telephony_service.assign_user_to_call(db, request.call_sid, current_user.id)
    if call is None:
        return {"success": True, "message": "Assignment requested, but call record not found."}

    logger.info(f"📞 Call {request.call_sid} assigned to {current_user.email}")
    return {"success": True, "message": "User assigned successfully"}


@router.post("/sms")
async def send_sms(
    request: SmsRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    if not all([request.from_, request.to, request.body]):
        raise HTTPException(status_code=400, detail="Missing required parameters")

    try:
        result = telephony_service.send_sms(request.to, request.body, from_=request.from_)
    except TwilioException as e:
        logger.error(f"❌ Error sending SMS to {request.to}: {e}")
        raise HTTPException(status_code=500, detail="Failed to send SMS")

    if not result["success"]:
        raise HTTPException(status_code=500, detail=result.get("error") or "Failed to send SMS")

    db.add(Communication(
        direction=CommunicationDirection.OUTBOUND.value,
        to_address=request.to,
        from_address=request.from_,
        delivered_at=datetime.now(timezone.utc),
        agent_id=current_user.id,
        user_id=request.user_id,
        content=request.body,
        communication_type=CommunicationType.SMS.value,
        communication_type_id=result.get("sid")
    ))
    await db.commit()

    return result


@router.post("/twilio/token")
async def get_twilio_token(current_user: User = Depends(get_current_active_user)):
    """Voice token for the browser client; its identity is the user id so inbound calls can target it."""
    try:
        token = telephony_service.generate_access_token(str(current_user.id))
    except TelephonyNotConfigured as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"token": token}


@router.get("/phone-status")
async def get_phone_status(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    phone_status = await telephony_service.get_phone_status(db, current_user.id)
    return {"status": phone_status}


@router.put("/phone-status")
async def update_phone_status(
    update_data: PhoneStatusUpdate,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    phone_status = await telephony_service.set_phone_status(db, current_user.id, update_data.status.value)
    logger.info(f"☎️  {current_user.email} is now {phone_status.status}")
    return {"status": phone_status.status}


@router.post("/twilio/status")
@router.post("/twiml/status")
async def call_status_callback(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """Status callback for every call leg. Twilio only needs an empty TwiML document back."""
    try:
        form_data = await request.form()
        await telephony_service.process_status_callback(db, dict(form_data))
    except Exception as e:
        logger.error(f"❌ Error handling call status callback: {e}")
        await db.rollback()

    return Response(content=twiml_builder.empty_response(), media_type="text/xml")
