# trilled/api/twiml.py
"""
Voice webhooks: Twilio asks these endpoints what to do next on a call.

Every endpoint answers with TwiML, including on failure, so the caller
hears a message instead of Twilio's generic application error.
"""
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.core.config import settings
from trilled.db.database import get_db
from trilled.services import twiml_builder
from trilled.services.telephony_service import telephony_service

router = APIRouter(prefix="/twiml", tags=["twiml"])
logger = logging.getLogger(__name__)

RETRY_STATUSES = ("no-answer", "busy", "failed")


def twiml_response(content: str, status_code: int = 200) -> Response:
    return Response(content=content, media_type="text/xml", status_code=status_code)


async def _params(request: Request) -> dict:
    """Query string merged with the form body; form values win."""
    params = dict(request.query_params)
    form_data = await request.form()
    params.update({key: value for key, value in form_data.items() if value not in (None, "")})
    return params


@router.post("/inbound")
async def inbound_call(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """Route a call to one of our numbers, either a user's direct line or a group line."""
    try:
        form_data = await request.form()
        to_number = form_data.get("To")
        from_number = form_data.get("From")
        logger.info(f"📞 Inbound call from {from_number} to {to_number}")

        user = await telephony_service.find_user_by_twilio_phone(db, to_number)
        if user:
            phone_status = await telephony_service.get_phone_status(db, user.id)
            logger.info(f"📞 Routing to user {user.id} ({phone_status})")
            return twiml_response(twiml_builder.dial_user(str(user.id), phone_status, to_number, from_number))

        group = await telephony_service.find_group_by_twilio_phone(db, to_number)
        if group:
            members = await telephony_service.get_group_members(db, group.id)
            if not members:
                return twiml_response(twiml_builder.say_only(twiml_builder.NO_GROUP_MEMBERS_MESSAGE))

            available = await telephony_service.get_available_members(db, members)
            logger.info(f"📞 Routing to group {group.name}: {len(available)}/{len(members)} members available")
            return twiml_response(twiml_builder.dial_group([member.id for member in available], from_number))

        logger.warning(f"⚠️  No user or group owns {to_number}")
        return twiml_response(twiml_builder.say_only(twiml_builder.UNKNOWN_DESTINATION_MESSAGE))

    except Exception as e:
        logger.error(f"❌ Error routing inbound call: {e}")
        return twiml_response(twiml_builder.say_only(twiml_builder.TECHNICAL_DIFFICULTIES_MESSAGE))


@router.get("/outbound")
async def outbound_call(to: Optional[str] = None):
    return twiml_response(twiml_builder.outbound_call(to, settings.TWILIO_PHONE_NUMBER))


@router.post("/handle-input")
async def handle_input(request: Request):
    form_data = await request.form()
    digits = form_data.get("Digits")
    return twiml_response(twiml_builder.menu_selection(digits, settings.OPERATOR_PHONE_NUMBER))


@router.post("/handle-recording")
async def handle_recording():
    return twiml_response(twiml_builder.recording_complete())


@router.post("/handle-group-dial-status")
async def handle_group_dial_status(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """After ringing a whole group: finish, or fall back to calling members one by one."""
    try:
        params = await _params(request)
        dial_status = params.get("DialCallStatus")
        call_sid = params.get("CallSid")
        group_id = params.get("groupId")
        from_number = params.get("fromNumber")
        group_number = params.get("calledNumber")

        if dial_status == "completed":
            if call_sid:
                await telephony_service.update_call_status(db, call_sid, "in-progress")
            return twiml_response(twiml_builder.hangup_response())

        if dial_status in RETRY_STATUSES:
            if not (group_id and call_sid and from_number):
                return twiml_response(twiml_builder.say_only(
                    "An error occurred while transferring your call. Please try again later."
                ))
            await telephony_service.update_call_status(db, call_sid, "redirecting-to-sequential")
            logger.info(f"📞 Group dial {dial_status} for {call_sid}, trying members in turn")
            return twiml_response(
                twiml_builder.redirect_to_sequential(group_id, call_sid, from_number, group_number)
            )

        return twiml_response(twiml_builder.say_only("An unexpected error occurred. Please try again.", hangup=True))

    except Exception as e:
        logger.error(f"❌ Error handling group dial status: {e}")
        return twiml_response(twiml_builder.say_only("An internal server error occurred."), status_code=500)


@router.post("/sequential-dial")
async def sequential_dial(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """Dial group members' phones one at a time, advancing dialIndex on every unanswered attempt."""
    error_message = "An error occurred while attempting to connect your call."
    try:
        params = await _params(request)
        if params.get("DialCallStatus") == "completed":
            return twiml_response(twiml_builder.hangup_response())

        group_id = params.get("groupId")
        if not group_id:
            logger.error("❌ Sequential dial requested without groupId")
            return twiml_response(twiml_builder.say_only(error_message), status_code=500)

        dial_index = int(params.get("dialIndex") or 0)
        members = await telephony_service.get_group_members(db, UUID(group_id))
        if not members:
            return twiml_response(twiml_builder.say_only(
                "There are no members configured for this group.", hangup=True
            ))

        phones = [member.phone for member in members if member.phone]
        if not phones:
            return twiml_response(twiml_builder.say_only("No valid users found in this group.", hangup=True))

        logger.info(f"📞 Sequential dial for group {group_id}: attempt {dial_index + 1} of {len(phones)}")
        return twiml_response(twiml_builder.sequential_attempt(
            phones,
            dial_index,
            group_id,
            params.get("callSid") or params.get("CallSid") or "",
            params.get("fromNumber") or "",
            params.get("groupNumber"),
            first_attempt=dial_index == 0
        ))

    except Exception as e:
        logger.error(f"❌ Error in sequential dial: {e}")
        return twiml_response(twiml_builder.say_only(error_message), status_code=500)
