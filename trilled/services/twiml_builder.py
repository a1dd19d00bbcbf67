# trilled/services/twiml_builder.py
"""
TwiML documents returned to Twilio's voice webhooks.

Each builder returns the serialized XML so routers only wrap it in a
Response with the XML media type.
"""
from typing import Iterable, Optional
from urllib.parse import urlencode, quote

from twilio.twiml.voice_response import VoiceResponse

RECORDING_NOTICE = "This call may be recorded for quality assurance purposes."
CLIENT_STATUS_EVENTS = "initiated ringing answered completed"

UNAVAILABLE_MESSAGE = "The person you are trying to reach is currently unavailable. Please try again later."
AWAY_MESSAGE = "The person you are trying to reach is currently away. Your call will be connected."
NO_GROUP_MEMBERS_MESSAGE = "There are no members available in this group. Please try again later."
NO_ONE_AVAILABLE_MESSAGE = "No one is available to take your call right now. Please try again later."
UNKNOWN_DESTINATION_MESSAGE = "We could not find the group you are trying to reach. Please try again later."
TECHNICAL_DIFFICULTIES_MESSAGE = "We are experiencing technical difficulties. Please try again later."


def say_only(message: str, hangup: bool = False, **say_kwargs) -> str:
    response = VoiceResponse()
    response.say(message, **say_kwargs)
    if hangup:
        response.hangup()
    return str(response)


def empty_response() -> str:
    return str(VoiceResponse())


def hangup_response() -> str:
    response = VoiceResponse()
    response.hangup()
    return str(response)


def status_callback_url(from_number: Optional[str] = None) -> str:
    if from_number:
        return f"/api/twiml/status?fromNumber={quote(from_number, safe='')}"
    return "/api/twiml/status"


def dial_user(user_id: str, phone_status: str, to_number: str, from_number: str) -> str:
    """Route an inbound call to a single user's browser client based on their availability."""
    response = VoiceResponse()

    if phone_status == "offline":
        response.say(UNAVAILABLE_MESSAGE)
        return str(response)

    if phone_status == "away":
        response.say(AWAY_MESSAGE)
        dial = response.dial(
            answer_on_bridge=True,
            caller_id=to_number,
            timeout=30,
            action=status_callback_url()
        )
        dial.client(str(user_id))
        return str(response)

    callback = status_callback_url(from_number)
    response.say(RECORDING_NOTICE, voice="Polly.Amy", language="en-US")
    dial = response.dial(
        answer_on_bridge=True,
        caller_id=from_number,
        timeout=30,
        action=callback,
        method="POST"
    )
    dial.client(
        str(user_id),
        status_callback_event=CLIENT_STATUS_EVENTS,
        status_callback=callback,
        status_callback_method="POST"
    )
    return str(response)


def dial_group(user_ids: Iterable[str], from_number: str) -> str:
    """Ring every available member of a group at once; the first to answer takes the call."""
    user_ids = [str(user_id) for user_id in user_ids]
    if not user_ids:
        return say_only(NO_ONE_AVAILABLE_MESSAGE)

    callback = status_callback_url(from_number)
    response = VoiceResponse()
    response.say(RECORDING_NOTICE, voice="Polly.Amy", language="en-US")
    dial = response.dial(
        answer_on_bridge=True,
        caller_id=from_number,
        timeout=30,
        action=callback,
        method="POST"
    )
    for user_id in user_ids:
        dial.client(
            user_id,
            status_callback_event=CLIENT_STATUS_EVENTS,
            status_callback=callback,
            status_callback_method="POST"
        )
    return str(response)


def outbound_call(to: Optional[str], caller_id: Optional[str]) -> str:
    response = VoiceResponse()
    if not to:
        response.say("No number was provided to dial.", voice="Polly.Amy")
        return str(response)

    response.say("This call will be recorded for training purposes.", voice="Polly.Amy", language="en-GB")
    dial = response.dial(
        caller_id=caller_id,
        record="record-from-answer",
        action="/api/twilio/status",
        method="POST"
    )
    dial.number(to)
    return str(response)


def menu_selection(digits: Optional[str], operator_number: Optional[str]) -> str:
    response = VoiceResponse()
    if digits == "1":
        response.say("Please leave your message after the tone.")
        response.record(action="/api/twiml/handle-recording", method="POST", max_length=60)
    elif digits == "2" and operator_number:
        response.say("Please hold while we connect you to an operator.")
        response.dial(operator_number)
    else:
        response.say("Invalid option. Goodbye!")
        response.hangup()
    return str(response)


def recording_complete() -> str:
    return say_only("Thank you for your message. Goodbye.", hangup=True)


def sequential_dial_url(
    group_id: str,
    call_sid: str,
    from_number: str,
    dial_index: int,
    group_number: Optional[str]
) -> str:
    query = urlencode({
        "groupId": group_id,
        "callSid": call_sid,
        "fromNumber": from_number,
        "dialIndex": dial_index,
        "groupNumber": group_number or "",
    })
    return f"/api/twiml/sequential-dial?{query}"


def redirect_to_sequential(group_id: str, call_sid: str, from_number: str, group_number: Optional[str]) -> str:
    response = VoiceResponse()
    response.redirect(
        sequential_dial_url(group_id, call_sid, from_number, 0, group_number),
        method="POST"
    )
    return str(response)


def sequential_attempt(
    phones: list,
    dial_index: int,
    group_id: str,
    call_sid: str,
    from_number: str,
    group_number: Optional[str],
    first_attempt: bool
) -> str:
    """Dial one member phone; Twilio posts back to the next index when it is not answered."""
    if dial_index >= len(phones):
        return say_only(
            "Sorry, we attempted to reach all available numbers, but no one answered. Please try again later.",
            hangup=True
        )

    response = VoiceResponse()
    if first_attempt:
        response.say("Please wait while we try to connect you.")
    dial = response.dial(
        caller_id=from_number,
        timeout=15,
        action=sequential_dial_url(group_id, call_sid, from_number, dial_index + 1, group_number),
        method="POST"
    )
    dial.number(phones[dial_index])
    response.hangup()
    return str(response)
