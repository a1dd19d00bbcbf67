"""
Unit tests for call control, SMS and phone status endpoints.
"""
import json
import pytest
from unittest.mock import Mock, AsyncMock, patch
from uuid import uuid4

from fastapi import HTTPException
from sqlalchemy.exc import OperationalError
from twilio.base.exceptions import TwilioRestException

from trilled.db.database import get_db
from trilled.schemas.schemas import CallCreateRequest, CallSidRequest, SmsRequest, PhoneStatusUpdate
from trilled.services.telephony_service import TelephonyNotConfigured


@pytest.fixture
def telephony():
    with patch("trilled.api.calls.telephony_service") as service:
        service.record_outbound_call = AsyncMock()
        service.update_call_status = AsyncMock()
        service.assign_user_to_call = AsyncMock()
        service.get_phone_status = AsyncMock(return_value="available")
        service.set_phone_status = AsyncMock()
        service.process_status_callback = AsyncMock()
        yield service


class TestCreateCall:

    @pytest.mark.asyncio
    async def test_missing_parameters(self, mock_db_session, telephony):
        from trilled.api.calls import create_call

        with pytest.raises(HTTPException) as exc_info:
            await create_call(CallCreateRequest(to="+15550001"), current_user=None, db=mock_db_session)

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == "Missing required parameters"

    @pytest.mark.asyncio
    async def test_call_recorded_for_caller(self, mock_db_session, telephony, agent_user):
        from trilled.api.calls import create_call
        telephony.create_call.return_value = "CA123"

        response = await create_call(
            CallCreateRequest(**{"from": "+15550000", "to": "+15550001", "url": "https://crm.example.test/twiml"}),
            current_user=agent_user,
            db=mock_db_session
        )

        assert response == {"callSid": "CA123"}
        telephony.record_outbound_call.assert_awaited_once_with(
            mock_db_session, "CA123", from_number="+15550000", to_number="+15550001", from_user_id=agent_user.id
        )

    @pytest.mark.asyncio
    async def test_call_sid_returned_when_recording_fails(self, mock_db_session, telephony):
        from trilled.api.calls import create_call
        telephony.create_call.return_value = "CA456"
        telephony.record_outbound_call.side_effect = OperationalError("INSERT INTO calls", {}, Exception("connection lost"))

        response = await create_call(
            CallCreateRequest(**{"from": "+15550000", "to": "+15550001", "url": "https://crm.example.test/twiml"}),
            current_user=None,
            db=mock_db_session
        )

        assert response == {"callSid": "CA456"}
        mock_db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_twilio_not_configured(self, mock_db_session, telephony):
        from trilled.api.calls import create_call
        telephony.create_call.side_effect = TelephonyNotConfigured("Twilio not configured")

        with pytest.raises(HTTPException) as exc_info:
            await create_call(
                CallCreateRequest(**{"from": "+1", "to": "+2", "url": "https://x"}),
                current_user=None,
                db=mock_db_session
            )

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "Failed to create call"
        telephony.record_outbound_call.assert_not_awaited()


class TestHangup:

    @pytest.mark.asyncio
    async def test_call_sid_required(self, mock_db_session, telephony):
        from trilled.api.calls import hangup_call

        with pytest.raises(HTTPException) as exc_info:
            await hangup_call(CallSidRequest(), db=mock_db_session)

        assert exc_info.value.detail == "Call SID is required"

    @pytest.mark.asyncio
    async def test_hangup(self, mock_db_session, telephony):
        from trilled.api.calls import hangup_call
        telephony.hangup_call.return_value = "completed"

        response = await hangup_call(CallSidRequest(callSid="CA1"), db=mock_db_session)

        assert response == {"success": True, "message": "Call CA1 hangup initiated.", "status": "completed"}
        telephony.update_call_status.assert_awaited_once_with(mock_db_session, "CA1", "completed")

    @pytest.mark.asyncio
    async def test_twilio_error_passed_through(self, mock_db_session, telephony):
        from trilled.api.calls import hangup_call
        telephony.hangup_call.side_effect = TwilioRestException(
            404, "https://api.twilio.com/Calls/CA1.json", msg="The requested resource was not found", code=20404
        )

        response = await hangup_call(CallSidRequest(callSid="CA1"), db=mock_db_session)

        assert response.status_code == 404
        assert json.loads(response.body) == {
            "success": False, "message": "The requested resource was not found", "code": 20404
        }
        telephony.update_call_status.assert_not_awaited()


class TestAssignUser:

    @pytest.mark.asyncio
    async def test_requires_session(self, mock_db_session, telephony):
        from trilled.api.calls import assign_user_to_call

        with pytest.raises(HTTPException) as exc_info:
            await assign_user_to_call(CallSidRequest(callSid="CA1"), current_user=None, db=mock_db_session)

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_call_sid(self, mock_db_session, telephony, agent_user):
        from trilled.api.calls import assign_user_to_call

        with pytest.raises(HTTPException) as exc_info:
            await assign_user_to_call(CallSidRequest(), current_user=agent_user, db=mock_db_session)

        assert exc_info.value.detail == "Missing callSid parameter"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("call,message", [
        (Mock(), "User assigned successfully"),
        (None, "Assignment requested, but call record not found."),
    ])
    async def test_assignment(self, mock_db_session, telephony, agent_user, call, message):
        from trilled.api.calls import assign_user_to_call
        telephony.assign_user_to_call.return_value = call

        response = await assign_user_to_call(CallSidRequest(callSid="CA1"), current_user=agent_user, db=mock_db_session)

        assert response == {"success": True, "message": message}
        telephony.assign_user_to_call.assert_awaited_once_with(mock_db_session, "CA1", agent_user.id)


class TestSms:

    @pytest.mark.asyncio
    async def test_missing_parameters(self, mock_db_session, telephony, agent_user):
        from trilled.api.calls import send_sms

        with pytest.raises(HTTPException) as exc_info:
            await send_sms(SmsRequest(to="+15550001"), current_user=agent_user, db=mock_db_session)

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_sent_sms_logged(self, mock_db_session, telephony, agent_user):
        from trilled.api.calls import send_sms
        lead_id = uuid4()
        telephony.send_sms.return_value = {"success": True, "sid": "SM1", "status": "queued"}

        result = await send_sms(
            SmsRequest(**{"from": "+15550000", "to": "+15550001", "body": "Tour on Friday?", "userId": lead_id}),
            current_user=agent_user,
            db=mock_db_session
        )

        assert result["sid"] == "SM1"
        communication = mock_db_session.add.call_args[0][0]
        assert communication.direction == "outbound"
        assert communication.communication_type == "sms"
        assert communication.communication_type_id == "SM1"
        assert communication.agent_id == agent_user.id
        assert communication.user_id == lead_id
        assert communication.content == "Tour on Friday?"
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unsent_sms_not_logged(self, mock_db_session, telephony, agent_user):
        from trilled.api.calls import send_sms
        telephony.send_sms.return_value = {"success": False, "error": "Twilio not configured"}

        with pytest.raises(HTTPException) as exc_info:
            await send_sms(
                SmsRequest(**{"from": "+15550000", "to": "+15550001", "body": "Hi"}),
                current_user=agent_user,
                db=mock_db_session
            )

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "Twilio not configured"
        mock_db_session.add.assert_not_called()


class TestPhoneStatusEndpoints:

    @pytest.mark.asyncio
    async def test_get_status(self, mock_db_session, telephony, agent_user):
        from trilled.api.calls import get_phone_status

        assert await get_phone_status(current_user=agent_user, db=mock_db_session) == {"status": "available"}

    @pytest.mark.asyncio
    async def test_set_status(self, mock_db_session, telephony, agent_user):
        from trilled.api.calls import update_phone_status
        telephony.set_phone_status.return_value = Mock(status="away")

        response = await update_phone_status(
            PhoneStatusUpdate(status="away"), current_user=agent_user, db=mock_db_session
        )

        assert response == {"status": "away"}
        telephony.set_phone_status.assert_awaited_once_with(mock_db_session, agent_user.id, "away")

    @pytest.mark.asyncio
    async def test_token_unavailable(self, telephony, agent_user):
        from trilled.api.calls import get_twilio_token
        telephony.generate_access_token.side_effect = TelephonyNotConfigured("Twilio not configured")

        with pytest.raises(HTTPException) as exc_info:
            await get_twilio_token(current_user=agent_user)

        assert exc_info.value.status_code == 500


class TestStatusCallbackEndpoint:

    @pytest.fixture
    def db_override(self, mock_db_session):
        from trilled.main import app
        app.dependency_overrides[get_db] = lambda: mock_db_session
        yield mock_db_session
        app.dependency_overrides.clear()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/twilio/status", "/api/twiml/status"])
    async def test_form_forwarded(self, client, db_override, telephony, path):
        response = await client.post(path, data={"CallSid": "CA1", "CallStatus": "ringing"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/xml")
        assert "<Response" in response.text
        telephony.process_status_callback.assert_awaited_once_with(
            db_override, {"CallSid": "CA1", "CallStatus": "ringing"}
        )

    @pytest.mark.asyncio
    async def test_failure_still_acknowledged(self, client, db_override, telephony):
        telephony.process_status_callback.side_effect = RuntimeError("db down")

        response = await client.post("/api/twiml/status", data={"CallSid": "CA1"})

        assert response.status_code == 200
        db_override.rollback.assert_awaited_once()
