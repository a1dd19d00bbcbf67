"""
Tests for TwiML documents and the voice webhook endpoints.
"""
import pytest
import xml.etree.ElementTree as ET
from unittest.mock import Mock, AsyncMock, patch
from uuid import uuid4

from trilled.db.database import get_db
from trilled.services import twiml_builder


def parse(xml):
    return ET.fromstring(xml)


class TestTwimlBuilder:

    def test_offline_user_hears_unavailable(self):
        root = parse(twiml_builder.dial_user("u1", "offline", "+15550001", "+15550002"))

        assert root.find("Say").text == twiml_builder.UNAVAILABLE_MESSAGE
        assert root.find("Dial") is None

    def test_away_user_rings_with_number_as_caller_id(self):
        root = parse(twiml_builder.dial_user("u1", "away", "+15550001", "+15550002"))

        assert root.find("Say").text == twiml_builder.AWAY_MESSAGE
        dial = root.find("Dial")
        assert dial.get("callerId") == "+15550001"
        assert dial.get("action") == "/api/twiml/status"
        assert dial.find("Client").text == "u1"

    def test_available_user_gets_recorded_notice_and_callbacks(self):
        root = parse(twiml_builder.dial_user("u1", "available", "+15550001", "+15550002"))

        assert root.find("Say").text == twiml_builder.RECORDING_NOTICE
        dial = root.find("Dial")
        assert dial.get("callerId") == "+15550002"
        assert dial.get("answerOnBridge") == "true"
        assert dial.get("timeout") == "30"
        assert dial.get("action") == "/api/twiml/status?fromNumber=%2B15550002"
        client = dial.find("Client")
        assert client.get("statusCallbackEvent") == "initiated ringing answered completed"

    def test_group_rings_every_member(self):
        root = parse(twiml_builder.dial_group(["a", "b", "c"], "+15550002"))

        assert [c.text for c in root.find("Dial").findall("Client")] == ["a", "b", "c"]

    def test_group_without_available_members(self):
        root = parse(twiml_builder.dial_group([], "+15550002"))

        assert root.find("Say").text == twiml_builder.NO_ONE_AVAILABLE_MESSAGE

    def test_outbound_records_from_answer(self):
        root = parse(twiml_builder.outbound_call("+15550003", "+15550000"))

        dial = root.find("Dial")
        assert dial.get("record") == "record-from-answer"
        assert dial.get("callerId") == "+15550000"
        assert dial.find("Number").text == "+15550003"

    def test_outbound_without_number(self):
        root = parse(twiml_builder.outbound_call(None, "+15550000"))

        assert root.find("Dial") is None
        assert root.find("Say").text == "No number was provided to dial."

    @pytest.mark.parametrize("digits,operator,expected", [
        ("1", None, "Record"),
        ("2", "+15559999", "Dial"),
        ("2", None, "Hangup"),
        ("9", "+15559999", "Hangup"),
    ])
    def test_menu_selection(self, digits, operator, expected):
        root = parse(twiml_builder.menu_selection(digits, operator))

        assert root.find(expected) is not None

    def test_sequential_attempt_points_to_next_index(self):
        root = parse(twiml_builder.sequential_attempt(
            ["+1111", "+2222"], 0, "g1", "CA1", "+15550002", "+15550001", first_attempt=True
        ))

        assert root.find("Say").text == "Please wait while we try to connect you."
        dial = root.find("Dial")
        assert dial.get("timeout") == "15"
        assert "dialIndex=1" in dial.get("action")
        assert "groupId=g1" in dial.get("action")
        assert dial.find("Number").text == "+1111"
        assert root.find("Hangup") is not None

    def test_sequential_attempt_exhausted(self):
        root = parse(twiml_builder.sequential_attempt(
            ["+1111"], 1, "g1", "CA1", "+15550002", None, first_attempt=False
        ))

        assert "no one answered" in root.find("Say").text
        assert root.find("Hangup") is not None

    def test_redirect_to_sequential_starts_at_zero(self):
        root = parse(twiml_builder.redirect_to_sequential("g1", "CA1", "+15550002", "+15550001"))

        redirect = root.find("Redirect")
        assert redirect.get("method") == "POST"
        assert redirect.text.startswith("/api/twiml/sequential-dial?")
        assert "dialIndex=0" in redirect.text


class TestTwimlEndpoints:

    @pytest.fixture
    def db_override(self, mock_db_session):
        from trilled.main import app
        app.dependency_overrides[get_db] = lambda: mock_db_session
        yield mock_db_session
        app.dependency_overrides.clear()

    @pytest.fixture
    def telephony(self):
        with patch("trilled.api.twiml.telephony_service") as service:
            service.find_user_by_twilio_phone = AsyncMock(return_value=None)
            service.find_group_by_twilio_phone = AsyncMock(return_value=None)
            service.get_phone_status = AsyncMock(return_value="available")
            service.get_group_members = AsyncMock(return_value=[])
            service.get_available_members = AsyncMock(return_value=[])
            service.update_call_status = AsyncMock()
            yield service

    @pytest.mark.asyncio
    async def test_inbound_to_user(self, client, db_override, telephony):
        user_id = uuid4()
        telephony.find_user_by_twilio_phone.return_value = Mock(id=user_id)

        response = await client.post("/api/twiml/inbound", data={"To": "+15550001", "From": "+15550002"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/xml")
        assert parse(response.text).find("Dial/Client").text == str(user_id)

    @pytest.mark.asyncio
    async def test_inbound_to_empty_group(self, client, db_override, telephony):
        telephony.find_group_by_twilio_phone.return_value = Mock(id=uuid4())

        response = await client.post("/api/twiml/inbound", data={"To": "+15550001", "From": "+15550002"})

        assert parse(response.text).find("Say").text == twiml_builder.NO_GROUP_MEMBERS_MESSAGE

    @pytest.mark.asyncio
    async def test_inbound_to_group_rings_available(self, client, db_override, telephony):
        group = Mock(id=uuid4())
        group.name = "Admissions"
        available, busy = Mock(id=uuid4()), Mock(id=uuid4())
        telephony.find_group_by_twilio_phone.return_value = group
        telephony.get_group_members.return_value = [available, busy]
        telephony.get_available_members.return_value = [available]

        response = await client.post("/api/twiml/inbound", data={"To": "+15550001", "From": "+15550002"})

        clients = parse(response.text).findall("Dial/Client")
        assert [c.text for c in clients] == [str(available.id)]

    @pytest.mark.asyncio
    async def test_inbound_unknown_number(self, client, db_override, telephony):
        response = await client.post("/api/twiml/inbound", data={"To": "+15550001", "From": "+15550002"})

        assert parse(response.text).find("Say").text == twiml_builder.UNKNOWN_DESTINATION_MESSAGE

    @pytest.mark.asyncio
    async def test_inbound_failure_still_answers(self, client, db_override, telephony):
        telephony.find_user_by_twilio_phone.side_effect = RuntimeError("db down")

        response = await client.post("/api/twiml/inbound", data={"To": "+15550001", "From": "+15550002"})

        assert response.status_code == 200
        assert parse(response.text).find("Say").text == twiml_builder.TECHNICAL_DIFFICULTIES_MESSAGE

    @pytest.mark.asyncio
    async def test_group_dial_completed(self, client, db_override, telephony):
        response = await client.post(
            "/api/twiml/handle-group-dial-status",
            data={"DialCallStatus": "completed", "CallSid": "CA1"}
        )

        assert parse(response.text).find("Hangup") is not None
        telephony.update_call_status.assert_awaited_once_with(db_override, "CA1", "in-progress")

    @pytest.mark.asyncio
    async def test_group_dial_no_answer_redirects(self, client, db_override, telephony):
        response = await client.post(
            "/api/twiml/handle-group-dial-status?groupId=g1&fromNumber=%2B15550002&calledNumber=%2B15550001",
            data={"DialCallStatus": "no-answer", "CallSid": "CA1"}
        )

        redirect = parse(response.text).find("Redirect")
        assert "groupId=g1" in redirect.text
        telephony.update_call_status.assert_awaited_once_with(db_override, "CA1", "redirecting-to-sequential")

    @pytest.mark.asyncio
    async def test_group_dial_missing_context(self, client, db_override, telephony):
        response = await client.post(
            "/api/twiml/handle-group-dial-status", data={"DialCallStatus": "busy", "CallSid": "CA1"}
        )

        assert "error occurred while transferring" in parse(response.text).find("Say").text
        telephony.update_call_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sequential_dial_requires_group(self, client, db_override, telephony):
        response = await client.post("/api/twiml/sequential-dial", data={"CallSid": "CA1"})

        assert response.status_code == 500
        assert response.headers["content-type"].startswith("text/xml")

    @pytest.mark.asyncio
    async def test_sequential_dial_uses_member_phones(self, client, db_override, telephony):
        group_id = uuid4()
        telephony.get_group_members.return_value = [Mock(phone="+1111"), Mock(phone=None), Mock(phone="+2222")]

        response = await client.post(
            f"/api/twiml/sequential-dial?groupId={group_id}&dialIndex=1&callSid=CA1&fromNumber=%2B15550002",
            data={"DialCallStatus": "no-answer"}
        )

        root = parse(response.text)
        assert root.find("Say") is None
        assert root.find("Dial/Number").text == "+2222"
        telephony.get_group_members.assert_awaited_once_with(db_override, group_id)

    @pytest.mark.asyncio
    async def test_outbound_twiml(self, client):
        response = await client.get("/api/twiml/outbound", params={"to": "+15550003"})

        assert response.status_code == 200
        assert parse(response.text).find("Dial/Number").text == "+15550003"
