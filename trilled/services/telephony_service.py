# trilled/services/telephony_service.py
"""
Telephony service for outbound calls, SMS, browser-client tokens and call records
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from twilio.rest import Client as TwilioClient
from twilio.jwt.access_token import AccessToken
from twilio.jwt.access_token.grants import VoiceGrant

from trilled.models.models import (
    Call, Communication, CommunicationDirection, CommunicationType,
    User, UserGroup, GroupMembership, UserPhoneStatus, PhoneStatus
)
from trilled.core.config import settings

logger = logging.getLogger(__name__)


class TelephonyNotConfigured(Exception):
    """Raised when a Twilio operation is requested without credentials."""


class TelephonyService:
    """Service for managing telephony operations"""

    def __init__(self):
        self.twilio_client = None
        if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN:
            try:
                self.twilio_client = TwilioClient(
                    settings.TWILIO_ACCOUNT_SID,
                    settings.TWILIO_AUTH_TOKEN
                )
                logger.info("✅ Twilio client initialized")
            except Exception as e:
                logger.error(f"❌ Failed to initialize Twilio client: {e}")
        else:
            logger.warning("⚠️  Twilio credentials not configured, using mock mode")

    def _require_client(self) -> TwilioClient:
        if self.twilio_client is None:
            raise TelephonyNotConfigured("Twilio not configured")
        return self.twilio_client

    # ------------------------------------------------------------------
    # Twilio REST operations
    # ------------------------------------------------------------------

    def create_call(self, from_: str, to: str, url: str) -> str:
        """Place an outbound call whose TwiML is fetched from url. Returns the call SID."""
        call = self._require_client().calls.create(to=to, from_=from_, url=url)
        logger.info(f"📞 Outbound call created: {call.sid} -> {to}")
        return call.sid

    def hangup_call(self, call_sid: str) -> str:
        call = self._require_client().calls(call_sid).update(status="completed")
        logger.info(f"📞 Hangup requested for {call_sid}, status: {call.status}")
        return call.status

    def send_sms(self, to: str, body: str, from_: Optional[str] = None) -> Dict[str, Any]:
        """Send an SMS. Without credentials this reports failure instead of raising."""
        if self.twilio_client is None:
            logger.warning(f"🧪 MOCK: SMS to {to} not sent, Twilio not configured")
            return {"success": False, "error": "Twilio not configured"}

        message = self.twilio_client.messages.create(
            body=body,
            from_=from_ or settings.TWILIO_PHONE_NUMBER,
            to=to
        )
        logger.info(f"📨 SMS sent to {to}: {message.sid}")
        return {"success": True, "sid": message.sid, "status": message.status}

    def generate_access_token(self, identity: str) -> str:
        """Voice access token for the browser client, identified by the user id."""
        if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_API_KEY and settings.TWILIO_API_SECRET):
            raise TelephonyNotConfigured("Twilio not configured")

        token = AccessToken(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_API_KEY,
            settings.TWILIO_API_SECRET,
            identity=identity
        )
        token.add_grant(VoiceGrant(
            outgoing_application_sid=settings.TWILIO_TWIML_APP_SID,
            incoming_allow=True
        ))
        return token.to_jwt()

    # ------------------------------------------------------------------
    # Routing lookups
    # ------------------------------------------------------------------

    async def find_user_by_twilio_phone(self, db: AsyncSession, phone: str) -> Optional[User]:
        result = await db.execute(
            select(User).where(User.twilio_phone == phone, User.deleted_at.is_(None))
        )
        return result.scalars().first()

    async def find_group_by_twilio_phone(self, db: AsyncSession, phone: str) -> Optional[UserGroup]:
        result = await db.execute(
            select(UserGroup).where(UserGroup.twilio_phone == phone)
        )
        return result.scalars().first()

    async def get_phone_status(self, db: AsyncSession, user_id: UUID) -> str:
        """Availability of a user; users who never set one count as available."""
        result = await db.execute(
            select(UserPhoneStatus.status).where(UserPhoneStatus.user_id == user_id)
        )
        return result.scalar_one_or_none() or PhoneStatus.AVAILABLE.value

    async def set_phone_status(self, db: AsyncSession, user_id: UUID, status: str) -> UserPhoneStatus:
        result = await db.execute(
            select(UserPhoneStatus).where(UserPhoneStatus.user_id == user_id)
        )
        phone_status = result.scalar_one_or_none()
        if phone_status is None:
            phone_status = UserPhoneStatus(user_id=user_id, status=status)
            db.add(phone_status)
        else:
            phone_status.status = status
        await db.commit()
        await db.refresh(phone_status)
        return phone_status

    async def get_group_members(self, db: AsyncSession, group_id: UUID) -> List[User]:
        result = await db.execute(
            select(User)
            .join(GroupMembership, GroupMembership.user_id == User.id)
            .where(GroupMembership.group_id == group_id)
        )
        return list(result.scalars().all())

    async def get_available_members(self, db: AsyncSession, members: List[User]) -> List[User]:
        """Members whose phone status is available or away."""
        if not members:
            return []
        result = await db.execute(
            select(UserPhoneStatus).where(UserPhoneStatus.user_id.in_([m.id for m in members]))
        )
        statuses = {row.user_id: row.status for row in result.scalars().all()}
        return [
            member for member in members
            if statuses.get(member.id, PhoneStatus.AVAILABLE.value) in (PhoneStatus.AVAILABLE.value, PhoneStatus.AWAY.value)
        ]

    # ------------------------------------------------------------------
    # Call records
    # ------------------------------------------------------------------

    async def get_call_by_sid(self, db: AsyncSession, call_sid: str) -> Optional[Call]:
        result = await db.execute(select(Call).where(Call.call_sid == call_sid))
        return result.scalar_one_or_none()

    async def record_outbound_call(
        self,
        db: AsyncSession,
        call_sid: str,
        from_number: str,
        to_number: str,
        from_user_id: Optional[UUID] = None
    ) -> Call:
        call = Call(
            call_sid=call_sid,
            from_number=from_number,
            to_number=to_number,
            from_user_id=from_user_id,
            status="queued"
        )
        db.add(call)
        await db.commit()
        return call

    async def update_call_status(self, db: AsyncSession, call_sid: str, status: str) -> Optional[Call]:
        call = await self.get_call_by_sid(db, call_sid)
        if call is None:
            logger.warning(f"⚠️  No call record for {call_sid}")
            return None
        call.status = status
        call.updated_at = datetime.now(timezone.utc)
        await db.commit()
        return call

    async def assign_user_to_call(self, db: AsyncSession, call_sid: str, user_id: UUID) -> Optional[Call]:
        call = await self.get_call_by_sid(db, call_sid)
        if call is None:
            logger.warning(f"⚠️  Assignment requested for unknown call {call_sid}")
            return None
        call.to_user_id = user_id
        call.updated_at = datetime.now(timezone.utc)
        await db.commit()
        return call

    async def process_status_callback(self, db: AsyncSession, form: Dict[str, Any]) -> Optional[Call]:
        """
        Apply a Twilio status callback to the matching call record.

        The callback may refer to the parent leg; in that case ParentCallSid
        is also the identity of the browser client that answered, which we
        use to attribute the call. Completed calls are logged as a
        communication on the lead's timeline.
        """
        call_sid = form.get("CallSid")
        parent_call_sid = form.get("ParentCallSid")
        call_status = form.get("CallStatus") or form.get("DialCallStatus")

        call = await self.get_call_by_sid(db, call_sid) if call_sid else None
        matched_parent = False
        if call is None and parent_call_sid:
            call = await self.get_call_by_sid(db, parent_call_sid)
            matched_parent = call is not None

        if call is None:
            logger.warning(f"⚠️  Status callback for unknown call {call_sid} (parent {parent_call_sid})")
            return None

        if call_status:
            call.status = call_status
        call.updated_at = datetime.now(timezone.utc)

        if matched_parent:
            agent_id = self._as_uuid(parent_call_sid)
            if agent_id is not None:
                agent = await db.get(User, agent_id)
                if agent is not None:
                    call.to_user_id = agent.id

        if call_status == "completed":
            duration = form.get("DialCallDuration") or form.get("CallDuration")
            if duration:
                call.duration = int(duration)
            if form.get("RecordingUrl"):
                call.recording_url = form.get("RecordingUrl")
            db.add(self.build_call_communication(call, form.get("RecordingStatus")))

        await db.commit()
        logger.info(f"📞 Call {call.call_sid} status updated: {call.status}")
        return call

    @staticmethod
    def build_call_communication(call: Call, recording_status: Optional[str] = None) -> Communication:
        """Timeline entry for a finished call, attributed according to who dialed whom."""
        if call.group_id:
            direction = CommunicationDirection.INBOUND_GROUP.value
            user_id, agent_id = call.from_user_id, call.to_user_id
            content = "Group phone call "
        elif call.from_user_id and (call.to_number or "").startswith("+"):
            direction = CommunicationDirection.OUTBOUND.value
            user_id, agent_id = call.to_user_id, call.from_user_id
            content = "Phone call "
        else:
            direction = CommunicationDirection.INBOUND.value
            user_id, agent_id = call.from_user_id, call.to_user_id
            content = "Phone call "

        if recording_status == "completed" and call.recording_url:
            content += f"(Recording: {call.recording_url})"

        return Communication(
            direction=direction,
            to_address=call.to_number,
            from_address=call.from_number,
            delivered_at=datetime.now(timezone.utc),
            agent_id=agent_id,
            user_id=user_id,
            content=content,
            communication_type=CommunicationType.CALL.value,
            communication_type_id=str(call.id)
        )

    @staticmethod
    def _as_uuid(value: Optional[str]) -> Optional[UUID]:
        try:
            return UUID(value) if value else None
        except ValueError:
            return None


# Global telephony service instance
telephony_service = TelephonyService()
