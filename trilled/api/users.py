# trilled/api/users.py
"""
Leads, customers and staff accounts
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.auth.auth import (
    require_staff_user, require_admin_user, check_role_assignment, check_same_organization,
    create_auth_code, STAFF_ROLES
)
from trilled.db.database import get_db
from trilled.models.models import (
    User, FollowUp, Communication, UserRole, UserStatus, AuthCodePurpose,
    CommunicationDirection, CommunicationType
)
from trilled.schemas.schemas import (
    UserResponse, UserCreateRequest, UserUpdateRequest, UserDetailResponse,
    EmailListRequest, CheckOwnersRequest, ExistingUserResponse, ConvertToCustomerRequest,
    InviteRequest, MarkLostRequest, NoteCreate, LostReason,
    FollowUpBulkRequest, FollowUpSequenceRequest, FollowUpResponse
)
from trilled.services.follow_up_service import follow_up_service, get_sequence_day
from trilled.services.email_service import email_service

router = APIRouter(prefix="/users", tags=["users"])
logger = logging.getLogger(__name__)

SEQUENCED_ROLES = (UserRole.LEAD.value, UserRole.CUSTOMER.value)

LOST_REASON_LABELS = {
    LostReason.BUDGET: "Budget constraints",
    LostReason.COMPETITOR: "Chose a competitor",
    LostReason.TIMING: "Bad timing",
    LostReason.NEEDS: "Needs not met",
}

INVITE_FIELDS = {
    "first_name", "last_name", "role", "status", "phone", "position",
    "company_id", "owner_id", "organization_id", "lead_type", "notes"
}


def append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n\n{note}" if existing else note


async def get_user_or_404(db: AsyncSession, user_id: UUID) -> User:
    result = await db.execute(
        select(User).where(User.id == user_id, User.deleted_at.is_(None))
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


async def get_scoped_user(db: AsyncSession, user_id: UUID, current_user: User) -> User:
    user = await get_user_or_404(db, user_id)
    check_same_organization(current_user, user.organization_id, "Cannot access users from different organizations")
    return user


def follow_up_responses(user: User, follow_ups: List[FollowUp]) -> List[FollowUpResponse]:
    responses = []
    for follow_up in follow_ups:
        response = FollowUpResponse.model_validate(follow_up)
        if user.role in SEQUENCED_ROLES and user.created_at:
            response.sequence_day = get_sequence_day(follow_up.date, user.created_at, user.role)
        responses.append(response)
    return responses


async def start_sequence(db: AsyncSession, user: User, anchor: datetime, follow_up_type: str = "email") -> List[FollowUp]:
    """Create the role's follow-ups; failures are logged so the caller's main write still succeeds."""
    try:
        return await follow_up_service.create_sequence(db, user.id, anchor, user.role, follow_up_type)
    except Exception as e:
        logger.error(f"❌ Failed to create follow-ups for user {user.id}: {e}")
        return []


def build_user(user_data: UserCreateRequest, current_user: User) -> User:
    check_role_assignment(current_user.role, user_data.role, "create")

    organization_id = user_data.organization_id or current_user.organization_id
    check_same_organization(
        current_user, organization_id,
        "Forbidden - Cannot create users in different organizations"
    )

    owner_id = user_data.owner_id
    if owner_id is None and current_user.role == UserRole.AGENT.value:
        owner_id = current_user.id

    fields = user_data.model_dump(exclude={"organization_id", "owner_id", "status"})
    return User(
        **fields,
        status=user_data.status or UserStatus.NEW.value,
        organization_id=organization_id,
        owner_id=owner_id,
        created_by=current_user.id
    )


@router.get("", response_model=List[UserResponse])
async def list_users(
    role: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    organization_id: Optional[UUID] = Query(None),
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    query = select(User).where(User.deleted_at.is_(None))

    if current_user.role == UserRole.SUPER_ADMIN.value:
        if organization_id:
            query = query.where(User.organization_id == organization_id)
    else:
        query = query.where(User.organization_id == current_user.organization_id)

    if role:
        query = query.where(User.role == role)
    if status:
        query = query.where(User.status == status)

    result = await db.execute(query.order_by(User.created_at.desc()))
    return result.scalars().all()


@router.post("", response_model=UserResponse)
async def insert_user(
    user_data: UserCreateRequest,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """Insert a user record as given, without scheduling follow-ups."""
    if not user_data.email:
        raise HTTPException(status_code=400, detail="Email is required")

    user = build_user(user_data, current_user)
    try:
        db.add(user)
        await db.commit()
        await db.refresh(user)
    except Exception as e:
        await db.rollback()
        logger.error(f"❌ Error inserting user: {e}")
        raise HTTPException(status_code=400, detail="Failed to create user")

    return user


@router.post("/create", response_model=UserResponse)
async def create_user(
    user_data: UserCreateRequest,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """Create a user within the caller's permissions; leads and customers get their follow-up sequence."""
    if not user_data.email:
        raise HTTPException(status_code=400, detail="Email is required")

    user = build_user(user_data, current_user)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info(f"✅ User {user.email} ({user.role}) created by {current_user.email}")

    if user.role in SEQUENCED_ROLES:
        await start_sequence(db, user, datetime.now(timezone.utc))

    return user


@router.post("/update", response_model=UserResponse)
async def update_user(
    user_data: UserUpdateRequest,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    user = await get_user_or_404(db, user_data.id)

    if user_data.role and user_data.role != user.role:
        check_role_assignment(current_user.role, user_data.role, "update")

    check_same_organization(
        current_user, user.organization_id,
        "Cannot update users from different organizations"
    )

    previous_status = user.status
    for field, value in user_data.model_dump(exclude_unset=True, exclude={"id"}).items():
        setattr(user, field, value)

    if user.status != previous_status:
        if user.status == UserStatus.LOST.value:
            user.lost_reason = "Status changed manually"
            user.lost_at = datetime.now(timezone.utc)
        elif previous_status == UserStatus.LOST.value and user.status == UserStatus.NEEDS_RESPONSE.value:
            user.lost_reason = None
            user.lost_at = None

    user.updated_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(user)
    return user


@router.post("/check-existing", response_model=List[ExistingUserResponse])
async def check_existing_users(
    request: EmailListRequest,
    current_user: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db)
):
    """Which of the given emails already belong to a user; used before bulk imports."""
    if not request.emails:
        return []
    result = await db.execute(
        select(User).where(User.email.in_(request.emails))
    )
    return result.scalars().all()


@router.post("/check-owners", response_model=List[UserResponse])
async def check_owners(
    request: CheckOwnersRequest,
    current_user: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db)
):
    """Resolve owner emails from an import file to staff accounts."""
    if not request.emails:
        return []

    query = select(User).where(
        User.email.in_(request.emails),
        User.role.in_(STAFF_ROLES)
    )
    if current_user.role == UserRole.ADMIN.value and request.organization_id:
        query = query.where(User.organization_id == request.organization_id)

    result = await db.execute(query)
    return result.scalars().all()


@router.post("/convert-to-customer")
async def convert_to_customer(
    request: ConvertToCustomerRequest,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """Turn a lead into a won customer and restart follow-ups on the customer schedule."""
    if request.user_id is None:
        raise HTTPException(status_code=400, detail="User ID is required")

    result = await db.execute(
        select(User).where(User.id == request.user_id, User.deleted_at.is_(None))
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=400, detail="User not found")

    check_same_organization(current_user, user.organization_id, "Cannot update users from different organizations")

    try:
        await follow_up_service.delete_incomplete(db, user.id)
        now = datetime.now(timezone.utc)
        user.role = UserRole.CUSTOMER.value
        user.status = UserStatus.WON.value
        user.won_at = now
        user.won_by = user.owner_id
        await db.commit()

        await follow_up_service.create_sequence(db, user.id, now, UserRole.CUSTOMER.value)
    except Exception as e:
        await db.rollback()
        logger.error(f"❌ Error converting user {request.user_id} to customer: {e}")
        raise HTTPException(status_code=400, detail="Failed to convert user to customer")

    logger.info(f"🎉 User {user.email} converted to customer by {current_user.email}")
    return {"success": True}


@router.post("/follow-ups")
async def create_follow_ups(
    request: FollowUpBulkRequest,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """Insert follow-ups in the order given and chain them together."""
    follow_ups = [
        FollowUp(date=item.date, type=item.type, user_id=item.user_id, notes=item.notes)
        for item in request.follow_ups
    ]
    try:
        created = await follow_up_service.create_chain(db, follow_ups)
    except Exception as e:
        logger.error(f"❌ Error creating follow-ups: {e}")
        raise HTTPException(status_code=400, detail="Failed to create follow-ups")

    return {"followUps": [FollowUpResponse.model_validate(f) for f in created]}


@router.post("/invite")
async def invite_user(
    request: InviteRequest,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """Create an account for someone and email them a sign-in link; existing users are returned as is."""
    if not request.email:
        raise HTTPException(status_code=400, detail="Email is required")

    result = await db.execute(
        select(User).where(func.lower(User.email) == request.email.lower())
    )
    existing = result.scalars().first()
    if existing:
        return {"user": UserResponse.model_validate(existing)}

    fields = {k: v for k, v in request.user_data.items() if k in INVITE_FIELDS}
    fields.setdefault("role", UserRole.AGENT.value)
    try:
        user_data = UserCreateRequest(email=request.email, **fields)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid user data: {e.error_count()} errors")

    # No password until the invitee follows the link and sets one
    user = build_user(user_data, current_user)
    db.add(user)
    await db.commit()
    await db.refresh(user)

    code = await create_auth_code(db, user.id, AuthCodePurpose.INVITE.value)
    inviter_name = " ".join(filter(None, [current_user.first_name, current_user.last_name])) or current_user.email
    await email_service.send_invite_email(user.email, code, user.first_name, inviter_name)

    logger.info(f"📨 Invited {user.email} as {user.role}")
    return {"user": UserResponse.model_validate(user)}


@router.get("/{user_id}", response_model=UserDetailResponse)
async def get_user(
    user_id: UUID,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    user = await get_scoped_user(db, user_id, current_user)
    follow_ups = await follow_up_service.list_for_user(db, user.id)
    return UserDetailResponse(
        user=UserResponse.model_validate(user),
        follow_ups=follow_up_responses(user, follow_ups)
    )


@router.delete("/{user_id}")
async def delete_user(
    user_id: UUID,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """Soft delete: the record is hidden and counted as lost."""
    user = await get_scoped_user(db, user_id, current_user)
    user.deleted_at = datetime.now(timezone.utc)
    user.status = UserStatus.LOST.value
    await db.commit()
    logger.info(f"User {user.email} deleted by {current_user.email}")
    return {"message": "User deleted successfully"}


@router.post("/{user_id}/mark-lost", response_model=UserResponse)
async def mark_user_lost(
    user_id: UUID,
    request: MarkLostRequest,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    if request.reason == LostReason.OTHER:
        if not request.other_reason or not request.other_reason.strip():
            raise HTTPException(status_code=400, detail="Please describe the reason")
        reason_text = request.other_reason.strip()
    else:
        reason_text = LOST_REASON_LABELS[request.reason]

    user = await get_scoped_user(db, user_id, current_user)

    await follow_up_service.delete_incomplete(db, user.id)
    now = datetime.now(timezone.utc)
    user.status = UserStatus.LOST.value
    user.lost_reason = reason_text
    user.lost_at = now
    user.notes = append_note(user.notes, f"Lost reason: {reason_text}")
    user.updated_at = now
    await db.commit()
    await db.refresh(user)
    return user


@router.post("/{user_id}/follow-ups/sequence")
async def create_follow_up_sequence(
    user_id: UUID,
    request: FollowUpSequenceRequest,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """(Re)build the role's follow-up sequence anchored at the user's creation date."""
    user = await get_scoped_user(db, user_id, current_user)
    if user.role not in SEQUENCED_ROLES:
        raise HTTPException(status_code=400, detail="Follow-up sequences are only available for leads and customers")

    anchor = user.created_at or datetime.now(timezone.utc)
    try:
        created = await follow_up_service.create_sequence(db, user.id, anchor, user.role, request.type)
    except Exception as e:
        logger.error(f"❌ Error creating follow-up sequence for {user_id}: {e}")
        raise HTTPException(status_code=400, detail="Failed to create follow-up sequence")

    return {"followUps": follow_up_responses(user, created)}


@router.post("/{user_id}/notes")
async def add_internal_note(
    user_id: UUID,
    request: NoteCreate,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    user = await get_scoped_user(db, user_id, current_user)
    note = Communication(
        direction=CommunicationDirection.INTERNAL.value,
        communication_type=CommunicationType.NOTE.value,
        content=request.content,
        user_id=user.id,
        agent_id=current_user.id,
        delivered_at=datetime.now(timezone.utc)
    )
    db.add(note)
    await db.commit()
    await db.refresh(note)
    return {"id": str(note.id), "content": note.content, "created_at": note.created_at}


@router.get("/{user_id}/communications")
async def list_communications(
    user_id: UUID,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """Timeline of calls, emails, texts and notes about a user, newest first."""
    user = await get_scoped_user(db, user_id, current_user)
    result = await db.execute(
        select(Communication)
        .where(Communication.user_id == user.id, Communication.deleted_at.is_(None))
        .order_by(Communication.created_at.desc())
    )
    return [
        {
            "id": str(c.id),
            "direction": c.direction,
            "communication_type": c.communication_type,
            "content": c.content,
            "agent_id": str(c.agent_id) if c.agent_id else None,
            "delivered_at": c.delivered_at,
            "created_at": c.created_at,
        }
        for c in result.scalars().all()
    ]
