# trilled/api/follow_ups.py
import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.auth.auth import require_staff_user, check_same_organization
from trilled.db.database import get_db
from trilled.models.models import FollowUp, User, UserRole
from trilled.schemas.schemas import FollowUpUpdate, FollowUpResponse
from trilled.services.follow_up_service import follow_up_service

router = APIRouter(prefix="/follow-ups", tags=["follow-ups"])
logger = logging.getLogger(__name__)


@router.get("", response_model=List[FollowUpResponse])
async def list_open_follow_ups(
    before: Optional[datetime] = Query(None, description="Only follow-ups due before this instant"),
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """Open follow-ups the caller is responsible for; agents see their own leads, admins their organization."""
    query = (
        select(FollowUp)
        .join(User, User.id == FollowUp.user_id)
        .where(
            FollowUp.completed_at.is_(None),
            FollowUp.deleted_at.is_(None),
            User.deleted_at.is_(None)
        )
    )
    if current_user.role == UserRole.AGENT.value:
        query = query.where(User.owner_id == current_user.id)
    elif current_user.role == UserRole.ADMIN.value:
        query = query.where(User.organization_id == current_user.organization_id)
    if before is not None:
        query = query.where(FollowUp.date < before)

    result = await db.execute(query.order_by(FollowUp.date))
    return result.scalars().all()


@router.patch("/{follow_up_id}", response_model=FollowUpResponse)
async def update_follow_up(
    follow_up_id: UUID,
    update_data: FollowUpUpdate,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """Change a follow-up's type or notes, or mark it (in)complete."""
    follow_up = await db.get(FollowUp, follow_up_id)
    if follow_up is None:
        raise HTTPException(status_code=404, detail="Follow-up not found")

    owner = await db.get(User, follow_up.user_id)
    if owner is not None:
        check_same_organization(current_user, owner.organization_id, "Cannot update follow-ups from different organizations")

    try:
        return await follow_up_service.update_follow_up(
            db,
            follow_up_id,
            follow_up_type=update_data.type,
            completed=update_data.completed,
            notes=update_data.notes
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
