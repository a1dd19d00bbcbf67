# trilled/services/follow_up_service.py
"""
Follow-up scheduling for leads and customers.

Every lead or customer gets a chain of follow-ups at fixed day offsets from
an anchor date (creation, or conversion for customers). The rows are linked
through next_follow_up_id so the UI can walk the sequence in order.
"""

import math
import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.models.models import FollowUp, FollowUpType, UserRole

logger = logging.getLogger(__name__)

LEAD_SEQUENCE = [1, 2, 4, 7, 10, 14, 28]
CUSTOMER_SEQUENCE = [14, 28, 42, 56, 70, 90, 120, 150, 180]

DAY = timedelta(days=1)


def get_expected_sequence(role: str) -> List[int]:
    if role == UserRole.LEAD.value:
        return LEAD_SEQUENCE
    if role == UserRole.CUSTOMER.value:
        return CUSTOMER_SEQUENCE
    raise ValueError(f"No follow-up sequence for role: {role}")


def calculate_follow_up_dates(anchor: datetime, role: str) -> List[datetime]:
    return [anchor + offset * DAY for offset in get_expected_sequence(role)]


def get_day_difference(first: datetime, second: datetime) -> int:
    """Whole days between two instants, rounded up."""
    return math.ceil(abs((second - first).total_seconds()) / DAY.total_seconds())


def get_sequence_day(follow_up_date: datetime, created_date: datetime, role: str) -> int:
    """Sequence offset closest to the follow-up's distance from creation; ties keep the earlier one."""
    difference = get_day_difference(created_date, follow_up_date)
    closest = None
    for offset in get_expected_sequence(role):
        if closest is None or abs(offset - difference) < abs(closest - difference):
            closest = offset
    return closest


def _link(follow_ups: Sequence[FollowUp]) -> None:
    for current, following in zip(follow_ups, follow_ups[1:]):
        current.next_follow_up_id = following.id
    if follow_ups:
        follow_ups[-1].next_follow_up_id = None


class FollowUpService:
    """Persistence for follow-up chains"""

    async def create_sequence(
        self,
        db: AsyncSession,
        user_id: UUID,
        anchor: datetime,
        role: str,
        follow_up_type: str = FollowUpType.EMAIL.value
    ) -> List[FollowUp]:
        """Insert and link the role's follow-up sequence for a user, in one transaction."""
        dates = calculate_follow_up_dates(anchor, role)
        follow_ups = [
            FollowUp(date=date, type=follow_up_type, user_id=user_id)
            for date in dates
        ]
        return await self._insert_chain(db, follow_ups)

    async def create_chain(self, db: AsyncSession, follow_ups: List[FollowUp]) -> List[FollowUp]:
        """Insert caller-built follow-ups in the given order and link them."""
        return await self._insert_chain(db, follow_ups)

    async def _insert_chain(self, db: AsyncSession, follow_ups: List[FollowUp]) -> List[FollowUp]:
        for follow_up in follow_ups:
            if follow_up.id is None:
                follow_up.id = uuid.uuid4()

        try:
            db.add_all(follow_ups)
            # Rows must exist before they can be referenced by next_follow_up_id
            await db.flush()
            _link(follow_ups)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"✅ Created {len(follow_ups)} linked follow-ups")
        return follow_ups

    async def delete_incomplete(self, db: AsyncSession, user_id: UUID) -> None:
        """Remove every follow-up of the user that has not been completed. Caller commits."""
        await db.execute(
            delete(FollowUp).where(
                FollowUp.user_id == user_id,
                FollowUp.completed_at.is_(None)
            )
        )

    async def list_for_user(self, db: AsyncSession, user_id: UUID) -> List[FollowUp]:
        result = await db.execute(
            select(FollowUp)
            .where(FollowUp.user_id == user_id, FollowUp.deleted_at.is_(None))
            .order_by(FollowUp.date)
        )
        return list(result.scalars().all())

    async def update_follow_up(
        self,
        db: AsyncSession,
        follow_up_id: UUID,
        follow_up_type: Optional[str] = None,
        completed: Optional[bool] = None,
        notes: Optional[str] = None
    ) -> FollowUp:
        result = await db.execute(
            select(FollowUp).where(FollowUp.id == follow_up_id, FollowUp.deleted_at.is_(None))
        )
        follow_up = result.scalar_one_or_none()
        if follow_up is None:
            raise ValueError("Follow-up not found")

        if follow_up_type is not None:
            follow_up.type = follow_up_type
        if completed is not None:
            follow_up.completed_at = datetime.now(timezone.utc) if completed else None
        if notes is not None:
            follow_up.notes = notes

        await db.commit()
        await db.refresh(follow_up)
        return follow_up


# Global instance
follow_up_service = FollowUpService()
