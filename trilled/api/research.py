# trilled/api/research.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.auth.auth import require_staff_or_research_callback, check_same_organization
from trilled.db.database import get_db
from trilled.models.models import Company, User, UserRole, UserStatus
from trilled.schemas.schemas import ResearchUserRequest, UserResponse
from trilled.services.research_service import split_name

router = APIRouter(prefix="/research", tags=["research"])
logger = logging.getLogger(__name__)


@router.post("/users", response_model=UserResponse)
async def create_researched_user(
    request: ResearchUserRequest,
    current_user: Optional[User] = Depends(require_staff_or_research_callback),
    db: AsyncSession = Depends(get_db)
):
    """Store a contact the research workflow found as a new lead owned by the requester."""
    if not all([request.company_id, request.name, request.email, request.owner_id]):
        raise HTTPException(status_code=400, detail="Missing required fields")

    company = await db.get(Company, request.company_id)
    organization_id = company.organization_id if company else None
    if current_user is not None:
        check_same_organization(current_user, organization_id, "Cannot create users in different organizations")

    first_name, last_name = split_name(request.name)
    lead = User(
        email=request.email,
        first_name=first_name,
        last_name=last_name,
        position=request.position,
        company_id=request.company_id,
        owner_id=request.owner_id,
        organization_id=organization_id,
        role=UserRole.LEAD.value,
        status=UserStatus.NEW.value
    )
    db.add(lead)
    await db.commit()
    await db.refresh(lead)

    logger.info(f"✅ Research lead created: {lead.email} at company {request.company_id}")
    return lead
