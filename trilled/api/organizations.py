# trilled/api/organizations.py
import logging
import re

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.auth.auth import (
    get_current_active_user, require_admin_user, get_password_hash, create_tokens, create_auth_code
)
from trilled.db.database import get_db
from trilled.models.models import Organization, User, UserRole, AuthCodePurpose
from trilled.schemas.schemas import (
    OrganizationSignupRequest,
    OrganizationSignupResponse,
    OrganizationResponse,
    OrganizationUpdate,
    UserResponse
)
from trilled.services.email_service import email_service

router = APIRouter(prefix="/organizations", tags=["organizations"])
logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "-", name.lower())


@router.post("/signup", response_model=OrganizationSignupResponse)
async def signup_organization(
    request: OrganizationSignupRequest,
    db: AsyncSession = Depends(get_db)
):
    """Create an organization together with its first user, who becomes its admin."""
    slug = slugify(request.name)

    result = await db.execute(select(Organization).where(Organization.slug == slug))
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Organization already exists"
        )

    result = await db.execute(
        select(User).where(func.lower(User.email) == request.email.lower())
    )
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    org = Organization(name=request.name, slug=slug)
    db.add(org)
    await db.flush()  # Get org.id without committing

    admin_user = User(
        email=request.email,
        hashed_password=get_password_hash(request.password),
        first_name=request.first_name,
        last_name=request.last_name,
        role=UserRole.ADMIN.value,
        status="new",
        organization_id=org.id,
        is_active=True
    )
    db.add(admin_user)
    await db.commit()
    await db.refresh(org)
    await db.refresh(admin_user)

    access_token, refresh_token = await create_tokens(admin_user, db)

    code = await create_auth_code(db, admin_user.id, AuthCodePurpose.SIGNUP.value)
    await email_service.send_verification_email(admin_user.email, code, admin_user.first_name)

    logger.info(f"✅ Organization created: {org.slug} with admin {admin_user.email}")

    return OrganizationSignupResponse(
        organization=OrganizationResponse.model_validate(org),
        user=UserResponse.model_validate(admin_user),
        access_token=access_token,
        refresh_token=refresh_token
    )


async def _get_user_organization(db: AsyncSession, user: User) -> Organization:
    if not user.organization_id:
        raise HTTPException(status_code=404, detail="Organization not found")
    org = await db.get(Organization, user.organization_id)
    if org is None or org.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org


@router.get("/current", response_model=OrganizationResponse)
async def get_current_organization(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    return await _get_user_organization(db, current_user)


@router.patch("/current", response_model=OrganizationResponse)
async def update_current_organization(
    update_data: OrganizationUpdate,
    current_user: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db)
):
    org = await _get_user_organization(db, current_user)

    for field, value in update_data.model_dump(exclude_unset=True).items():
        setattr(org, field, value)

    await db.commit()
    await db.refresh(org)
    logger.info(f"Organization {org.slug} updated by {current_user.email}")
    return org
