# trilled/api/companies.py
import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.auth.auth import (
    get_current_active_user,
    require_admin_user,
    require_staff_user,
    require_staff_or_research_callback,
    check_same_organization
)
from trilled.db.database import get_db
from trilled.models.models import Company, User, UserRole
from trilled.schemas.schemas import (
    CompanyCreate,
    CompanyResponse,
    CheckAndCreateCompaniesRequest,
    CompanyResearchUpdateRequest,
    CompanyResearchRequest,
    BatchResearchRequest,
    UserResponse
)
from trilled.services.research_service import (
    research_service,
    apply_company_update,
    ResearchServiceError,
    InsufficientResearchData
)

router = APIRouter(prefix="/companies", tags=["companies"])
logger = logging.getLogger(__name__)


def _company_dict(company: Optional[Company]) -> Optional[dict]:
    if company is None:
        return None
    return CompanyResponse.model_validate(company).model_dump(mode="json")


async def get_company_or_404(db: AsyncSession, company_id: UUID) -> Company:
    company = await db.get(Company, company_id)
    if company is None or company.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Company not found")
    return company


@router.get("", response_model=List[CompanyResponse])
async def list_companies(
    name: Optional[str] = None,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    query = select(Company).where(Company.deleted_at.is_(None))
    if current_user.role != UserRole.SUPER_ADMIN.value:
        query = query.where(Company.organization_id == current_user.organization_id)
    if name:
        query = query.where(Company.name.ilike(f"%{name}%"))

    result = await db.execute(query.order_by(Company.name))
    return result.scalars().all()


@router.post("", response_model=CompanyResponse)
async def create_company(
    company_data: CompanyCreate,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    company = Company(**company_data.model_dump(), organization_id=current_user.organization_id)
    db.add(company)
    await db.commit()
    await db.refresh(company)
    logger.info(f"✅ Company created: {company.name} ({company.id})")
    return company


@router.post("/check-and-create", response_model=List[CompanyResponse])
async def check_and_create_companies(
    request: CheckAndCreateCompaniesRequest,
    current_user: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Resolve a list of company names to records, creating the ones that do not exist yet.

    Used by lead imports: every imported row names a school, and the import
    needs an id for each one.
    """
    names = list(dict.fromkeys(name.strip() for name in request.company_names if name and name.strip()))
    if not names:
        return []

    organization_id = request.organization_id or current_user.organization_id
    check_same_organization(current_user, organization_id, "Cannot create companies in different organizations")

    query = select(Company).where(Company.name.in_(names), Company.deleted_at.is_(None))
    if current_user.role == UserRole.ADMIN.value or request.organization_id:
        query = query.where(Company.organization_id == organization_id)
    result = await db.execute(query)
    existing = result.scalars().all()

    known = {company.name for company in existing}
    created = [
        Company(name=name, type="schools", organization_id=organization_id)
        for name in names
        if name not in known
    ]
    if created:
        db.add_all(created)
        await db.commit()
        for company in created:
            await db.refresh(company)
        logger.info(f"✅ Created {len(created)} companies for organization {organization_id}")

    return list(existing) + created


@router.post("/research/update")
async def update_company_from_research(
    request: CompanyResearchUpdateRequest,
    current_user: Optional[User] = Depends(require_staff_or_research_callback),
    db: AsyncSession = Depends(get_db)
):
    """Callback target for the research workflow: merge found details and notes into a company."""
    if not request.company_id:
        raise HTTPException(status_code=400, detail="Company ID is required")

    company = await get_company_or_404(db, request.company_id)
    if current_user is not None:
        check_same_organization(current_user, company.organization_id, "Cannot update companies from different organizations")

    fields = request.model_dump(exclude={"company_id", "notes"}, exclude_none=True)
    if not apply_company_update(company, fields, request.notes):
        return {"status": "success", "message": "No updates", "company": _company_dict(company)}

    await db.commit()
    await db.refresh(company)
    logger.info(f"📝 Company {company.id} updated from research")

    return {
        "status": "success",
        "message": "Company updated successfully",
        "company": _company_dict(company)
    }


@router.post("/research")
async def research_company(
    request: CompanyResearchRequest,
    current_user: User = Depends(require_staff_user),
    db: AsyncSession = Depends(get_db)
):
    """Research one company and create the contact found there as a lead."""
    missing = [
        label for label, value in (
            ("companyName", request.company_name),
            ("companyId", request.company_id),
            ("requesterId", request.requester_id),
            ("role", request.role),
        )
        if not value
    ]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing required fields: {', '.join(missing)}"
        )

    company = await get_company_or_404(db, request.company_id)
    check_same_organization(current_user, company.organization_id, "Cannot research companies from different organizations")

    try:
        lead, updated_company = await research_service.research_company(
            db,
            request.company_name,
            request.company_id,
            request.requester_id,
            request.role
        )
    except InsufficientResearchData as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ResearchServiceError as e:
        logger.error(f"❌ Company research failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "status": "success",
        "message": "User created successfully",
        "user": UserResponse.model_validate(lead).model_dump(mode="json"),
        "company": _company_dict(updated_company)
    }


@router.post("/batch-research")
async def batch_research(
    request: BatchResearchRequest,
    current_user: User = Depends(get_current_active_user)
):
    if not request.companies or not request.requester_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid request: companies array and requesterId are required"
        )

    results = await research_service.trigger_batch(
        [{"id": company.id, "name": company.name} for company in request.companies],
        request.requester_id
    )
    failed = sum(1 for result in results if result["status"] == "error")
    logger.info(f"🔎 Batch research started for {len(results)} companies ({failed} failed)")

    return {"status": "success", "results": results}


@router.delete("/{company_id}")
async def delete_company(
    company_id: UUID,
    current_user: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db)
):
    company = await get_company_or_404(db, company_id)
    check_same_organization(current_user, company.organization_id, "Cannot delete companies from different organizations")

    company.deleted_at = datetime.now(timezone.utc)
    await db.commit()
    return {"message": "Company deleted successfully"}
