"""
Unit tests for company endpoints and the research callbacks.
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, AsyncMock, patch
from uuid import uuid4

from fastapi import HTTPException

from trilled.models.models import Company, User
from trilled.schemas.schemas import (
    BatchResearchRequest,
    CheckAndCreateCompaniesRequest,
    CompanyResearchRequest,
    CompanyResearchUpdateRequest,
    ResearchUserRequest,
)
from trilled.services.research_service import InsufficientResearchData, ResearchServiceError


def scalars_of(items):
    return Mock(scalars=Mock(return_value=Mock(all=Mock(return_value=items))))


@pytest.fixture
def company(organization_id):
    return Company(id=uuid4(), name="Oak School", type="schools", organization_id=organization_id)


class TestCheckAndCreate:

    @pytest.mark.asyncio
    async def test_creates_only_missing_names(self, mock_db_session, admin_user, company):
        from trilled.api.companies import check_and_create_companies
        mock_db_session.execute.return_value = scalars_of([company])

        async def refresh(obj):
            obj.id = uuid4()
        mock_db_session.refresh.side_effect = refresh

        companies = await check_and_create_companies(
            CheckAndCreateCompaniesRequest(companyNames=["Oak School", " Elm Academy ", "Elm Academy", ""]),
            current_user=admin_user,
            db=mock_db_session
        )

        assert [c.name for c in companies] == ["Oak School", "Elm Academy"]
        created = mock_db_session.add_all.call_args[0][0]
        assert len(created) == 1
        assert created[0].type == "schools"
        assert created[0].organization_id == admin_user.organization_id

    @pytest.mark.asyncio
    async def test_all_known(self, mock_db_session, admin_user, company):
        from trilled.api.companies import check_and_create_companies
        mock_db_session.execute.return_value = scalars_of([company])

        companies = await check_and_create_companies(
            CheckAndCreateCompaniesRequest(companyNames=["Oak School"]),
            current_user=admin_user,
            db=mock_db_session
        )

        assert companies == [company]
        mock_db_session.add_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_list(self, mock_db_session, admin_user):
        from trilled.api.companies import check_and_create_companies

        assert await check_and_create_companies(
            CheckAndCreateCompaniesRequest(), current_user=admin_user, db=mock_db_session
        ) == []
        mock_db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_organization_refused(self, mock_db_session, admin_user):
        from trilled.api.companies import check_and_create_companies

        with pytest.raises(HTTPException) as exc_info:
            await check_and_create_companies(
                CheckAndCreateCompaniesRequest(companyNames=["Oak"], organizationId=uuid4()),
                current_user=admin_user,
                db=mock_db_session
            )
        assert exc_info.value.status_code == 403


class TestResearchUpdate:

    @pytest.mark.asyncio
    async def test_company_id_required(self, mock_db_session):
        from trilled.api.companies import update_company_from_research

        with pytest.raises(HTTPException) as exc_info:
            await update_company_from_research(CompanyResearchUpdateRequest(), current_user=None, db=mock_db_session)

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == "Company ID is required"

    @pytest.mark.asyncio
    async def test_unknown_company(self, mock_db_session):
        from trilled.api.companies import update_company_from_research
        mock_db_session.get.return_value = None

        with pytest.raises(HTTPException) as exc_info:
            await update_company_from_research(
                CompanyResearchUpdateRequest(companyId=uuid4()), current_user=None, db=mock_db_session
            )

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_callback_merges_fields_and_notes(self, mock_db_session, company):
        from trilled.api.companies import update_company_from_research
        mock_db_session.get.return_value = company

        response = await update_company_from_research(
            CompanyResearchUpdateRequest(companyId=company.id, city="Austin", state="", notes="Founded 1962"),
            current_user=None,
            db=mock_db_session
        )

        assert response["status"] == "success"
        assert response["message"] == "Company updated successfully"
        assert response["company"]["city"] == "Austin"
        assert company.state is None
        assert "AI Research Update" in company.notes
        assert company.notes.endswith("Founded 1962")
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nothing_to_update(self, mock_db_session, company):
        from trilled.api.companies import update_company_from_research
        mock_db_session.get.return_value = company

        response = await update_company_from_research(
            CompanyResearchUpdateRequest(companyId=company.id), current_user=None, db=mock_db_session
        )

        assert response["message"] == "No updates"
        mock_db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_staff_from_other_organization_refused(self, mock_db_session, make_user, company):
        from trilled.api.companies import update_company_from_research
        mock_db_session.get.return_value = company

        with pytest.raises(HTTPException) as exc_info:
            await update_company_from_research(
                CompanyResearchUpdateRequest(companyId=company.id, city="Austin"),
                current_user=make_user("agent"),
                db=mock_db_session
            )
        assert exc_info.value.status_code == 403


class TestResearchCompany:

    @pytest.mark.asyncio
    async def test_missing_fields_listed(self, mock_db_session, agent_user):
        from trilled.api.companies import research_company

        with pytest.raises(HTTPException) as exc_info:
            await research_company(
                CompanyResearchRequest(companyName="Oak", role="Principal"),
                current_user=agent_user,
                db=mock_db_session
            )

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == "Missing required fields: companyId, requesterId"

    @pytest.mark.asyncio
    async def test_lead_returned(self, mock_db_session, agent_user, company):
        from trilled.api.companies import research_company
        mock_db_session.get.return_value = company
        lead = User(id=uuid4(), email="lee.park@example.com", role="lead", status="new", company_id=company.id)

        with patch("trilled.api.companies.research_service") as service:
            service.research_company = AsyncMock(return_value=(lead, None))
            response = await research_company(
                CompanyResearchRequest(
                    companyName="Oak School", companyId=company.id, requesterId=agent_user.id, role="Principal"
                ),
                current_user=agent_user,
                db=mock_db_session
            )

        assert response["message"] == "User created successfully"
        assert response["user"]["email"] == "lee.park@example.com"
        assert response["company"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,status_code", [
        (InsufficientResearchData("no contact"), 422),
        (ResearchServiceError("upstream down"), 502),
    ])
    async def test_research_errors(self, mock_db_session, agent_user, company, error, status_code):
        from trilled.api.companies import research_company
        mock_db_session.get.return_value = company

        with patch("trilled.api.companies.research_service") as service:
            service.research_company = AsyncMock(side_effect=error)
            with pytest.raises(HTTPException) as exc_info:
                await research_company(
                    CompanyResearchRequest(
                        companyName="Oak School", companyId=company.id, requesterId=agent_user.id, role="Principal"
                    ),
                    current_user=agent_user,
                    db=mock_db_session
                )

        assert exc_info.value.status_code == status_code


class TestBatchResearch:

    @pytest.mark.asyncio
    async def test_requires_companies_and_requester(self, agent_user):
        from trilled.api.companies import batch_research

        with pytest.raises(HTTPException) as exc_info:
            await batch_research(BatchResearchRequest(companies=[]), current_user=agent_user)

        assert exc_info.value.detail == "Invalid request: companies array and requesterId are required"

    @pytest.mark.asyncio
    async def test_results_passed_through(self, agent_user):
        from trilled.api.companies import batch_research
        company_id = uuid4()
        results = [{"companyId": str(company_id), "status": "success"}]

        with patch("trilled.api.companies.research_service") as service:
            service.trigger_batch = AsyncMock(return_value=results)
            response = await batch_research(
                BatchResearchRequest(companies=[{"id": company_id, "name": "Oak"}], requesterId=agent_user.id),
                current_user=agent_user
            )

        assert response == {"status": "success", "results": results}
        service.trigger_batch.assert_awaited_once_with([{"id": company_id, "name": "Oak"}], agent_user.id)


class TestResearchUsers:

    @pytest.mark.asyncio
    async def test_missing_fields(self, mock_db_session):
        from trilled.api.research import create_researched_user

        with pytest.raises(HTTPException) as exc_info:
            await create_researched_user(
                ResearchUserRequest(name="Lee Park"), current_user=None, db=mock_db_session
            )

        assert exc_info.value.detail == "Missing required fields"

    @pytest.mark.asyncio
    async def test_lead_created_in_company_organization(self, mock_db_session, company):
        from trilled.api.research import create_researched_user
        mock_db_session.get.return_value = company
        owner_id = uuid4()

        lead = await create_researched_user(
            ResearchUserRequest(
                companyId=company.id, name="Lee  Park", email="lee@oak.example",
                position="Registrar", ownerId=owner_id
            ),
            current_user=None,
            db=mock_db_session
        )

        assert lead.first_name == "Lee"
        assert lead.last_name == "Park"
        assert lead.role == "lead"
        assert lead.status == "new"
        assert lead.owner_id == owner_id
        assert lead.organization_id == company.organization_id
        mock_db_session.add.assert_called_once_with(lead)


class TestDeleteCompany:

    @pytest.mark.asyncio
    async def test_soft_delete(self, mock_db_session, admin_user, company):
        from trilled.api.companies import delete_company
        mock_db_session.get.return_value = company

        response = await delete_company(company.id, current_user=admin_user, db=mock_db_session)

        assert response == {"message": "Company deleted successfully"}
        assert company.deleted_at is not None

    @pytest.mark.asyncio
    async def test_already_deleted(self, mock_db_session, admin_user, company):
        from trilled.api.companies import delete_company
        company.deleted_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        mock_db_session.get.return_value = company

        with pytest.raises(HTTPException) as exc_info:
            await delete_company(company.id, current_user=admin_user, db=mock_db_session)

        assert exc_info.value.status_code == 404
