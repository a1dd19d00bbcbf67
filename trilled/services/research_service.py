# trilled/services/research_service.py
"""
Company research through the external research workflow.

The workflow is given a company and answers with a contact at that company
plus a short description and website. We turn the contact into a lead owned
by the requesting agent and enrich the company record.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

import aiohttp
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.core.config import settings
from trilled.models.models import Company, User, UserRole, UserStatus

logger = logging.getLogger(__name__)

COMPANY_FIELDS = (
    "website", "street_address", "neighborhood", "city", "state",
    "postal_code", "country", "type", "description",
)


class ResearchServiceError(Exception):
    """The research workflow could not be reached or reported a failure."""


class InsufficientResearchData(ResearchServiceError):
    """The workflow answered but did not identify a usable contact."""


def append_research_notes(existing: Optional[str], notes: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    entry = f"AI Research Update ({stamp}):\n{notes}"
    return f"{existing}\n\n{entry}" if existing else entry


def split_name(name: str) -> Tuple[str, Optional[str]]:
    """First token is the first name; the rest, if any, is the last name."""
    first, _, rest = name.strip().partition(" ")
    rest = " ".join(rest.split())
    return first, rest or None


def extract_user_info(data: Dict[str, Any], company_id: UUID, requester_id: UUID) -> Optional[Dict[str, Any]]:
    """Lead fields from the workflow output, preferring the structured user_position answer."""
    output = data.get("output") or {}
    user_info = None

    if output.get("user_position"):
        try:
            position = json.loads(output["user_position"])
            name_parts = position["name"].split(" ")
            first_name, last_parts = name_parts[0], name_parts[1:]
            user_info = {
                "first_name": first_name,
                "last_name": " ".join(last_parts),
                # The workflow does not return addresses; this placeholder is edited by the agent
                "email": f"{first_name.lower()}.{''.join(last_parts).lower()}@example.com",
                "position": position.get("role"),
            }
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"❌ Could not parse user_position from research output: {e}")

    if user_info is None and data.get("first_name"):
        user_info = {
            "first_name": data["first_name"],
            "last_name": data.get("last_name") or "",
            "email": data.get("email") or "",
            "position": data.get("position") or "",
        }

    if user_info is None:
        return None

    user_info.update({
        "company_id": company_id,
        "owner_id": requester_id,
        "role": UserRole.LEAD.value,
        "status": UserStatus.NEW.value,
    })
    return user_info


def extract_company_info(data: Dict[str, Any]) -> Optional[Dict[str, str]]:
    output = data.get("output") or {}
    info = {
        "website": output.get("company_website") or "",
        "description": output.get("company_description") or "",
    }
    if not any(value.strip() for value in info.values()):
        return None
    return info


def apply_company_update(company: Company, fields: Dict[str, Any], notes: Optional[str] = None) -> bool:
    """Set the non-empty fields on the company and append notes. Returns whether anything changed."""
    changed = False
    for field in COMPANY_FIELDS:
        value = fields.get(field)
        if value:
            setattr(company, field, value)
            changed = True
    if notes:
        company.notes = append_research_notes(company.notes, notes)
        changed = True
    return changed


class ResearchService:
    """Client for the research workflow"""

    def is_configured(self) -> bool:
        return bool(settings.RESEARCH_API_URL and settings.RESEARCH_API_KEY)

    async def trigger(
        self,
        company_name: str,
        company_id: UUID,
        requester_id: UUID,
        role: str
    ) -> Dict[str, Any]:
        if not self.is_configured():
            raise ResearchServiceError("Research API is not configured")

        payload = {
            "params": {
                "company_name": company_name,
                "role": role,
                "company_id": str(company_id),
                "requester_id": str(requester_id),
                "app_url": settings.APP_URL,
            },
            "project": settings.RESEARCH_PROJECT_ID,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": settings.RESEARCH_API_KEY,
        }

        logger.info(f"🔎 Requesting research for company {company_name} ({company_id})")
        try:
            timeout = aiohttp.ClientTimeout(total=settings.RESEARCH_TIMEOUT_SECONDS)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(settings.RESEARCH_API_URL, json=payload, headers=headers) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"❌ Research API error: {response.status} - {error_text}")
                        raise ResearchServiceError(f"Failed to fetch AI research: {response.status}")
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ResearchServiceError(f"Failed to reach research API: {e}") from e

        if data.get("status") == "failed":
            errors = data.get("errors") or [{}]
            error_info = errors[0].get("body") or "No results returned"
            # The workflow's own callback to app_url can fail while the answer is still usable
            if "fetch failed" not in error_info:
                raise ResearchServiceError(f"AI research failed: {error_info}")
            logger.warning("⚠️  Ignoring research callback failure, processing available data")

        return data

    async def research_company(
        self,
        db: AsyncSession,
        company_name: str,
        company_id: UUID,
        requester_id: UUID,
        role: str
    ) -> Tuple[User, Optional[Company]]:
        """Run research and persist the resulting lead and company enrichment."""
        data = await self.trigger(company_name, company_id, requester_id, role)

        user_info = extract_user_info(data, company_id, requester_id)
        if user_info is None:
            raise InsufficientResearchData("AI research returned insufficient contact information")

        company = await db.get(Company, company_id)
        lead = User(**user_info, organization_id=company.organization_id if company else None)
        db.add(lead)
        await db.commit()
        await db.refresh(lead)
        logger.info(f"✅ Lead created from research: {lead.email}")

        updated_company = None
        company_info = extract_company_info(data)
        if company_info and company is not None:
            try:
                if apply_company_update(company, company_info):
                    await db.commit()
                    await db.refresh(company)
                    updated_company = company
            except Exception as e:
                # Enrichment is best effort; the lead is already saved
                logger.error(f"❌ Failed to update company {company_id} from research: {e}")
                await db.rollback()

        return lead, updated_company

    async def trigger_batch(self, companies: List[Dict[str, Any]], requester_id: UUID) -> List[Dict[str, Any]]:
        """Start research for many companies concurrently; results arrive through the workflow callback."""
        async def run(company):
            try:
                await self.trigger(company["name"], company["id"], requester_id, UserRole.LEAD.value)
                return {"companyId": str(company["id"]), "status": "success"}
            except Exception as e:
                logger.error(f"❌ Research failed for company {company['id']}: {e}")
                return {"companyId": str(company["id"]), "status": "error", "error": str(e)}

        return list(await asyncio.gather(*(run(company) for company in companies)))


# Global instance
research_service = ResearchService()
