# tests/conftest.py
import os

# Settings are read at import time; keep tests away from real providers
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("APP_URL", "https://crm.example.test")
for _name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "SENDGRID_API_KEY", "RESEARCH_API_URL"):
    os.environ.pop(_name, None)

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, AsyncMock
from uuid import uuid4

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.models.models import User


def build_user(role="agent", organization_id=None, **fields):
    """Mock user row with the attributes handlers read."""
    user = Mock(spec=User)
    user.id = fields.pop("id", uuid4())
    user.email = fields.pop("email", f"{role}@example.com")
    user.first_name = fields.pop("first_name", role.capitalize())
    user.last_name = fields.pop("last_name", "User")
    user.role = role
    user.status = fields.pop("status", "new")
    user.is_active = fields.pop("is_active", True)
    user.organization_id = organization_id if organization_id is not None else uuid4()
    user.owner_id = fields.pop("owner_id", None)
    user.notes = fields.pop("notes", None)
    user.deleted_at = fields.pop("deleted_at", None)
    user.created_at = fields.pop("created_at", datetime(2024, 1, 1, tzinfo=timezone.utc))
    for name, value in fields.items():
        setattr(user, name, value)
    return user


@pytest.fixture
def mock_db_session():
    """Create a mock database session."""
    session = AsyncMock(spec=AsyncSession)
    session.add = Mock()
    session.add_all = Mock()
    return session


@pytest.fixture
def organization_id():
    return uuid4()


@pytest.fixture
def admin_user(organization_id):
    return build_user("admin", organization_id)


@pytest.fixture
def agent_user(organization_id):
    return build_user("agent", organization_id)


@pytest.fixture
def super_admin_user():
    return build_user("super_admin")


@pytest.fixture
async def client():
    """HTTP client against the app without running its lifespan."""
    from trilled.main import app
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_user():
    """Factory for mock users of any role."""
    return build_user
