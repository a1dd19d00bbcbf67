# trilled/schemas/__init__.py
from .schemas import (
    # Token
    TokenPayload,
    TokenResponse,
    RefreshTokenRequest,
    UserLogin,
    SetPasswordRequest,

    # Organization
    OrganizationSignupRequest,
    OrganizationSignupResponse,
    OrganizationResponse,
    OrganizationUpdate,

    # User
    UserResponse,
    UserCreateRequest,
    UserUpdateRequest,
    UserDetailResponse,

    # Follow-up
    FollowUpCreate,
    FollowUpUpdate,
    FollowUpResponse,

    # Company
    CompanyCreate,
    CompanyResponse,

    # Email
    EmailSendRequest,
    EmailIntegrationResponse
)

__all__ = [
    # Token
    "TokenPayload",
    "TokenResponse",
    "RefreshTokenRequest",
    "UserLogin",
    "SetPasswordRequest",

    # Organization
    "OrganizationSignupRequest",
    "OrganizationSignupResponse",
    "OrganizationResponse",
    "OrganizationUpdate",

    # User
    "UserResponse",
    "UserCreateRequest",
    "UserUpdateRequest",
    "UserDetailResponse",

    # Follow-up
    "FollowUpCreate",
    "FollowUpUpdate",
    "FollowUpResponse",

    # Company
    "CompanyCreate",
    "CompanyResponse",

    # Email
    "EmailSendRequest",
    "EmailIntegrationResponse"
]
