# trilled/models/__init__.py
from .models import (
    Base,
    Organization,
    User,
    Company,
    FollowUp,
    Communication,
    UserGroup,
    GroupMembership,
    UserPhoneStatus,
    Call,
    EmailIntegration,
    Integration,
    RefreshToken,
    AuthCode,
    UserRole,
    UserStatus,
    LeadType,
    FollowUpType,
    CommunicationDirection,
    CommunicationType,
    PhoneStatus,
    EmailProvider,
    AuthCodePurpose
)

__all__ = [
    "Base",
    "Organization",
    "User",
    "Company",
    "FollowUp",
    "Communication",
    "UserGroup",
    "GroupMembership",
    "UserPhoneStatus",
    "Call",
    "EmailIntegration",
    "Integration",
    "RefreshToken",
    "AuthCode",
    "UserRole",
    "UserStatus",
    "LeadType",
    "FollowUpType",
    "CommunicationDirection",
    "CommunicationType",
    "PhoneStatus",
    "EmailProvider",
    "AuthCodePurpose"
]
