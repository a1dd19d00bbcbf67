# trilled/schemas/schemas.py
from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID
from enum import Enum


class LostReason(str, Enum):
    BUDGET = "budget"
    COMPETITOR = "competitor"
    TIMING = "timing"
    NEEDS = "needs"
    OTHER = "other"


class PhoneStatusValue(str, Enum):
    AVAILABLE = "available"
    AWAY = "away"
    OFFLINE = "offline"


# Token Schemas
class TokenPayload(BaseModel):
    sub: str
    organization_id: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    exp: Optional[int] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class SetPasswordRequest(BaseModel):
    password: str = Field(..., min_length=8)


# Organization Schemas
class OrganizationSignupRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class OrganizationUpdate(BaseModel):
    name: Optional[str] = None
    plan: Optional[str] = None
    subscription_status: Optional[str] = None
    max_users: Optional[int] = None


class OrganizationResponse(BaseModel):
    id: UUID
    name: str
    slug: str
    plan: Optional[str] = None
    subscription_status: Optional[str] = None
    max_users: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# User Schemas
class UserResponse(BaseModel):
    id: UUID
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None
    position: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    lead_type: Optional[str] = None
    twilio_phone: Optional[str] = None
    owner_id: Optional[UUID] = None
    company_id: Optional[UUID] = None
    referral_company_id: Optional[UUID] = None
    organization_id: Optional[UUID] = None
    lost_reason: Optional[str] = None
    lost_at: Optional[datetime] = None
    won_at: Optional[datetime] = None
    won_by: Optional[UUID] = None
    created_by: Optional[UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OrganizationSignupResponse(BaseModel):
    organization: OrganizationResponse
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class UserCreateRequest(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "lead"
    status: Optional[str] = None
    position: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    lead_type: Optional[str] = None
    company_id: Optional[UUID] = None
    referral_company_id: Optional[UUID] = None
    owner_id: Optional[UUID] = None
    organization_id: Optional[UUID] = None


class UserUpdateRequest(BaseModel):
    id: UUID
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None
    position: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    lead_type: Optional[str] = None
    company_id: Optional[UUID] = None
    owner_id: Optional[UUID] = None


class EmailListRequest(BaseModel):
    emails: List[str] = []


class CheckOwnersRequest(BaseModel):
    emails: List[str] = []
    organization_id: Optional[UUID] = Field(None, alias="organizationId")

    model_config = ConfigDict(populate_by_name=True)


class ExistingUserResponse(BaseModel):
    id: UUID
    email: str

    model_config = ConfigDict(from_attributes=True)


class ConvertToCustomerRequest(BaseModel):
    user_id: Optional[UUID] = Field(None, alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class InviteRequest(BaseModel):
    email: Optional[str] = None
    user_data: Dict[str, Any] = Field(default_factory=dict, alias="userData")

    model_config = ConfigDict(populate_by_name=True)


class MarkLostRequest(BaseModel):
    reason: LostReason
    other_reason: Optional[str] = Field(None, alias="otherReason")

    model_config = ConfigDict(populate_by_name=True)


class NoteCreate(BaseModel):
    content: str = Field(..., min_length=1)


# Follow-up Schemas
class FollowUpCreate(BaseModel):
    date: datetime
    type: str = "email"
    user_id: UUID
    notes: Optional[str] = None


class FollowUpBulkRequest(BaseModel):
    follow_ups: List[FollowUpCreate] = Field(default_factory=list, alias="followUps")

    model_config = ConfigDict(populate_by_name=True)


class FollowUpUpdate(BaseModel):
    type: Optional[str] = None
    completed: Optional[bool] = None
    notes: Optional[str] = None


class FollowUpSequenceRequest(BaseModel):
    type: str = "email"


class FollowUpResponse(BaseModel):
    id: UUID
    date: datetime
    type: Optional[str] = None
    user_id: UUID
    completed_at: Optional[datetime] = None
    next_follow_up_id: Optional[UUID] = None
    notes: Optional[str] = None
    sequence_day: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class UserDetailResponse(BaseModel):
    user: UserResponse
    follow_ups: List[FollowUpResponse]


# Company Schemas
class CompanyCreate(BaseModel):
    name: str = Field(..., min_length=1)
    type: str = "schools"
    website: Optional[str] = None
    street_address: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None


class CompanyResponse(BaseModel):
    id: UUID
    name: str
    type: Optional[str] = None
    organization_id: Optional[UUID] = None
    website: Optional[str] = None
    street_address: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CheckAndCreateCompaniesRequest(BaseModel):
    company_names: List[str] = Field(default_factory=list, alias="companyNames")
    organization_id: Optional[UUID] = Field(None, alias="organizationId")

    model_config = ConfigDict(populate_by_name=True)


class CompanyResearchUpdateRequest(BaseModel):
    company_id: Optional[UUID] = Field(None, alias="companyId")
    website: Optional[str] = None
    street_address: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    type: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class CompanyResearchRequest(BaseModel):
    company_name: Optional[str] = Field(None, alias="companyName")
    company_id: Optional[UUID] = Field(None, alias="companyId")
    requester_id: Optional[UUID] = Field(None, alias="requesterId")
    role: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class BatchResearchCompany(BaseModel):
    id: UUID
    name: str


class BatchResearchRequest(BaseModel):
    companies: List[BatchResearchCompany] = []
    requester_id: Optional[UUID] = Field(None, alias="requesterId")

    model_config = ConfigDict(populate_by_name=True)


class ResearchUserRequest(BaseModel):
    company_id: Optional[UUID] = Field(None, alias="companyId")
    name: Optional[str] = None
    email: Optional[str] = None
    position: Optional[str] = None
    owner_id: Optional[UUID] = Field(None, alias="ownerId")

    model_config = ConfigDict(populate_by_name=True)


# Telephony Schemas
class CallCreateRequest(BaseModel):
    from_: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None
    url: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class CallSidRequest(BaseModel):
    call_sid: Optional[str] = Field(None, alias="callSid")

    model_config = ConfigDict(populate_by_name=True)


class SmsRequest(BaseModel):
    from_: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None
    body: Optional[str] = None
    user_id: Optional[UUID] = Field(None, alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class PhoneStatusUpdate(BaseModel):
    status: PhoneStatusValue


# Email Schemas
class EmailSendRequest(BaseModel):
    to: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    user_id: Optional[UUID] = Field(None, alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class EmailIntegrationResponse(BaseModel):
    id: UUID
    provider: str
    email: str
    token_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
