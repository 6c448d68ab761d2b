from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from yoink.storage.models import MembershipRole

_ERROR_CODE = re.compile(r"^[a-z][a-z0-9_]*$")


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is a stable snake_case identifier."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not _ERROR_CODE.match(value):
            raise ValueError(f"Invalid error code '{value}'; expected snake_case")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class UserResponse(BaseModel):
    id: str
    email: str
    organization_id: str


class OrganizationResponse(BaseModel):
    id: str
    name: str


class SessionInfoResponse(BaseModel):
    user: UserResponse
    organization: OrganizationResponse
    auth_method: Literal["session", "token"]


class OrganizationSummaryResponse(BaseModel):
    id: str
    name: str
    role: MembershipRole
    is_personal_org: bool
    is_current: bool = False


class OrganizationListResponse(BaseModel):
    organizations: List[OrganizationSummaryResponse]
    current_organization_id: str


class SwitchOrganizationRequest(BaseModel):
    organization_id: str = Field(..., min_length=1, max_length=64)


class LeaveOrganizationResponse(BaseModel):
    organization_id: str
    left: bool = True


class CreateTokenRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    organization_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class TokenResponse(BaseModel):
    id: str
    name: str
    organization_id: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None


class CreatedTokenResponse(BaseModel):
    token: TokenResponse
    # Shown exactly once; only the hash is stored.
    raw_token: str


class TokenListResponse(BaseModel):
    tokens: List[TokenResponse]
