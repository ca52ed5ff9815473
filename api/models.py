"""
API request and response models for LabAccess REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field

from auth.details import details_to_dict
from auth.models import Role, SessionAssertion, User, UserSummary

# Character cap only. The 72-byte bcrypt limit is enforced by
# auth.tokens.check_password_strength(), since multibyte characters count more.
_PASSWORD_MAX = 64

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    super_admin = "super_admin"
    administrador = "administrador"
    laboratorista = "laboratorista"
    cliente = "cliente"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/users.

    role also accepts the legacy key "tipo". details is the role-dependent
    payload (razonSocial for clients, nivelAcceso for administrators, ...);
    it is shaped and validated by the domain layer, not here.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    email: EmailStr
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    name: str = Field(min_length=1, max_length=255)
    document: str = Field(min_length=1, max_length=64)
    phone: Optional[str] = Field(default=None, max_length=64)
    address: Optional[str] = Field(default=None, max_length=500)
    role: RoleEnum = Field(validation_alias=AliasChoices("role", "tipo"))
    details: dict[str, Any] = Field(default_factory=dict)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. Only the keys sent are applied.

    extra="forbid" rejects id, hashed_password and anything else the patch
    may not carry.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=1, max_length=_PASSWORD_MAX)
    name: Optional[str] = Field(default=None, max_length=255)
    document: Optional[str] = Field(default=None, max_length=64)
    phone: Optional[str] = Field(default=None, max_length=64)
    address: Optional[str] = Field(default=None, max_length=500)
    role: Optional[RoleEnum] = Field(default=None, validation_alias=AliasChoices("role", "tipo"))
    details: Optional[dict[str, Any]] = None

    def to_patch(self) -> dict[str, Any]:
        patch = self.model_dump(exclude_unset=True)
        if isinstance(patch.get("role"), RoleEnum):
            patch["role"] = patch["role"].value
        return patch


class StatusPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}/status."""

    active: bool


class RecoveryRequest(BaseModel):
    """Request body for POST /api/v1/auth/recovery."""

    email: EmailStr


class RecoveryResetRequest(BaseModel):
    """Request body for POST /api/v1/auth/recovery/reset."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionUser(BaseModel):
    """Identity carried by a session assertion."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: str
    permissions: list[str]
    expires_at: int

    @classmethod
    def from_session(cls, session: SessionAssertion) -> "SessionUser":
        return cls(
            id=session.id,
            email=session.email,
            name=session.name,
            role=session.role_name,
            permissions=list(session.permissions),
            expires_at=session.expires_at,
        )


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: SessionUser


class UserResponse(BaseModel):
    """Full user view. Never includes the password hash or recovery state."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    document: str
    phone: Optional[str] = None
    address: Optional[str] = None
    role: str
    permissions: list[str]
    is_active: bool
    details: dict[str, Any]
    created_at: str
    updated_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            document=user.document,
            phone=user.phone,
            address=user.address,
            role=user.role_name,
            permissions=list(user.permissions),
            is_active=user.is_active,
            details=details_to_dict(user.details),
            created_at=user.created_at or "",
            updated_at=user.updated_at,
        )


class UserSummaryResponse(BaseModel):
    """Row in GET /api/v1/users. No credential, no details."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    document: str
    phone: Optional[str] = None
    address: Optional[str] = None
    role: str
    is_active: bool
    created_at: str

    @classmethod
    def from_summary(cls, summary: UserSummary) -> "UserSummaryResponse":
        return cls(
            id=summary.id,
            email=summary.email,
            name=summary.name,
            document=summary.document,
            phone=summary.phone,
            address=summary.address,
            role=summary.role_name,
            is_active=summary.is_active,
            created_at=summary.created_at or "",
        )


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    permissions: list[str]
    description: str

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(name=role.name, permissions=list(role.permissions), description=role.description)


class TokenCheckResponse(BaseModel):
    """Response for GET /api/v1/auth/recovery/{token}."""

    model_config = ConfigDict(frozen=True)

    valid: bool = True
    email: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    detail: Optional[str] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
