"""
API request and response models for otpauth REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Wire format is camelCase (accessToken, refreshToken, isVerified); Python
attributes stay snake_case through the to_camel alias generator.
"""

from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator
from pydantic.alias_generators import to_camel

from auth.models import User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OTP_PATTERN = r"^[0-9]{6}$"

_Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=50)]
_Password = Annotated[str, Field(min_length=6, max_length=50)]
_Otp = Annotated[str, Field(min_length=6, max_length=6, pattern=OTP_PATTERN)]


class _CamelModel(BaseModel):
    # No str_strip_whitespace here: passwords must reach bcrypt byte-for-byte.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _EmailModel(_CamelModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_EmailModel):
    """Request body for POST /auth/register."""

    name: _Name
    password: _Password


class LoginRequest(_EmailModel):
    password: str = Field(min_length=1, max_length=255)


class VerifyEmailRequest(_EmailModel):
    otp: _Otp


class EmailRequest(_EmailModel):
    """Request body for POST /auth/forgot-password and /auth/resend-verification."""


class ResetPasswordRequest(_EmailModel):
    otp: _Otp
    password: _Password


class RefreshTokenRequest(_CamelModel):
    """Optional body for POST /auth/refresh-token and /auth/logout.

    The httpOnly cookie is the preferred transport; the body is a fallback
    for clients that cannot use cookies.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ProfileUpdate(_CamelModel):
    """Request body for PUT /users/me."""

    name: _Name


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ApiResponse(BaseModel):
    """Success envelope: {"success": true, "message": ..., "data": ...}."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str
    data: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    message: str


class EmailData(_CamelModel):
    email: str


class AccessTokenData(_CamelModel):
    access_token: str


class ResetData(_CamelModel):
    success: bool = True


class UserProfile(_CamelModel):
    """Public view of a User -- never includes password or code hashes."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    is_verified: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            is_verified=user.is_verified,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


def envelope(message: str, data: Optional[BaseModel] = None) -> dict:
    """Serialize a success envelope with camelCase data keys."""
    payload = data.model_dump(by_alias=True) if data is not None else None
    return ApiResponse(message=message, data=payload).model_dump()
