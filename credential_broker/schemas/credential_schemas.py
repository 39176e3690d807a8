"""
Pydantic schemas for stored credentials.

Read models never carry vault handles or secret values; the management
surface only ever sees metadata.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from ..constants import AuthType, CredentialStatus


class ApiKeySubmission(BaseModel):
    """API key pasted by a user through the management surface."""

    model_config = ConfigDict(extra="forbid")

    provider: str = Field(..., min_length=1, max_length=100)
    api_key: SecretStr = Field(..., description="The raw key; only ever passed to the vault")
    scopes: Optional[List[str]] = Field(None, description="Defaults to all provider scopes")
    external_account_id: Optional[str] = Field(None, max_length=255)

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: SecretStr):
        """Keys must be non-empty and free of surrounding whitespace."""
        raw = v.get_secret_value()
        if not raw:
            raise ValueError("API key cannot be empty")
        if raw != raw.strip():
            raise ValueError("API keys cannot have leading or trailing whitespace")
        return v


class CredentialRead(BaseModel):
    """Credential metadata safe to show to the owning user."""

    id: str
    owner_user_id: str
    provider: str
    auth_type: AuthType
    external_account_id: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    status: CredentialStatus
    status_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_validated_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)  # Allow creation from SQLAlchemy models
