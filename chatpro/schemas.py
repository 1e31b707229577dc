"""
Pydantic schemas for the chat client's data contracts.

This module contains:
- Identity and directory records as stored in the document store
- Message records for channel streams
- Challenge and provider identity models
- Health status model

Stored documents use camelCase keys; models expose snake_case attributes
through aliases and accept either form.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from chatpro.utils import is_ascii_digits


def validate_e164(value: str, field_name: str = "phone") -> str:
    """Validate E.164-like phone number format: starts with +, then digits only."""
    if not value.startswith("+"):
        raise ValueError(f"{field_name} must start with '+'")
    if len(value) < 2:
        raise ValueError(f"{field_name} must have at least one digit after '+'")
    if not is_ascii_digits(value[1:]):
        raise ValueError(f"{field_name} must contain only digits after '+'")
    return value


# =============================================================================
# Input Models
# =============================================================================

class Country(BaseModel):
    """A dialling prefix the user picked before typing the local number."""
    code: str = Field(..., description="Dialling prefix, e.g. +967")
    name: str = Field(default="", description="Display name")

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str, info) -> str:
        return validate_e164(v, info.field_name)


# =============================================================================
# Stored Records
# =============================================================================

class Identity(BaseModel):
    """
    A user's profile record, stored privately and mirrored in the public
    directory.

    Validates:
    - display_name: non-empty after trimming
    - phone: E.164-like format
    """
    id: str = Field(..., alias="uid", min_length=1, description="Provider-assigned identity id")
    display_name: str = Field(..., alias="displayName", description="Trimmed display name")
    phone: str = Field(..., description="Phone number in E.164 format")
    last_seen_at: Optional[datetime] = Field(
        None,
        alias="lastSeenAt",
        description="Server timestamp of the last profile refresh"
    )
    avatar_tag: str = Field(default="", alias="avatarTag", description="Avatar colour tag")

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("display_name must not be blank")
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str, info) -> str:
        return validate_e164(v, info.field_name)

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


class Message(BaseModel):
    """
    A message in a channel.

    ``id`` comes from the store document id and ``sent_at`` from the store
    clock; the client never sets either.
    """
    id: str = Field(..., description="Store-assigned message id")
    text: str = Field(..., min_length=1, description="Message text")
    sender_id: str = Field(..., alias="senderId", description="Sender identity id")
    sent_at: datetime = Field(..., alias="sentAt", description="Server-assigned timestamp")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


# =============================================================================
# Provider Models
# =============================================================================

class Challenge(BaseModel):
    """A pending phone-ownership proof issued by a challenge provider."""
    token: str = Field(..., description="Opaque provider token")
    target_phone: str = Field(..., alias="targetPhone")
    created_at: datetime = Field(..., alias="createdAt")
    consumed: bool = False

    model_config = {"populate_by_name": True}


class AuthenticatedIdentity(BaseModel):
    """What the provider knows about a verified user."""
    uid: str = Field(..., min_length=1)
    phone: str

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str, info) -> str:
        return validate_e164(v, info.field_name)


# =============================================================================
# Status Models
# =============================================================================

class HealthStatus(BaseModel):
    """Result of a client health check."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
