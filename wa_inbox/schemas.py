"""
Pydantic schemas for request/response validation.

This module contains:
- WhatsApp Cloud API webhook envelope models
- Request models for the contact, config and send endpoints
- Response models for API responses
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from wa_inbox.utils import parse_unix_timestamp


WHATSAPP_OBJECT = "whatsapp_business_account"
MESSAGES_FIELD = "messages"


# =============================================================================
# Webhook Envelope Models
# =============================================================================

class WebhookChange(BaseModel):
    """
    One change inside an entry. The shape of `value` depends on `field`,
    so it is left untyped here and validated once the field is known.
    """
    field: str
    value: Any = None

    model_config = ConfigDict(extra="allow")


class WebhookEntry(BaseModel):
    """An entry groups changes for one WhatsApp Business Account (id = WABA id)."""
    id: Optional[str] = None
    changes: list[WebhookChange] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class WebhookEnvelope(BaseModel):
    """
    Top-level webhook delivery.

    ref: https://developers.facebook.com/docs/whatsapp/cloud-api/webhooks/payload-examples
    """
    object: str
    entry: list[WebhookEntry] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class ChangeMetadata(BaseModel):
    """Identifies which business phone number received the traffic."""
    phone_number_id: str = Field(..., min_length=1)
    display_phone_number: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class TextContent(BaseModel):
    body: Optional[str] = None


class InboundMessageEvent(BaseModel):
    """A message a customer sent to the business."""
    from_id: str = Field(..., alias="from", min_length=1)
    id: str = Field(..., min_length=1)
    timestamp: str
    type: str = "text"
    text: Optional[TextContent] = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @field_validator("from_id")
    @classmethod
    def validate_digits(cls, v: str) -> str:
        """WhatsApp ids are digits only, without a leading '+'."""
        v = v.lstrip("+")
        if not v.isdigit():
            raise ValueError("from must contain only digits")
        return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def validate_timestamp(cls, v: Any) -> str:
        """Unix seconds, sent as a string but accepted as a number too."""
        v = str(v)
        parse_unix_timestamp(v)
        return v

    @property
    def content(self) -> str:
        """Text body for text messages; the message type as a label otherwise."""
        if self.type == "text" and self.text is not None and self.text.body:
            return self.text.body
        return self.type


class StatusEvent(BaseModel):
    """Delivery status for a message the business sent."""
    id: str = Field(..., min_length=1)
    status: Literal["sent", "delivered", "read", "failed"]
    timestamp: str
    recipient_id: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("timestamp", mode="before")
    @classmethod
    def validate_timestamp(cls, v: Any) -> str:
        """Unix seconds, sent as a string but accepted as a number too."""
        v = str(v)
        parse_unix_timestamp(v)
        return v


class MessagesChangeValue(BaseModel):
    """
    Value of a change with field == "messages".

    messages and statuses are kept raw here so that a single malformed event
    is rejected on its own instead of discarding its siblings.
    """
    messaging_product: Optional[str] = None
    metadata: ChangeMetadata
    messages: list[Any] = Field(default_factory=list)
    statuses: list[Any] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


# =============================================================================
# Pydantic Request Models
# =============================================================================

class WhatsAppConfigUpdate(BaseModel):
    """Cloud API credentials a tenant enters in settings."""
    whatsapp_access_token: Optional[str] = Field(None, description="Permanent or temporary access token")
    whatsapp_phone_number_id: Optional[str] = Field(None, description="Sending phone number id")
    whatsapp_business_account_id: Optional[str] = Field(None, description="WhatsApp Business Account id")

    @field_validator("whatsapp_access_token", "whatsapp_phone_number_id", "whatsapp_business_account_id")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class ContactCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Display name")
    phone: str = Field(..., min_length=1, description="Phone number, with or without country code")

    @field_validator("phone")
    @classmethod
    def validate_has_digits(cls, v: str) -> str:
        if not any(ch.isdigit() for ch in v):
            raise ValueError("phone must contain digits")
        return v


class ContactUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    profile_picture_url: Optional[str] = None


class SendMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4096, description="Message body")

    @field_validator("text")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("text must not be blank")
        return v


class SendToNumberRequest(SendMessageRequest):
    to: str = Field(..., min_length=1, description="Recipient phone number, with or without country code")

    @field_validator("to")
    @classmethod
    def validate_has_digits(cls, v: str) -> str:
        if not any(ch.isdigit() for ch in v):
            raise ValueError("to must contain digits")
        return v


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ProfileResponse(BaseModel):
    """Profile with its WhatsApp configuration; the access token is never echoed."""
    id: str
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    whatsapp_phone_number_id: Optional[str] = None
    whatsapp_business_account_id: Optional[str] = None
    has_access_token: bool = False
    updated_at: Optional[str] = None

    @classmethod
    def from_profile(cls, profile) -> "ProfileResponse":
        return cls(
            id=profile.id,
            full_name=profile.full_name,
            phone_number=profile.phone_number,
            whatsapp_phone_number_id=profile.whatsapp_phone_number_id,
            whatsapp_business_account_id=profile.whatsapp_business_account_id,
            has_access_token=bool(profile.whatsapp_access_token),
            updated_at=profile.updated_at,
        )


class ContactResponse(BaseModel):
    id: str
    whatsapp_id: str
    phone_number: Optional[str] = None
    name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    created_at: str
    updated_at: str

    model_config = ConfigDict(from_attributes=True)


class ContactsListResponse(BaseModel):
    data: list[ContactResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class ContactImportResponse(BaseModel):
    imported: int = Field(..., ge=0, description="Contacts created")
    skipped: int = Field(..., ge=0, description="Lines ignored or already present")


class MessageResponse(BaseModel):
    id: str
    contact_id: Optional[str] = None
    message_id: Optional[str] = Field(None, description="Provider-assigned message id")
    content: Optional[str] = None
    direction: str
    status: str
    message_type: str
    timestamp: str
    created_at: str

    model_config = ConfigDict(from_attributes=True)


class ConversationResponse(BaseModel):
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=200)
    offset: int = Field(..., ge=0)
