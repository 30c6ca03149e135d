"""
Pydantic schemas for request/response validation.

This module contains:
- The inbound Twilio WhatsApp webhook payload
- The structured reply produced by the assistant
- Response models for health and cron endpoints
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from whatsapp_pipeline.numbers import is_valid_whatsapp_number


SOURCE_LABEL = "twilio:whatsapp"


# =============================================================================
# Inbound Webhook Payload
# =============================================================================

class IncomingMessage(BaseModel):
    """
    Twilio WhatsApp inbound message notification (form fields).

    Extra fields are kept: Twilio appends MediaUrl{N} / MediaContentType{N}
    for every attached media item, read back by utils.extract_attachments().
    """
    MessageSid: str = Field(..., min_length=1, description="Provider message id")
    From: str = Field(..., min_length=1, description="Sender, e.g. whatsapp:+15551234567")
    To: str = Field(..., min_length=1, description="Recipient (our sender number)")
    Body: str = Field(default="", description="Message text")
    ProfileName: Optional[str] = None
    WaId: Optional[str] = None
    NumMedia: int = Field(default=0, ge=0)
    ConversationSid: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("From", "To")
    @classmethod
    def validate_whatsapp_address(cls, v: str, info) -> str:
        """Accept bare or whatsapp:-prefixed E.164 numbers; keep the raw value."""
        if not is_valid_whatsapp_number(v):
            raise ValueError(f"{info.field_name} must be an E.164 number, optionally prefixed with 'whatsapp:'")
        return v

    def get_extra(self, name: str) -> Optional[str]:
        return (self.model_extra or {}).get(name)


class Attachment(BaseModel):
    name: str
    url: str
    contentType: str


# =============================================================================
# Assistant Reply
# =============================================================================

class ReplyButton(BaseModel):
    id: Optional[str] = None
    label: str = Field(..., min_length=1)
    url: Optional[str] = None


class ReplyLocation(BaseModel):
    name: str
    latitude: float
    longitude: float
    label: Optional[str] = None


class WhatsAppResponse(BaseModel):
    """
    Sendable assistant reply: text plus optional quick-reply buttons,
    a media URL and a location pin.
    """
    message: str
    buttons: Optional[list[ReplyButton]] = None
    media_url: Optional[str] = Field(default=None, alias="mediaUrl")
    location: Optional[ReplyLocation] = None

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class SweepResponse(BaseModel):
    """Result of a cron delivery sweep."""
    status: str = "ok"
    processed: int = Field(0, ge=0)
    sent: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    errors: Optional[list[str]] = None
