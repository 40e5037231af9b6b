"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the management API
- Response models for API responses
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendRequest(BaseModel):
    """
    Body of POST /api/send.

    Fields are untyped at the schema level so a missing, blank or non-string
    value surfaces as 400 invalid_argument from the dispatcher, not a 422.
    """
    to: Any = Field(None, description="Destination phone number")
    text: Any = Field(None, description="Message body")

    model_config = {
        "json_schema_extra": {
            "examples": [{"to": "5511999999999", "text": "hi"}]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Acknowledgment returned to the provider for every delivery."""
    status: str = Field(default="ok", description="ok, or ignored for unrecognized payloads")


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error code")
    detail: Optional[str] = Field(None, description="Error description")
    details: Optional[Any] = Field(None, description="Upstream provider payload, verbatim")


class MessageResponse(BaseModel):
    """A message as shown in the inbox."""
    wa_msg_id: Optional[str] = Field(None, description="Provider-assigned message id")
    direction: str = Field(..., description="in, out or system")
    text: Optional[str] = Field(None, description="Message body")
    status: Optional[str] = Field(None, description="received, sent, delivered, read or failed")
    ts: int = Field(..., description="Epoch seconds")

    model_config = {"from_attributes": True}


class ConversationResponse(BaseModel):
    """A contact with its messages, oldest first."""
    phone: str = Field(..., description="Contact phone number")
    name: Optional[str] = Field(None, description="Contact display name")
    last_ts: int = Field(..., description="Epoch seconds of the latest activity")
    messages: list[MessageResponse] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class SendResponse(BaseModel):
    ok: bool = True
    id: Optional[str] = Field(None, description="Provider-assigned message id")


class StatusResponse(BaseModel):
    """Last known status for a contact."""
    status: Optional[str] = Field(..., description="Status of the latest message, or unknown")
    last_update: Optional[int] = Field(None, description="Epoch seconds of the latest message")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
