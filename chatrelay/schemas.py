"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the message API
- Gateway webhook payload models
- Response models (camelCase on the wire, as the CRM UI expects)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, AliasGenerator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


_camel_output = ConfigDict(
    alias_generator=AliasGenerator(serialization_alias=to_camel),
    from_attributes=True,
)


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Outbound text/media message.

    Field presence is checked by the Delivery Pipeline so that missing
    content is reported with the same structured error as other caller
    errors.
    """
    conversation_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("conversationId", "contactId", "conversation_id", "contact_id"),
        description="Conversation (CRM contact) identifier",
    )
    to: Optional[str] = Field(None, description="Recipient phone number")
    body: Optional[str] = Field(None, max_length=4096, description="Message text")
    media_urls: Optional[Union[str, List[str]]] = Field(
        None,
        validation_alias=AliasChoices("mediaUrl", "mediaUrls", "media_url", "media_urls"),
        description="One media URL or a list of them",
    )
    contact_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("contactName", "contact_name")
    )
    from_name: str = Field(
        "CRM User", validation_alias=AliasChoices("fromName", "from_name")
    )

    def media_list(self) -> List[str]:
        if self.media_urls is None:
            return []
        if isinstance(self.media_urls, str):
            return [self.media_urls]
        return list(self.media_urls)


class SendTemplateRequest(BaseModel):
    """Outbound pre-approved template message."""
    conversation_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("conversationId", "contactId", "conversation_id", "contact_id"),
    )
    to: Optional[str] = None
    template_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("templateId", "contentSid", "template_id")
    )
    template_variables: Optional[Dict[str, Any]] = Field(
        None,
        validation_alias=AliasChoices("templateVariables", "contentVariables", "template_variables"),
    )
    contact_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("contactName", "contact_name")
    )
    from_name: str = Field(
        "System", validation_alias=AliasChoices("fromName", "from_name")
    )


class MarkReadRequest(BaseModel):
    """Mark messages read by id list, or every unread inbound message of a conversation."""
    message_ids: Optional[List[str]] = Field(
        None, validation_alias=AliasChoices("messageIds", "message_ids")
    )
    conversation_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("conversationId", "contactId", "conversation_id", "contact_id"),
    )


# =============================================================================
# Gateway Webhook Payloads
# =============================================================================

class IncomingWebhookPayload(BaseModel):
    """Inbound message notification posted by the gateway."""
    message_sid: str = Field(..., min_length=1, validation_alias="MessageSid")
    from_address: str = Field(..., min_length=1, validation_alias="From")
    to_address: str = Field("", validation_alias="To")
    body: Optional[str] = Field(None, validation_alias="Body")
    num_media: int = Field(0, ge=0, validation_alias="NumMedia")
    profile_name: Optional[str] = Field(None, validation_alias="ProfileName")
    media_urls: List[str] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "IncomingWebhookPayload":
        """Build from a webhook body, collecting the indexed MediaUrlN fields."""
        model = cls.model_validate(payload)
        model.media_urls = [
            payload[f"MediaUrl{i}"]
            for i in range(model.num_media)
            if payload.get(f"MediaUrl{i}")
        ]
        return model


class StatusCallbackPayload(BaseModel):
    """Delivery-status callback posted by the gateway."""
    message_sid: str = Field(..., min_length=1, validation_alias="MessageSid")
    message_status: str = Field(..., min_length=1, validation_alias="MessageStatus")
    error_code: Optional[str] = Field(None, validation_alias="ErrorCode")
    error_message: Optional[str] = Field(None, validation_alias="ErrorMessage")

    @field_validator("error_code", mode="before")
    @classmethod
    def coerce_error_code(cls, v):
        """Gateways send numeric codes; store them as text."""
        if v is None or v == "":
            return None
        return str(v)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class MessageSnapshot(BaseModel):
    """Full view of a message record, as returned by the API and pushed to subscribers."""
    model_config = _camel_output

    id: str
    gateway_message_id: str
    conversation_id: str
    contact_name: Optional[str] = None
    from_name: Optional[str] = None
    direction: str
    message_type: str
    body: Optional[str] = None
    template_id: Optional[str] = None
    template_variables: Optional[Dict[str, Any]] = None
    media_urls: List[str] = Field(default_factory=list)
    from_address: str = Field(..., serialization_alias="from")
    to_address: str = Field(..., serialization_alias="to")
    status: str
    is_read: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    created_at: datetime
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    updated_at: datetime

    def to_event(self) -> Dict[str, Any]:
        """JSON-ready payload for realtime events."""
        return self.model_dump(mode="json", by_alias=True)


class SubmissionResponse(BaseModel):
    """Response for accepted outbound submissions (202)."""
    success: bool = True
    message: str = "Message is being processed"
    data: MessageSnapshot


class ErrorDetail(BaseModel):
    code: Optional[str] = None
    message: Optional[str] = None


class MessageStatusData(BaseModel):
    model_config = _camel_output

    message_id: str
    gateway_message_id: str
    status: str
    timestamp: datetime
    error: Optional[ErrorDetail] = None


class MessageStatusResponse(BaseModel):
    success: bool = True
    data: MessageStatusData


class Pagination(BaseModel):
    model_config = _camel_output

    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    total_pages: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)


class MessagesListResponse(BaseModel):
    """Response model for GET /api/messages/messages with pagination."""
    model_config = _camel_output

    success: bool = True
    data: List[MessageSnapshot] = Field(default_factory=list)
    contact_name: str
    pagination: Pagination


class ContactResponse(BaseModel):
    success: bool = True
    name: str
    phone: str


class MarkReadData(BaseModel):
    model_config = _camel_output

    matched_count: int
    modified_count: int


class MarkReadResponse(BaseModel):
    success: bool = True
    data: MarkReadData


class ErrorResponse(BaseModel):
    """Structured failure envelope."""
    success: bool = False
    error: str = Field(..., description="Error description")
    code: Optional[str] = None
    details: Optional[Any] = None


class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Operation status")
    result: Optional[str] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
