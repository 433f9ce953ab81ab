from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from typing import Any, Dict, Optional
from datetime import datetime

from email_queue.models import EmailStatusEnum


class EmailRequest(BaseModel):
    """Inbound send request, using the caller's camelCase field names."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    to: EmailStr
    to_name: Optional[str] = Field(default=None, alias="toName")
    from_email: Optional[EmailStr] = Field(default=None, alias="from")
    from_name: Optional[str] = Field(default=None, alias="fromName")
    reply_to: Optional[EmailStr] = Field(default=None, alias="replyTo")
    subject: str
    html: str
    text: Optional[str] = None
    template_type: Optional[str] = Field(default=None, alias="templateType")
    template_data: Dict[str, Any] = Field(default_factory=dict, alias="templateData")
    priority: Optional[int] = None

    @field_validator("subject", "html")
    @classmethod
    def not_blank(cls, v: str, info):
        if not v:
            raise ValueError(f"{info.field_name} must not be empty")
        return v

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v):
        if v is not None and v not in range(1, 6):
            raise ValueError("Priority must be between 1 and 5")
        return v


class EmailRecord(BaseModel):
    """Snapshot of a queued message as stored."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    to_email: str
    to_name: Optional[str] = None
    from_email: str
    from_name: Optional[str] = None
    reply_to: Optional[str] = None
    subject: str
    html_content: str
    text_content: Optional[str] = None
    template_type: Optional[str] = None
    template_data: Dict[str, Any] = Field(default_factory=dict)
    status: EmailStatusEnum
    priority: int
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    provider_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class EmailLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    email_id: str
    attempt: int
    status: str
    provider_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime


class EmailStatusView(BaseModel):
    id: str
    status: EmailStatusEnum
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None


class EnqueueResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    email_id: str = Field(alias="emailId")
    provider_id: Optional[str] = Field(default=None, alias="providerId")

    @property
    def delivered(self) -> bool:
        return self.provider_id is not None


class DrainSummary(BaseModel):
    total: int = 0
    sent: int = 0
    failed: int = 0


class StoreEnvironment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_store_url: bool = Field(alias="hasStoreUrl")
    has_store_key: bool = Field(alias="hasStoreKey")


class ConfigStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = "Email service is running"
    has_transport_configured: bool = Field(alias="hasTransportConfigured")
    transport_config_length: int = Field(alias="transportConfigLength")
    environment: StoreEnvironment

