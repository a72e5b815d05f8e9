"""Webhook data models.

Defines Pydantic schemas for registered endpoints, outbound payloads,
call results and the append-only delivery log records used throughout
the webhooks framework.
"""

from enum import Enum
from typing import Optional, Any, Dict, List, Union
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import uuid


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DeliveryStatus(str, Enum):
    """Outcome of a single delivery attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class WebhookEndpoint(BaseModel):
    """A registered third-party endpoint that receives webhook calls."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., description="Human-readable name for this webhook")
    url: str = Field(..., description="Endpoint URL to receive webhooks")
    secret: Optional[str] = Field(None, description="Shared secret for HMAC signature")
    require_signature: bool = Field(
        False, description="Refuse to call this endpoint without a signing secret"
    )
    is_active: bool = True

    # Owning feature, used for top-N feature ranking
    feature_id: Optional[str] = None
    feature_name: Optional[str] = None

    event_types: List[str] = Field(
        default_factory=list,
        description="Event types to subscribe to (empty = all)"
    )
    timeout_ms: int = 30000
    retry_attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def subscribes_to(self, event_type: str) -> bool:
        return not self.event_types or event_type in self.event_types


class WebhookPayload(BaseModel):
    """Body posted to an endpoint."""

    event_type: str
    webhook_id: str
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_json_bytes(self) -> bytes:
        """Serialize exactly as sent on the wire (unset optionals omitted)."""
        return self.model_dump_json(exclude_none=True).encode("utf-8")


class CallOptions(BaseModel):
    """Per-call transport options."""

    timeout_ms: int = Field(30000, gt=0)
    follow_redirects: bool = True
    verify_ssl: bool = True
    is_test: bool = True
    headers: Dict[str, str] = Field(default_factory=dict)


class TestResult(BaseModel):
    """Classified outcome of one (possibly retried) call to an endpoint."""

    __test__ = False  # not a pytest test class

    status: DeliveryStatus
    status_code: Optional[int] = None
    response_time_ms: int = 0
    response_body: Optional[Union[Dict[str, Any], List[Any], str, int, float, bool]] = None
    body_parse_error: bool = False
    error_message: Optional[str] = None
    request_headers: Dict[str, str] = Field(default_factory=dict)
    response_headers: Optional[Dict[str, str]] = None
    payload_size: int = 0
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.SUCCESS


class DeliveryEvent(BaseModel):
    """One recorded delivery attempt. Write-once."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    webhook_id: str
    event_type: str
    status: DeliveryStatus
    status_code: Optional[int] = None
    response_time_ms: int = 0
    triggered_at: datetime = Field(default_factory=utcnow)
    error_message: Optional[str] = None
    retry_count: int = 0
    payload_size: int = 0
    is_test: bool = False

    class Config:
        frozen = True

    @classmethod
    def from_result(
        cls,
        webhook_id: str,
        event_type: str,
        result: TestResult,
        is_test: bool,
        triggered_at: Optional[datetime] = None,
    ) -> "DeliveryEvent":
        """Build the log record for a classified call result."""
        return cls(
            webhook_id=webhook_id,
            event_type=event_type,
            status=result.status,
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
            triggered_at=triggered_at or utcnow(),
            error_message=result.error_message,
            retry_count=max(result.attempts - 1, 0),
            payload_size=result.payload_size,
            is_test=is_test,
        )


class BatchItemResult(BaseModel):
    """Per-item outcome of a best-effort batch operation."""

    id: str
    result: Optional[TestResult] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class DispatchItemResult(BaseModel):
    """Per-endpoint outcome of a live dispatch."""

    id: str
    result: Optional[DeliveryEvent] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class WebhookRegistrationRequest(BaseModel):
    """Request to register a new webhook."""

    name: str
    url: str
    secret: Optional[str] = None
    require_signature: bool = False
    is_active: bool = True
    feature_id: Optional[str] = None
    feature_name: Optional[str] = None
    event_types: List[str] = Field(default_factory=list)
    timeout_ms: Optional[int] = Field(None, gt=0)
    retry_attempts: Optional[int] = Field(None, ge=0, le=5)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WebhookView(BaseModel):
    """Endpoint as returned by the API (secret never echoed)."""

    id: str
    name: str
    url: str
    is_active: bool
    signed: bool
    require_signature: bool = False
    feature_id: Optional[str] = None
    feature_name: Optional[str] = None
    event_types: List[str]
    created_at: datetime

    @classmethod
    def from_endpoint(cls, endpoint: WebhookEndpoint) -> "WebhookView":
        return cls(
            id=endpoint.id,
            name=endpoint.name,
            url=endpoint.url,
            is_active=endpoint.is_active,
            signed=bool(endpoint.secret),
            require_signature=endpoint.require_signature,
            feature_id=endpoint.feature_id,
            feature_name=endpoint.feature_name,
            event_types=endpoint.event_types,
            created_at=endpoint.created_at,
        )


class WebhookListResponse(BaseModel):
    """Response containing list of webhooks."""

    webhooks: List[WebhookView]
    total: int


class TestWebhookRequest(BaseModel):
    """Body of a test-call request."""

    __test__ = False

    event_type: str = "webhook.test"
    data: Optional[Dict[str, Any]] = None
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    timeout_ms: Optional[int] = Field(None, gt=0)
    retry_attempts: Optional[int] = Field(None, ge=0, le=5)
    follow_redirects: bool = True


class BatchTestRequest(BaseModel):
    """Body of a bulk test-call request."""

    webhook_ids: List[str]
    event_type: str = "webhook.test"
    data: Optional[Dict[str, Any]] = None


class DispatchRequest(BaseModel):
    """Body of a live event dispatch."""

    event_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
