"""Webhooks module for outbound webhook calls.

Provides the calling side of the webhook reliability engine:
- Endpoint registry and data models
- HMAC payload signing and credential scrubbing
- Single-attempt caller with hard timeouts
- Bounded retry combinator with exponential backoff

The tester, dispatcher and API router live in their own submodules
(``tester``, ``dispatcher``, ``router``) since they depend on the
monitoring package.
"""

from .models import (
    DeliveryEvent,
    DeliveryStatus,
    TestResult,
    WebhookEndpoint,
    WebhookPayload,
)
from .exceptions import (
    WebhookError,
    WebhookValidationError,
    EndpointNotFoundError,
    DeliveryError,
    DeliveryNetworkError,
    DeliveryTimeoutError,
    ApplicationError,
    LogStoreError,
)
from .security import sign_payload, verify_payload_signature, sanitize_error_message
from .caller import WebhookCaller, validate_webhook_url
from .retry import RetryPolicy, retry_async, exponential_backoff
from .registry import WebhookRegistry, get_registry

__all__ = [
    "DeliveryEvent",
    "DeliveryStatus",
    "TestResult",
    "WebhookEndpoint",
    "WebhookPayload",
    "WebhookError",
    "WebhookValidationError",
    "EndpointNotFoundError",
    "DeliveryError",
    "DeliveryNetworkError",
    "DeliveryTimeoutError",
    "ApplicationError",
    "LogStoreError",
    "sign_payload",
    "verify_payload_signature",
    "sanitize_error_message",
    "WebhookCaller",
    "validate_webhook_url",
    "RetryPolicy",
    "retry_async",
    "exponential_backoff",
    "WebhookRegistry",
    "get_registry",
]
