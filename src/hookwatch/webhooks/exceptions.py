"""Webhook error taxonomy.

Every failure the engine raises derives from ``WebhookError`` so callers
can catch the family at once. Delivery failures carry enough structure
for the retry coordinator to decide whether another attempt is allowed
and for the caller to classify the final outcome.
"""

from typing import Optional


class WebhookError(Exception):
    """Base class for all webhook engine errors."""


class WebhookValidationError(WebhookError):
    """Request rejected before any network call (bad URL, missing secret)."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class EndpointNotFoundError(WebhookError):
    """No endpoint is registered under the given ID."""

    def __init__(self, webhook_id: str):
        self.webhook_id = webhook_id
        super().__init__(f"Webhook '{webhook_id}' not found")


class DeliveryError(WebhookError):
    """A call attempt that did not produce a 2xx response.

    Attributes:
        response_time_ms: Time spent on the attempt before it failed.
        payload_size: Size in bytes of the serialized payload.
        request_headers: Headers that were sent (or would have been).
    """

    def __init__(
        self,
        message: str,
        response_time_ms: int = 0,
        payload_size: int = 0,
        request_headers: Optional[dict] = None,
    ):
        self.response_time_ms = response_time_ms
        self.payload_size = payload_size
        self.request_headers = request_headers or {}
        super().__init__(message)


class DeliveryNetworkError(DeliveryError):
    """Connection-level failure; classified as ``failed`` and retryable."""


class DeliveryTimeoutError(DeliveryError):
    """The hard deadline expired; classified as ``timeout`` and retryable."""

    def __init__(self, timeout_ms: int, **kwargs):
        self.timeout_ms = timeout_ms
        super().__init__(f"Request timeout after {timeout_ms}ms", **kwargs)


class ApplicationError(DeliveryError):
    """The endpoint answered with a non-2xx status.

    Only the outbound delivery policy raises this; the test path returns
    the response as a final ``failed`` result instead.
    """

    def __init__(self, status_code: int, reason: str, result=None, **kwargs):
        self.status_code = status_code
        self.reason = reason
        self.result = result
        super().__init__(f"HTTP {status_code}: {reason}", **kwargs)


class LogStoreError(WebhookError):
    """The delivery log could not be read or written.

    Stats and health computations let this propagate rather than report
    zeroed figures for the endpoint.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Log store {operation} failed{detail}")
