"""Single-attempt webhook caller.

Posts one signed JSON payload to an endpoint under a hard deadline and
classifies the response. Transport failures are raised as typed
``DeliveryError`` subclasses so a retry coordinator can decide what to
do with them; completed responses, 2xx or not, come back as a
``TestResult``.
"""

import asyncio
import logging
import time
from typing import Optional, Tuple, Any

import httpx

from .exceptions import (
    WebhookValidationError,
    DeliveryNetworkError,
    DeliveryTimeoutError,
)
from .models import WebhookPayload, CallOptions, TestResult, DeliveryStatus
from .security import signature_headers, sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Hookwatch-Webhook/1.0"

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def validate_webhook_url(url: str) -> httpx.URL:
    """Check that a URL can be called as a webhook endpoint.

    Args:
        url: The endpoint URL.

    Returns:
        The parsed URL.

    Raises:
        WebhookValidationError: If the URL is malformed, not HTTP(S), or
            has no hostname.
    """
    if not url or not isinstance(url, str):
        raise WebhookValidationError("Webhook URL is required", field="url")

    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        raise WebhookValidationError("Invalid URL format", field="url")

    if parsed.scheme not in ("http", "https"):
        raise WebhookValidationError("URL must use HTTP or HTTPS protocol", field="url")

    if not parsed.host:
        raise WebhookValidationError("URL must have a valid hostname", field="url")

    if parsed.scheme == "http" and parsed.host not in _LOCAL_HOSTS:
        logger.warning(
            f"Plain HTTP webhook URL for host {parsed.host}; HTTPS is recommended"
        )

    return parsed


def _parse_body(response: httpx.Response) -> Tuple[Any, bool]:
    """Decode a response body.

    JSON content types are parsed; everything else is captured as text.

    Returns:
        Tuple of (body, parse_error). On a parse failure the raw text is
        kept and the flag is set.
    """
    content_type = response.headers.get("content-type", "").lower()

    if "json" in content_type:
        try:
            return response.json(), False
        except ValueError:
            return response.text, True

    try:
        return response.text, False
    except (UnicodeDecodeError, LookupError):
        return None, True


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))


class WebhookCaller:
    """Executes one HTTP delivery attempt against an endpoint.

    Example:
        caller = WebhookCaller()
        payload = WebhookPayload(event_type="webhook.test", webhook_id="wh_1")
        result = await caller.call("https://example.com/hook", payload, secret="s3cr3t")
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize caller.

        Args:
            user_agent: Value for the User-Agent header.
            transport: Optional httpx transport (used to stub the network).
        """
        self.user_agent = user_agent
        self._transport = transport

    def build_headers(
        self,
        payload: WebhookPayload,
        body: bytes,
        secret: Optional[str],
        options: CallOptions,
    ) -> dict:
        """Build the outbound header set for a serialized payload."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            "X-Event-Type": payload.event_type,
            "X-Webhook-ID": payload.webhook_id,
            "X-Timestamp": payload.timestamp,
            "X-Test": "true" if options.is_test else "false",
        }

        if payload.organization_id:
            headers["X-Organization-ID"] = payload.organization_id

        if payload.user_id:
            headers["X-User-ID"] = payload.user_id

        # Caller-supplied extras never override the protocol headers
        for key, value in options.headers.items():
            headers.setdefault(key, value)

        if secret:
            headers.update(signature_headers(body, secret))

        return headers

    async def call(
        self,
        url: str,
        payload: WebhookPayload,
        secret: Optional[str] = None,
        options: Optional[CallOptions] = None,
        require_signature: bool = False,
    ) -> TestResult:
        """POST a payload once and classify the response.

        Args:
            url: Endpoint URL.
            payload: Structured payload; serialized to JSON here.
            secret: Optional signing secret. Without it no signature
                headers are sent.
            options: Timeout, redirect and header options.
            require_signature: Reject the call if no secret is given.

        Returns:
            A TestResult with status ``success`` for 2xx and ``failed``
            for any other completed response.

        Raises:
            WebhookValidationError: Bad URL or missing required secret.
            DeliveryTimeoutError: The deadline expired.
            DeliveryNetworkError: The connection failed.
        """
        options = options or CallOptions()
        validate_webhook_url(url)
        if require_signature and not secret:
            raise WebhookValidationError(
                "A signing secret is required for this endpoint", field="secret"
            )

        body = payload.to_json_bytes()
        headers = self.build_headers(payload, body, secret, options)
        timeout_seconds = options.timeout_ms / 1000
        secrets = (secret,) if secret else ()

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._post(url, body, headers, options, timeout_seconds),
                timeout=timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            # wait_for cancels the request task, which closes the connection
            raise DeliveryTimeoutError(
                options.timeout_ms,
                response_time_ms=_elapsed_ms(started),
                payload_size=len(body),
                request_headers=headers,
            )
        except httpx.HTTPError as e:
            raise DeliveryNetworkError(
                sanitize_error_message(f"Network error: {e}", secrets),
                response_time_ms=_elapsed_ms(started),
                payload_size=len(body),
                request_headers=headers,
            ) from e

        response_time_ms = _elapsed_ms(started)
        response_body, parse_error = _parse_body(response)
        is_success = 200 <= response.status_code < 300

        error_message = None
        if not is_success:
            error_message = f"HTTP {response.status_code}: {response.reason_phrase}"

        logger.debug(
            f"Webhook call {payload.event_type} -> {payload.webhook_id}: "
            f"{response.status_code} in {response_time_ms}ms"
        )

        return TestResult(
            status=DeliveryStatus.SUCCESS if is_success else DeliveryStatus.FAILED,
            status_code=response.status_code,
            response_time_ms=response_time_ms,
            response_body=response_body,
            body_parse_error=parse_error,
            error_message=error_message,
            request_headers=headers,
            response_headers=dict(response.headers.items()),
            payload_size=len(body),
        )

    async def _post(
        self,
        url: str,
        body: bytes,
        headers: dict,
        options: CallOptions,
        timeout_seconds: float,
    ) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=timeout_seconds,
            follow_redirects=options.follow_redirects,
            verify=options.verify_ssl,
            transport=self._transport,
        ) as client:
            return await client.post(url, content=body, headers=headers)
