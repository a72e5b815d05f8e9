"""Webhook security utilities.

Provides HMAC payload signing for outbound calls, the matching
verification for receivers, and scrubbing of credentials from error
text before it reaches logs or API responses.
"""

import hmac
import hashlib
import re
from typing import Iterable, Union

SIGNATURE_PREFIX = "sha256="
SIGNATURE_VERSION = "v1"

REDACTED = "[REDACTED]"

# user:password@ in URLs
_URL_USERINFO = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/\s:@]+(?::[^/\s@]*)?@")
# Bearer / Basic credentials in header dumps
_AUTH_SCHEME = re.compile(r"(?i)\b(bearer|basic)\s+[A-Za-z0-9._~+/=-]+")
# key=value pairs whose key looks sensitive (query strings, header dumps, JSON-ish)
_SENSITIVE_PAIR = re.compile(
    r"(?i)(?P<key>[\w-]*(?:token|secret|password|passwd|api[_-]?key|signature|authorization)[\w-]*)"
    r"(?P<sep>\"?\s*[=:]\s*\"?)(?P<value>[^\s&,;\"']+)"
)


def _to_bytes(value: Union[bytes, str]) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def sign_payload(payload: Union[bytes, str], secret: str) -> str:
    """Generate the HMAC-SHA256 signature for a serialized payload.

    Args:
        payload: The exact bytes sent as the request body. Strings are
            encoded as UTF-8.
        secret: The shared secret key.

    Returns:
        ``sha256=<lowercase hex digest>``.
    """
    digest = hmac.new(
        _to_bytes(secret),
        _to_bytes(payload),
        hashlib.sha256
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_payload_signature(
    payload: Union[bytes, str],
    signature: str,
    secret: str,
) -> bool:
    """Verify an ``X-Signature`` header value on the receiving side.

    Args:
        payload: The raw request body.
        signature: The value of the X-Signature header.
        secret: The shared secret key.

    Returns:
        True if the signature matches the payload.
    """
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False

    expected = sign_payload(payload, secret)

    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(signature, expected)


def signature_headers(payload: Union[bytes, str], secret: str) -> dict:
    """Headers added to an outbound request when a secret is configured."""
    return {
        "X-Signature": sign_payload(payload, secret),
        "X-Signature-Version": SIGNATURE_VERSION,
    }


def sanitize_error_message(message: str, secrets: Iterable[str] = ()) -> str:
    """Strip credentials, tokens and known secrets from error text.

    Args:
        message: Raw message, typically ``str(exc)``.
        secrets: Literal values that must never be surfaced, such as the
            endpoint's signing secret.

    Returns:
        The message with sensitive parts replaced by ``[REDACTED]``.
    """
    if not message:
        return message

    cleaned = message
    for secret in secrets:
        if secret:
            cleaned = cleaned.replace(secret, REDACTED)

    cleaned = _URL_USERINFO.sub(lambda m: f"{m.group('scheme')}{REDACTED}@", cleaned)
    cleaned = _AUTH_SCHEME.sub(lambda m: f"{m.group(1)} {REDACTED}", cleaned)
    cleaned = _SENSITIVE_PAIR.sub(
        lambda m: f"{m.group('key')}{m.group('sep')}{REDACTED}", cleaned
    )
    return cleaned
