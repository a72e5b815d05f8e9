"""Webhook endpoint registry.

Stores and manages endpoint configurations. The in-memory
implementation is the source of endpoints for the tester, the
dispatcher and the monitoring aggregator.
"""

from typing import Dict, List, Optional
import logging
import threading

from .exceptions import EndpointNotFoundError
from .models import WebhookEndpoint

logger = logging.getLogger(__name__)


class WebhookRegistry:
    """In-memory registry for webhook endpoints.

    Example:
        registry = WebhookRegistry()
        endpoint = WebhookEndpoint(name="Orders", url="https://example.com/hook")
        registry.register(endpoint)

        active = registry.get_active()
    """

    def __init__(self):
        """Initialize empty registry."""
        self._webhooks: Dict[str, WebhookEndpoint] = {}
        self._lock = threading.Lock()

    def register(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        """Register (or replace) an endpoint.

        Args:
            endpoint: The endpoint to register.

        Returns:
            The registered endpoint.
        """
        with self._lock:
            self._webhooks[endpoint.id] = endpoint
        logger.info(f"Registered webhook '{endpoint.name}' ({endpoint.id})")
        return endpoint

    def unregister(self, webhook_id: str) -> bool:
        """Remove an endpoint.

        Returns:
            True if removed, False if not found.
        """
        with self._lock:
            endpoint = self._webhooks.pop(webhook_id, None)
        if endpoint is None:
            return False
        logger.info(f"Unregistered webhook '{endpoint.name}' ({webhook_id})")
        return True

    def get(self, webhook_id: str) -> Optional[WebhookEndpoint]:
        return self._webhooks.get(webhook_id)

    def require(self, webhook_id: str) -> WebhookEndpoint:
        """Like ``get`` but raises EndpointNotFoundError when missing."""
        endpoint = self.get(webhook_id)
        if endpoint is None:
            raise EndpointNotFoundError(webhook_id)
        return endpoint

    def get_all(self) -> List[WebhookEndpoint]:
        """All endpoints ordered by ID."""
        with self._lock:
            endpoints = list(self._webhooks.values())
        return sorted(endpoints, key=lambda e: e.id)

    def get_active(self) -> List[WebhookEndpoint]:
        return [e for e in self.get_all() if e.is_active]

    def get_for_event(self, event_type: str) -> List[WebhookEndpoint]:
        """Active endpoints subscribed to an event type."""
        return [e for e in self.get_active() if e.subscribes_to(event_type)]

    def update(self, webhook_id: str, **updates) -> Optional[WebhookEndpoint]:
        """Update fields of an endpoint.

        Returns:
            The updated endpoint if found, None otherwise.
        """
        with self._lock:
            endpoint = self._webhooks.get(webhook_id)
            if endpoint is None:
                return None
            updated = endpoint.model_copy(update=updates)
            self._webhooks[webhook_id] = updated

        logger.info(f"Updated webhook '{updated.name}' ({webhook_id})")
        return updated

    def set_active(self, webhook_id: str, is_active: bool) -> bool:
        """Enable or disable an endpoint. Returns False if not found."""
        return self.update(webhook_id, is_active=is_active) is not None

    def clear(self) -> int:
        """Remove all registrations. Returns how many were removed."""
        with self._lock:
            count = len(self._webhooks)
            self._webhooks.clear()
        logger.info(f"Cleared {count} webhook registrations")
        return count


# Global singleton registry instance
_registry: Optional[WebhookRegistry] = None


def get_registry() -> WebhookRegistry:
    """Get the global webhook registry instance."""
    global _registry
    if _registry is None:
        _registry = WebhookRegistry()
    return _registry


def set_registry(registry: Optional[WebhookRegistry]) -> None:
    """Replace the global registry (None resets it)."""
    global _registry
    _registry = registry
