"""Registry of external service handlers.

Anything that is not a state store update (notifications, device protocol bridges, ...)
is reached through a handler registered under a service name. Handlers are opaque to the
engine: they receive a ServiceCall and either return or raise. Nothing here retries.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from homerules.errors import HandlerUnavailableError, ServiceCallError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceCall:
    """A single invocation of a service."""

    service: str
    entity_ids: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


ServiceHandler = Callable[[ServiceCall], Awaitable[Any]]


class ServiceRegistry:
    """Maps service names to their handlers."""

    def __init__(self):
        self._handlers: dict[str, ServiceHandler] = {}

    def register(self, service: str, handler: ServiceHandler) -> None:
        if service in self._handlers:
            logger.warning("Replacing handler for service '%s'", service)
        self._handlers[service] = handler

    def unregister(self, service: str) -> bool:
        return self._handlers.pop(service, None) is not None

    def has(self, service: str) -> bool:
        return service in self._handlers

    def get(self, service: str) -> ServiceHandler:
        try:
            return self._handlers[service]
        except KeyError:
            raise HandlerUnavailableError(service) from None

    def names(self) -> list[str]:
        return sorted(self._handlers)

    async def call(self, call: ServiceCall) -> Any:
        """Invokes the handler for a call. Handler failures surface as ServiceCallError."""
        handler = self.get(call.service)
        try:
            return await handler(call)
        except ServiceCallError:
            raise
        except Exception as e:
            raise ServiceCallError(f"Service '{call.service}' failed: {e}") from e

    async def close(self) -> None:
        """Gives handlers holding connections a chance to release them."""
        for service, handler in self._handlers.items():
            aclose = getattr(handler, "aclose", None)
            if aclose is None:
                continue
            try:
                await aclose()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Failed to close handler for service '%s'", service)


class LogNotifier:
    """Notification sink which writes messages to the log."""

    def __init__(self):
        self.messages: list[str] = []

    async def __call__(self, call: ServiceCall) -> None:
        message = str(call.data.get("message", ""))
        self.messages.append(message)
        logger.info("Notification (%s): %s", call.service, message)


class WebhookNotifier:
    """Notification sink which POSTs the call as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __call__(self, call: ServiceCall) -> None:
        payload = {"service": call.service, "entity_ids": call.entity_ids, **call.data}
        try:
            resp = await self._client.post(self._url, json=payload)
        except httpx.HTTPError as e:
            raise ServiceCallError(f"Webhook request to {self._url} failed: {e}") from e
        if resp.status_code >= 300:
            raise ServiceCallError(f"Webhook returned '{resp.status_code}' status: {resp.text}")

    async def aclose(self) -> None:
        await self._client.aclose()
