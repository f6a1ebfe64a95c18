"""In-process message passing between isolated contexts.

Each context (extraction tab, coordinator, viewer) registers an address and
an async handler. Payloads are JSON round-tripped on the way in and out so
no two contexts ever share an object, mirroring a browser runtime's message
channel. Sending to an address that is not registered raises
``ContextInvalidatedError``, the transport failure every peer must survive.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from slack_capture.models.base import WireModel

logger = logging.getLogger(__name__)

COORDINATOR_ADDRESS = "coordinator"

Handler = Callable[[dict, str | None], Awaitable[dict | None]]


class ContextInvalidatedError(ConnectionError):
    """The receiving context is torn down or was never registered."""


def is_transport_error(exc: BaseException) -> bool:
    """Return True for failures of the channel itself, not of the handler."""
    return isinstance(exc, ContextInvalidatedError)


class Role(str, Enum):
    EXTRACTION = "extraction"
    COORDINATOR = "coordinator"
    VIEWER = "viewer"


@dataclass
class Endpoint:
    address: str
    role: Role
    handler: Handler


def _copy(payload: Any) -> Any:
    if isinstance(payload, WireModel):
        payload = payload.to_wire()
    return json.loads(json.dumps(payload))


class MessageBus:
    """Address book of live contexts plus request/response delivery."""

    def __init__(self) -> None:
        self._endpoints: dict[str, Endpoint] = {}

    def register(self, address: str, role: Role, handler: Handler) -> None:
        if address in self._endpoints:
            logger.warning("Replacing handler for %s", address)
        self._endpoints[address] = Endpoint(address, role, handler)

    def unregister(self, address: str) -> None:
        self._endpoints.pop(address, None)

    def is_registered(self, address: str) -> bool:
        return address in self._endpoints

    def addresses(self, role: Role) -> list[str]:
        return [e.address for e in self._endpoints.values() if e.role is role]

    async def send(
        self, to: str, message: dict | WireModel, sender: str | None = None
    ) -> dict | None:
        """Deliver ``message`` to ``to`` and return its handler's response.

        Raises:
            ContextInvalidatedError: ``to`` is not registered.
        """
        endpoint = self._endpoints.get(to)
        if endpoint is None:
            raise ContextInvalidatedError(f"Context invalidated: {to}")
        response = await endpoint.handler(_copy(message), sender)
        return _copy(response) if response is not None else None

    async def broadcast(
        self, role: Role, message: dict | WireModel, sender: str | None = None
    ) -> int:
        """Best-effort delivery to every context with ``role``; returns deliveries."""
        delivered = 0
        for address in self.addresses(role):
            try:
                await self.send(address, message, sender=sender)
                delivered += 1
            except Exception:
                # Receivers come and go; a failed delivery must not stop the rest
                logger.debug("Broadcast to %s failed", address, exc_info=True)
        return delivered
