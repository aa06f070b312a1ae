"""Outbound and inbound message types."""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from pubsubkit.marshaling import decode_payload

AckFunc = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class Message:
    """A message to publish.

    Example:
        Message(payload={"id": 1}, attributes={"kind": "order"}, topic="orders")
    """

    payload: Any
    """Raw bytes, sent as-is, or any JSON-serializable value."""

    topic: str
    """Destination topic id."""

    attributes: Mapping[str, str] = field(default_factory=dict)
    """String attributes attached to the message."""

    ordering_key: str = ""
    """Messages sharing a key are delivered in order when ordering is enabled."""

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))


@dataclass
class ReceivedMessage:
    """A message delivered from a subscription.

    Whoever consumes the message must call ``ack()`` or ``nack()``; nothing
    in pubsubkit does it for them.
    """

    payload: bytes
    attributes: dict[str, str] = field(default_factory=dict)
    id: str = ""
    publish_time: datetime | None = None
    ordering_key: str = ""
    delivery_attempt: int | None = None
    _ack_func: AckFunc | None = field(default=None, repr=False, compare=False)
    _nack_func: AckFunc | None = field(default=None, repr=False, compare=False)
    _acked: bool = field(default=False, repr=False, compare=False)
    _nacked: bool = field(default=False, repr=False, compare=False)

    @property
    def acked(self) -> bool:
        return self._acked

    @property
    def nacked(self) -> bool:
        return self._nacked

    async def ack(self) -> None:
        """Acknowledge successful processing."""
        if self._acked:
            msg = f"Message {self.id} already acked"
            raise ValueError(msg)
        if self._nacked:
            msg = f"Message {self.id} has been nacked"
            raise ValueError(msg)
        self._acked = True
        if self._ack_func is not None:
            await self._ack_func()

    async def nack(self) -> None:
        """Reject the message so the service redelivers it."""
        if self._nacked:
            msg = f"Message {self.id} already nacked"
            raise ValueError(msg)
        if self._acked:
            msg = f"Message {self.id} has been acked"
            raise ValueError(msg)
        self._nacked = True
        if self._nack_func is not None:
            await self._nack_func()

    def decode(self) -> Any:
        """JSON-decode the payload."""
        return decode_payload(self.payload)
