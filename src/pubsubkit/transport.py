"""Transport protocol: the service operations pubsubkit builds on."""

from collections.abc import Awaitable, Callable, Mapping
from typing import Protocol, runtime_checkable

from pubsubkit.config import (
    PublishSettings,
    ReceiveSettings,
    SubscriptionConfig,
    TopicConfig,
)
from pubsubkit.errors import InvalidMessageError
from pubsubkit.message import ReceivedMessage

MessageCallback = Callable[[ReceivedMessage], Awaitable[None]]

# Keyword names taken by PublisherClient.publish; attributes travel as the
# remaining keyword arguments, so these cannot be attribute keys.
RESERVED_ATTRIBUTES = frozenset({"topic", "data", "ordering_key", "retry", "timeout"})


def check_publishable(
    attributes: Mapping[str, str],
    settings: PublishSettings,
    ordering_key: str = "",
) -> None:
    """Reject messages the service client would refuse or mangle.

    Raises InvalidMessageError for attribute keys in RESERVED_ATTRIBUTES and
    for an ordering key published without message ordering enabled.
    """
    reserved = sorted(RESERVED_ATTRIBUTES.intersection(attributes))
    if reserved:
        msg = f"reserved attribute keys: {', '.join(reserved)}"
        raise InvalidMessageError(msg)
    if ordering_key and not settings.resolve().enable_message_ordering:
        msg = (
            f"ordering key {ordering_key!r} requires enable_message_ordering "
            "in the publish settings"
        )
        raise InvalidMessageError(msg)


@runtime_checkable
class Transport(Protocol):
    """Operations of a managed pub/sub service.

    Implementations raise TransportError for any service-side failure, and
    run check_publishable before sending. Settings passed in are already
    resolved against the defaults.
    """

    async def topic_exists(self, topic_id: str) -> bool: ...

    async def create_topic(self, topic_id: str, config: TopicConfig) -> None: ...

    async def subscription_exists(self, subscription_id: str) -> bool: ...

    async def create_subscription(
        self,
        subscription_id: str,
        topic_id: str,
        config: SubscriptionConfig,
        filter: str | None = None,
    ) -> None: ...

    async def publish(
        self,
        topic_id: str,
        data: bytes,
        attributes: Mapping[str, str],
        settings: PublishSettings,
        ordering_key: str = "",
    ) -> str:
        """Publish and wait for the service to accept. Returns the message id."""
        ...

    async def stream_receive(
        self,
        subscription_id: str,
        settings: ReceiveSettings,
        on_message: MessageCallback,
    ) -> None:
        """Stream messages to on_message until the stream ends.

        Returns when the stream is closed or the caller is cancelled; raises
        when the service or on_message fails.
        """
        ...

    async def close(self) -> None: ...
