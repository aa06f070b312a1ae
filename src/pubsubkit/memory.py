"""In-memory transport for tests and local development."""

import itertools
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import TracebackType

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from pubsubkit.config import (
    PublishSettings,
    ReceiveSettings,
    SubscriptionConfig,
    TopicConfig,
)
from pubsubkit.errors import TransportError
from pubsubkit.message import ReceivedMessage
from pubsubkit.transport import MessageCallback, check_publishable

logger = logging.getLogger(__name__)


def _not_found(resource: str) -> TransportError:
    return TransportError(f"404 Resource not found (resource={resource}).")


def _already_exists(resource: str) -> TransportError:
    return TransportError(
        f"409 Resource already exists in the project (resource={resource})."
    )


@dataclass(frozen=True)
class PublishedMessage:
    """A message accepted by the in-memory service."""

    id: str
    topic_id: str
    data: bytes
    attributes: Mapping[str, str]
    ordering_key: str
    settings: PublishSettings
    publish_time: datetime


@dataclass(eq=False)
class _Delivery:
    message: PublishedMessage
    attempt: int = 1


@dataclass
class _Subscription:
    topic_id: str
    config: SubscriptionConfig
    filter: str | None
    send: MemoryObjectSendStream[_Delivery]
    receive: MemoryObjectReceiveStream[_Delivery]
    acked: list[str] = field(default_factory=list)


class InMemoryTransport:
    """Transport that keeps topics and subscriptions in process memory.

    Every subscription of a topic gets its own copy of each published
    message; concurrent receivers of one subscription compete for messages.
    Nacked messages are redelivered, and so is every message a receive
    stream took but never saw acked once that stream ends. Filters are
    stored but not evaluated.

    Example:
        transport = InMemoryTransport()
        async with PubSub(transport) as pubsub:
            await pubsub.create_topic("orders")
    """

    def __init__(self) -> None:
        self.topics: dict[str, TopicConfig] = {}
        self.published: list[PublishedMessage] = []
        self._subscriptions: dict[str, _Subscription] = {}
        self._ids = itertools.count(1)
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            msg = "Transport is closed"
            raise RuntimeError(msg)

    def subscription(self, subscription_id: str) -> SubscriptionConfig:
        """Return the configuration a subscription was created with."""
        return self._subscriptions[subscription_id].config

    def subscription_filter(self, subscription_id: str) -> str | None:
        return self._subscriptions[subscription_id].filter

    def subscription_topic(self, subscription_id: str) -> str:
        return self._subscriptions[subscription_id].topic_id

    def acked(self, subscription_id: str) -> list[str]:
        """Ids of the messages acknowledged on a subscription."""
        return list(self._subscriptions[subscription_id].acked)

    @property
    def subscriptions(self) -> list[str]:
        return list(self._subscriptions)

    async def topic_exists(self, topic_id: str) -> bool:
        self._check_open()
        return topic_id in self.topics

    async def create_topic(self, topic_id: str, config: TopicConfig) -> None:
        self._check_open()
        if topic_id in self.topics:
            raise _already_exists(topic_id)
        self.topics[topic_id] = config

    async def subscription_exists(self, subscription_id: str) -> bool:
        self._check_open()
        return subscription_id in self._subscriptions

    async def create_subscription(
        self,
        subscription_id: str,
        topic_id: str,
        config: SubscriptionConfig,
        filter: str | None = None,
    ) -> None:
        self._check_open()
        if topic_id not in self.topics:
            raise _not_found(topic_id)
        if subscription_id in self._subscriptions:
            raise _already_exists(subscription_id)
        send, receive = anyio.create_memory_object_stream(max_buffer_size=math.inf)
        self._subscriptions[subscription_id] = _Subscription(
            topic_id=topic_id,
            config=config,
            filter=filter,
            send=send,
            receive=receive,
        )

    async def publish(
        self,
        topic_id: str,
        data: bytes,
        attributes: Mapping[str, str],
        settings: PublishSettings,
        ordering_key: str = "",
    ) -> str:
        self._check_open()
        check_publishable(attributes, settings, ordering_key)
        if topic_id not in self.topics:
            raise _not_found(topic_id)

        published = PublishedMessage(
            id=str(next(self._ids)),
            topic_id=topic_id,
            data=data,
            attributes=dict(attributes),
            ordering_key=ordering_key,
            settings=settings,
            publish_time=datetime.now(timezone.utc),
        )
        self.published.append(published)

        for sub in self._subscriptions.values():
            if sub.topic_id == topic_id:
                sub.send.send_nowait(_Delivery(published))
        return published.id

    async def stream_receive(
        self,
        subscription_id: str,
        settings: ReceiveSettings,
        on_message: MessageCallback,
    ) -> None:
        self._check_open()
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            raise _not_found(subscription_id)

        limiter = anyio.CapacityLimiter(max(settings.num_workers or 1, 1))
        failures: list[Exception] = []
        # Taken off the subscription by this stream, neither acked nor nacked.
        outstanding: set[_Delivery] = set()

        try:
            async with anyio.create_task_group() as tg:

                async def dispatch(delivery: _Delivery) -> None:
                    try:
                        await on_message(self._to_received(sub, delivery, outstanding))
                    except Exception as e:
                        logger.exception("Dispatch failed on %s", subscription_id)
                        failures.append(e)
                        tg.cancel_scope.cancel()
                    finally:
                        limiter.release_on_behalf_of(delivery)

                async for delivery in sub.receive:
                    if self._closed:
                        break
                    if delivery.message.id in sub.acked:
                        continue
                    outstanding.add(delivery)
                    await limiter.acquire_on_behalf_of(delivery)
                    tg.start_soon(dispatch, delivery)
        finally:
            self._redeliver(sub, outstanding)

        if failures:
            raise failures[0]

    def _redeliver(self, sub: _Subscription, deliveries: set[_Delivery]) -> None:
        pending = sorted(deliveries, key=lambda d: int(d.message.id))
        deliveries.clear()
        if self._closed:
            return
        for delivery in pending:
            sub.send.send_nowait(
                _Delivery(delivery.message, attempt=delivery.attempt + 1)
            )

    def _to_received(
        self,
        sub: _Subscription,
        delivery: _Delivery,
        outstanding: set[_Delivery],
    ) -> ReceivedMessage:
        published = delivery.message

        async def ack_func() -> None:
            outstanding.discard(delivery)
            if published.id not in sub.acked:
                sub.acked.append(published.id)

        async def nack_func() -> None:
            # Already put back when its stream ended.
            if delivery not in outstanding:
                return
            outstanding.discard(delivery)
            self._redeliver(sub, {delivery})

        return ReceivedMessage(
            payload=published.data,
            attributes=dict(published.attributes),
            id=published.id,
            publish_time=published.publish_time,
            ordering_key=published.ordering_key,
            delivery_attempt=delivery.attempt,
            _ack_func=ack_func,
            _nack_func=nack_func,
        )

    async def close(self) -> None:
        """Close the transport. Open receive streams end."""
        self._closed = True
        for sub in self._subscriptions.values():
            sub.send.close()

    async def __aenter__(self) -> "InMemoryTransport":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
