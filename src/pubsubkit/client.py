"""PubSub client: provisioning, publish and receive over a Transport."""

import logging
from collections.abc import Mapping
from dataclasses import replace
from types import TracebackType
from typing import Any, Protocol

from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode, TracerProvider

from pubsubkit.attributes import merge_attributes, stamp_originated_at
from pubsubkit.config import (
    MAX_TOPIC_RETENTION,
    Config,
    Options,
    PublishSettings,
    ReceiveSettings,
    SubscriptionConfig,
    TopicConfig,
)
from pubsubkit.errors import PreconditionError
from pubsubkit.gcp import GoogleTransport
from pubsubkit.marshaling import encode_payload
from pubsubkit.message import Message, ReceivedMessage
from pubsubkit.tracing import MESSAGING_SYSTEM, TRACER_NAME, inject_context
from pubsubkit.transport import Transport

logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    """Where received messages go, e.g. an anyio memory object send stream."""

    async def send(self, item: ReceivedMessage) -> Any: ...


def clamp_retention(config: TopicConfig) -> TopicConfig:
    """Cap a topic's retention at MAX_TOPIC_RETENTION."""
    if config.retention is not None and config.retention > MAX_TOPIC_RETENTION:
        logger.warning(
            "Topic retention %s exceeds %s, using %s",
            config.retention,
            MAX_TOPIC_RETENTION,
            MAX_TOPIC_RETENTION,
        )
        return replace(config, retention=MAX_TOPIC_RETENTION)
    return config


class PubSub:
    """Pub/Sub client that provisions resources, publishes and receives.

    Example:
        async with PubSub.from_config(Config(project_id="my-project")) as pubsub:
            await pubsub.create_topic("orders")
            await pubsub.create_subscriptions("orders", {"orders-audit": ""})
            await pubsub.publish(Message(payload={"id": 1}, topic="orders"))

            send, receive = anyio.create_memory_object_stream()
            tg.start_soon(pubsub.receive, "orders-audit", send)
            async for msg in receive:
                process(msg)
                await msg.ack()
    """

    def __init__(
        self,
        transport: Transport,
        options: Options | None = None,
        tracer_provider: TracerProvider | None = None,
    ) -> None:
        self._transport = transport
        self._options = options or Options()
        provider = tracer_provider or trace.get_tracer_provider()
        self._tracer = provider.get_tracer(TRACER_NAME)
        self._closed = False

    @classmethod
    def from_config(cls, config: Config, options: Options | None = None) -> "PubSub":
        """Connect to Google Cloud Pub/Sub."""
        return cls(GoogleTransport.from_config(config), options)

    @property
    def options(self) -> Options:
        return self._options

    @property
    def transport(self) -> Transport:
        return self._transport

    def _check_open(self) -> None:
        if self._closed:
            msg = "PubSub is closed"
            raise RuntimeError(msg)

    async def topic_exists(self, topic_id: str) -> bool:
        self._check_open()
        return await self._transport.topic_exists(topic_id)

    async def subscription_exists(self, subscription_id: str) -> bool:
        self._check_open()
        return await self._transport.subscription_exists(subscription_id)

    async def create_topic(
        self,
        topic_id: str,
        config: TopicConfig | None = None,
    ) -> None:
        """Create a topic unless it already exists.

        An existing topic is left as it is, whatever its configuration.
        """
        self._check_open()
        if await self._transport.topic_exists(topic_id):
            logger.debug("Topic %s already exists", topic_id)
            return

        config = clamp_retention(config or TopicConfig())
        await self._transport.create_topic(topic_id, config)
        logger.info("Created topic %s", topic_id)

    async def create_subscription(
        self,
        topic_id: str,
        subscription_id: str,
        filter: str | None = None,
        config: SubscriptionConfig | None = None,
    ) -> None:
        """Create one subscription on an existing topic unless it already exists."""
        await self.create_subscriptions(topic_id, {subscription_id: filter}, config)

    async def create_subscriptions(
        self,
        topic_id: str,
        subscriptions: Mapping[str, str | None],
        config: SubscriptionConfig | None = None,
    ) -> None:
        """Create subscriptions on an existing topic.

        ``subscriptions`` maps subscription id to filter expression; an empty
        filter means no filter. Subscriptions that already exist are skipped.
        Raises PreconditionError if the topic does not exist. The first
        failure stops the batch; subscriptions created before it remain.
        """
        self._check_open()
        if not await self._transport.topic_exists(topic_id):
            raise PreconditionError(topic_id)

        config = config or SubscriptionConfig()
        for subscription_id, filter in subscriptions.items():
            if await self._transport.subscription_exists(subscription_id):
                logger.debug("Subscription %s already exists", subscription_id)
                continue

            await self._transport.create_subscription(
                subscription_id,
                topic_id,
                config,
                filter=filter or None,
            )
            logger.info(
                "Created subscription %s on topic %s", subscription_id, topic_id
            )

    def _attributes(
        self,
        message: Message,
        extra: tuple[Mapping[str, str] | None, ...],
    ) -> dict[str, str]:
        attributes = merge_attributes(message.attributes, *extra)
        if self._options.auto_originated_at:
            stamp_originated_at(attributes)
        if self._options.propagate_trace_context:
            attributes = inject_context(attributes)
        return attributes

    async def publish(
        self,
        message: Message,
        *attributes: Mapping[str, str] | None,
        settings: PublishSettings | None = None,
    ) -> str:
        """Publish a message and wait until the service accepts it.

        Extra attribute maps are merged over the message's own attributes,
        later maps winning. ``settings`` replaces the client's publish
        settings for this call. Returns the server-assigned message id.

        Raises SerializationError if the payload cannot be encoded,
        InvalidMessageError for a reserved attribute key or an ordering key
        without ``enable_message_ordering``, and TransportError if the
        service rejects the message.
        """
        self._check_open()
        data = encode_payload(message.payload)
        resolved = (settings or self._options.publish_settings).resolve()

        with self._tracer.start_as_current_span(
            f"send {message.topic}",
            kind=SpanKind.PRODUCER,
            attributes={
                "messaging.system": MESSAGING_SYSTEM,
                "messaging.operation.type": "send",
                "messaging.operation.name": "send",
                "messaging.destination.name": message.topic,
            },
        ) as span:
            try:
                message_id = await self._transport.publish(
                    message.topic,
                    data,
                    self._attributes(message, attributes),
                    resolved,
                    ordering_key=message.ordering_key,
                )
                span.set_attribute("messaging.message.id", message_id)
                span.set_status(Status(StatusCode.OK))
            except Exception as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.set_attribute("error.type", type(e).__name__)
                raise

        logger.debug("Published message %s to %s", message_id, message.topic)
        return message_id

    async def receive(
        self,
        subscription_id: str,
        sink: MessageSink,
        settings: ReceiveSettings | None = None,
    ) -> None:
        """Stream messages from a subscription into ``sink``.

        Runs until the stream ends: returns when the transport is closed or
        the calling task is cancelled, raises when the service or the sink
        fails. Messages are never acked or nacked here; that is up to
        whoever reads from the sink.
        """
        self._check_open()
        requested = settings or self._options.receive_settings
        if requested.synchronous:
            logger.warning(
                "Synchronous receive requested on %s, using streaming pull",
                subscription_id,
            )

        async def forward(msg: ReceivedMessage) -> None:
            await sink.send(msg)

        logger.debug("Receiving from %s", subscription_id)
        await self._transport.stream_receive(
            subscription_id, requested.resolve(), forward
        )
        logger.debug("Stream on %s ended", subscription_id)

    async def close(self) -> None:
        """Close the client and its transport."""
        if self._closed:
            return
        self._closed = True
        await self._transport.close()

    async def __aenter__(self) -> "PubSub":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
