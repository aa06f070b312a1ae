"""pubsubkit: convenience layer over Google Cloud Pub/Sub."""

from pubsubkit.attributes import ORIGINATED_AT, merge_attributes, stamp_originated_at
from pubsubkit.client import MessageSink, PubSub
from pubsubkit.config import (
    DEFAULT_PUBLISH_SETTINGS,
    DEFAULT_RECEIVE_SETTINGS,
    MAX_TOPIC_RETENTION,
    Config,
    EnvSettings,
    Options,
    PublishSettings,
    ReceiveSettings,
    SubscriptionConfig,
    TopicConfig,
)
from pubsubkit.errors import (
    InvalidMessageError,
    PreconditionError,
    PubSubError,
    SerializationError,
    TransportError,
)
from pubsubkit.gcp import GoogleTransport
from pubsubkit.memory import InMemoryTransport
from pubsubkit.message import Message, ReceivedMessage
from pubsubkit.transport import RESERVED_ATTRIBUTES, Transport

__all__ = [
    # client
    "PubSub",
    "MessageSink",
    # messages
    "Message",
    "ReceivedMessage",
    "ORIGINATED_AT",
    "merge_attributes",
    "stamp_originated_at",
    # config
    "Config",
    "Options",
    "EnvSettings",
    "PublishSettings",
    "ReceiveSettings",
    "TopicConfig",
    "SubscriptionConfig",
    "DEFAULT_PUBLISH_SETTINGS",
    "DEFAULT_RECEIVE_SETTINGS",
    "MAX_TOPIC_RETENTION",
    # errors
    "PubSubError",
    "SerializationError",
    "InvalidMessageError",
    "PreconditionError",
    "TransportError",
    # transports
    "Transport",
    "RESERVED_ATTRIBUTES",
    "GoogleTransport",
    "InMemoryTransport",
]
