"""Configuration dataclasses for pubsubkit.

Settings records use ``None`` for "not set". Resolving a record overlays
only the fields that are set onto the defaults, so an explicit zero is kept.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from typing import Any, TypeVar

from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_TOPIC_RETENTION = timedelta(days=7)

_S = TypeVar("_S")


def _overlay(settings: _S, defaults: _S) -> _S:
    overrides: dict[str, Any] = {}
    for f in fields(settings):  # type: ignore[arg-type]
        value = getattr(settings, f.name)
        if value is not None:
            overrides[f.name] = value
    return replace(defaults, **overrides)  # type: ignore[type-var]


@dataclass(frozen=True)
class PublishSettings:
    """Publish tuning. Fields left as None fall back to the defaults.

    Attributes:
        delay_threshold: Publish a batch once its oldest message is this old.
        count_threshold: Publish a batch once it holds this many messages.
        byte_threshold: Publish a batch once it holds this many bytes.
        timeout: Give up on a single publish request after this long.
        enable_message_ordering: Honour ordering keys on outbound messages.
        flow_control_max_messages: Cap on messages buffered before publish.
        flow_control_max_bytes: Cap on bytes buffered before publish.
    """

    delay_threshold: timedelta | None = None
    count_threshold: int | None = None
    byte_threshold: int | None = None
    timeout: timedelta | None = None
    enable_message_ordering: bool | None = None
    flow_control_max_messages: int | None = None
    flow_control_max_bytes: int | None = None

    def resolve(self, defaults: "PublishSettings | None" = None) -> "PublishSettings":
        """Return a fully populated copy with unset fields taken from defaults."""
        return _overlay(self, defaults or DEFAULT_PUBLISH_SETTINGS)


DEFAULT_PUBLISH_SETTINGS = PublishSettings(
    delay_threshold=timedelta(milliseconds=10),
    count_threshold=100,
    byte_threshold=1_000_000,
    timeout=timedelta(seconds=60),
    enable_message_ordering=False,
    flow_control_max_messages=0,
    flow_control_max_bytes=0,
)
"""Flow control limits of 0 mean "unlimited"."""


@dataclass(frozen=True)
class ReceiveSettings:
    """Receive tuning. Fields left as None fall back to the defaults.

    Attributes:
        max_outstanding_messages: Cap on delivered but unacked messages.
        max_outstanding_bytes: Cap on the size of delivered but unacked messages.
        max_extension: Stop extending a message's ack deadline after this long.
        max_extension_period: Longest single ack deadline extension.
        min_extension_period: Shortest single ack deadline extension.
        num_workers: Number of workers dispatching messages concurrently.
        synchronous: Ignored; receive always uses streaming pull.
    """

    max_outstanding_messages: int | None = None
    max_outstanding_bytes: int | None = None
    max_extension: timedelta | None = None
    max_extension_period: timedelta | None = None
    min_extension_period: timedelta | None = None
    num_workers: int | None = None
    synchronous: bool | None = None

    def resolve(self, defaults: "ReceiveSettings | None" = None) -> "ReceiveSettings":
        """Return a fully populated copy, always in streaming mode."""
        resolved = _overlay(self, defaults or DEFAULT_RECEIVE_SETTINGS)
        return replace(resolved, synchronous=False)


DEFAULT_RECEIVE_SETTINGS = ReceiveSettings(
    max_outstanding_messages=1000,
    max_outstanding_bytes=1_000_000_000,
    max_extension=timedelta(minutes=60),
    max_extension_period=timedelta(0),
    min_extension_period=timedelta(0),
    num_workers=10,
    synchronous=False,
)
"""Extension periods of 0 let the client library pick its own bounds."""


@dataclass(frozen=True)
class TopicConfig:
    """Configuration applied when a topic is created."""

    retention: timedelta | None = None
    """How long the topic keeps messages. Capped at MAX_TOPIC_RETENTION."""

    labels: Mapping[str, str] = field(default_factory=dict)
    """Labels attached to the topic."""


@dataclass(frozen=True)
class SubscriptionConfig:
    """Configuration applied when a subscription is created."""

    enable_message_ordering: bool = False
    """Deliver messages sharing an ordering key in publish order."""

    retain_acked_messages: bool = False
    """Keep acknowledged messages for the retention window (enables seek)."""

    ack_deadline: timedelta | None = None
    """Initial ack deadline. Uses the service default when not set."""

    retention: timedelta | None = None
    """How long unacked messages are kept. Uses the service default when not set."""

    labels: Mapping[str, str] = field(default_factory=dict)
    """Labels attached to the subscription."""


@dataclass(frozen=True)
class Config:
    """How to reach the Pub/Sub service.

    Example:
        Config(project_id="my-project", is_local=True, credentials_file="sa.json")
    """

    project_id: str
    """Google Cloud project that owns the topics and subscriptions."""

    is_local: bool = False
    """Authenticate with the service account in credentials_file instead of
    application default credentials."""

    credentials_file: str | None = None
    """Path to a service account JSON key. Required when is_local is set."""

    emulator_host: str | None = None
    """host:port of a Pub/Sub emulator. Disables authentication."""


@dataclass(frozen=True)
class Options:
    """Client behaviour shared by every publish and receive call.

    Options are never mutated by the client. The ``with_*`` helpers return
    modified copies.
    """

    auto_originated_at: bool = False
    """Add an OriginatedAt attribute (Unix seconds) to messages lacking one."""

    publish_settings: PublishSettings = field(default_factory=PublishSettings)
    """Publish tuning used when a call does not pass its own."""

    receive_settings: ReceiveSettings = field(default_factory=ReceiveSettings)
    """Receive tuning used when a call does not pass its own."""

    propagate_trace_context: bool = False
    """Inject the current OpenTelemetry trace context into message attributes."""

    def with_auto_originated_at(self, auto: bool = True) -> "Options":
        return replace(self, auto_originated_at=auto)

    def with_publish_settings(self, settings: PublishSettings) -> "Options":
        return replace(self, publish_settings=settings)

    def with_receive_settings(self, settings: ReceiveSettings) -> "Options":
        return replace(self, receive_settings=settings)

    def with_trace_context(self, propagate: bool = True) -> "Options":
        return replace(self, propagate_trace_context=propagate)


class EnvSettings(BaseSettings):
    """Connection and behaviour settings read from ``PUBSUB_*`` variables.

    Example:
        env = EnvSettings()
        pubsub = PubSub.from_config(env.to_config(), env.to_options())
    """

    model_config = SettingsConfigDict(
        env_prefix="PUBSUB_",
        env_file=".env",
        extra="ignore",
    )

    project_id: str
    is_local: bool = False
    credentials_file: str | None = None
    emulator_host: str | None = None
    auto_originated_at: bool = False
    propagate_trace_context: bool = False

    def to_config(self) -> Config:
        return Config(
            project_id=self.project_id,
            is_local=self.is_local,
            credentials_file=self.credentials_file,
            emulator_host=self.emulator_host,
        )

    def to_options(self) -> Options:
        return Options(
            auto_originated_at=self.auto_originated_at,
            propagate_trace_context=self.propagate_trace_context,
        )
