"""Google Cloud Pub/Sub transport."""

import logging
import os
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import timedelta
from types import TracebackType
from typing import Any

import anyio
from anyio.from_thread import BlockingPortal
from google.api_core import exceptions as gax_exceptions
from google.auth.credentials import Credentials
from google.cloud import pubsub_v1
from google.cloud.pubsub_v1.subscriber.scheduler import ThreadScheduler
from google.oauth2 import service_account
from google.protobuf import duration_pb2

from pubsubkit.config import (
    DEFAULT_PUBLISH_SETTINGS,
    Config,
    PublishSettings,
    ReceiveSettings,
    SubscriptionConfig,
    TopicConfig,
)
from pubsubkit.errors import TransportError
from pubsubkit.message import ReceivedMessage
from pubsubkit.transport import MessageCallback, check_publishable

logger = logging.getLogger(__name__)

EMULATOR_HOST_ENV = "PUBSUB_EMULATOR_HOST"

# Publisher clients past this many each hold their own batching threads.
PUBLISHER_CACHE_WARN_SIZE = 8

_SERVICE_ERRORS = (gax_exceptions.GoogleAPICallError, gax_exceptions.RetryError)

PublisherFactory = Callable[[PublishSettings | None], Any]


@contextmanager
def _service_errors() -> Iterator[None]:
    try:
        yield
    except _SERVICE_ERRORS as e:
        raise TransportError.from_exception(e) from e


def _restore_environ(previous: Mapping[str, str | None]) -> None:
    for name, value in previous.items():
        if value is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = value


def _duration(value: timedelta) -> duration_pb2.Duration:
    duration = duration_pb2.Duration()
    duration.FromTimedelta(value)
    return duration


def _seconds(value: timedelta | None) -> int:
    return int(value.total_seconds()) if value is not None else 0


def batch_settings(settings: PublishSettings) -> pubsub_v1.types.BatchSettings:
    """Map publish settings onto the client library's batching knobs."""
    settings = settings.resolve()
    return pubsub_v1.types.BatchSettings(
        max_bytes=settings.byte_threshold,
        max_latency=(settings.delay_threshold or timedelta(0)).total_seconds(),
        max_messages=settings.count_threshold,
    )


def publisher_options(settings: PublishSettings) -> pubsub_v1.types.PublisherOptions:
    """Map publish settings onto ordering and flow control options."""
    settings = settings.resolve()
    defaults = pubsub_v1.types.PublishFlowControl()
    max_messages = settings.flow_control_max_messages or 0
    max_bytes = settings.flow_control_max_bytes or 0

    if max_messages or max_bytes:
        flow_control = pubsub_v1.types.PublishFlowControl(
            message_limit=max_messages or defaults.message_limit,
            byte_limit=max_bytes or defaults.byte_limit,
            limit_exceeded_behavior=pubsub_v1.types.LimitExceededBehavior.BLOCK,
        )
    else:
        flow_control = defaults

    return pubsub_v1.types.PublisherOptions(
        enable_message_ordering=bool(settings.enable_message_ordering),
        flow_control=flow_control,
    )


def flow_control(settings: ReceiveSettings) -> pubsub_v1.types.FlowControl:
    """Map receive settings onto the subscriber's flow control."""
    settings = settings.resolve()
    return pubsub_v1.types.FlowControl(
        max_bytes=settings.max_outstanding_bytes,
        max_messages=settings.max_outstanding_messages,
        max_lease_duration=_seconds(settings.max_extension),
        min_duration_per_lease_extension=_seconds(settings.min_extension_period),
        max_duration_per_lease_extension=_seconds(settings.max_extension_period),
    )


class GoogleTransport:
    """Transport backed by ``google-cloud-pubsub``.

    Client library calls run in worker threads. One publisher client is kept
    per distinct set of publish settings, since batching is configured per
    client. Clients live until ``close()``, so per-call settings should come
    from a small fixed set; a warning is logged once the cache passes
    PUBLISHER_CACHE_WARN_SIZE.

    ``from_config`` with an emulator host sets PUBSUB_EMULATOR_HOST for the
    process, which the client library reads. ``close()`` restores the
    previous value.

    Example:
        transport = GoogleTransport.from_config(Config(project_id="my-project"))
        async with PubSub(transport) as pubsub:
            await pubsub.publish(Message(payload={"id": 1}, topic="orders"))
    """

    def __init__(
        self,
        project_id: str,
        credentials: Credentials | None = None,
        *,
        subscriber: pubsub_v1.SubscriberClient | None = None,
        publisher_factory: PublisherFactory | None = None,
    ) -> None:
        self._project_id = project_id
        self._credentials = credentials
        self._subscriber = subscriber or pubsub_v1.SubscriberClient(
            credentials=credentials
        )
        self._publisher_factory = publisher_factory or self._build_publisher
        self._publishers: dict[PublishSettings | None, Any] = {}
        self._restore_env: dict[str, str | None] = {}
        self._closed = False

    @classmethod
    def from_config(cls, config: Config) -> "GoogleTransport":
        """Build a transport from connection config.

        With ``is_local`` the service account file is used for credentials;
        otherwise application default credentials are picked up by the
        client library.
        """
        credentials = None
        if config.is_local:
            if not config.credentials_file:
                msg = "credentials_file is required when is_local is set"
                raise ValueError(msg)
            credentials = service_account.Credentials.from_service_account_file(
                config.credentials_file
            )

        previous = os.environ.get(EMULATOR_HOST_ENV)
        if config.emulator_host:
            logger.debug("Using Pub/Sub emulator at %s", config.emulator_host)
            os.environ[EMULATOR_HOST_ENV] = config.emulator_host
        try:
            transport = cls(config.project_id, credentials=credentials)
        except Exception:
            _restore_environ({EMULATOR_HOST_ENV: previous})
            raise
        if config.emulator_host:
            transport._restore_env[EMULATOR_HOST_ENV] = previous
        return transport

    def _build_publisher(self, settings: PublishSettings | None) -> Any:
        if settings is None:
            return pubsub_v1.PublisherClient(credentials=self._credentials)
        return pubsub_v1.PublisherClient(
            batch_settings=batch_settings(settings),
            publisher_options=publisher_options(settings),
            credentials=self._credentials,
        )

    def _publisher(self, settings: PublishSettings | None = None) -> Any:
        if settings not in self._publishers:
            self._publishers[settings] = self._publisher_factory(settings)
            if len(self._publishers) == PUBLISHER_CACHE_WARN_SIZE + 1:
                logger.warning(
                    "%d publisher clients open; vary publish settings less",
                    len(self._publishers),
                )
        return self._publishers[settings]

    def _check_open(self) -> None:
        if self._closed:
            msg = "Transport is closed"
            raise RuntimeError(msg)

    def _topic_path(self, topic_id: str) -> str:
        return f"projects/{self._project_id}/topics/{topic_id}"

    def _subscription_path(self, subscription_id: str) -> str:
        return f"projects/{self._project_id}/subscriptions/{subscription_id}"

    async def topic_exists(self, topic_id: str) -> bool:
        self._check_open()
        admin = self._publisher()
        request = {"topic": self._topic_path(topic_id)}

        def get_topic() -> bool:
            try:
                admin.get_topic(request=request)
            except gax_exceptions.NotFound:
                return False
            return True

        with _service_errors():
            return await anyio.to_thread.run_sync(get_topic)

    async def create_topic(self, topic_id: str, config: TopicConfig) -> None:
        self._check_open()
        admin = self._publisher()
        request: dict[str, Any] = {"name": self._topic_path(topic_id)}
        if config.retention is not None:
            request["message_retention_duration"] = _duration(config.retention)
        if config.labels:
            request["labels"] = dict(config.labels)

        def create() -> None:
            admin.create_topic(request=request)

        with _service_errors():
            await anyio.to_thread.run_sync(create)

    async def subscription_exists(self, subscription_id: str) -> bool:
        self._check_open()
        request = {"subscription": self._subscription_path(subscription_id)}

        def get_subscription() -> bool:
            try:
                self._subscriber.get_subscription(request=request)
            except gax_exceptions.NotFound:
                return False
            return True

        with _service_errors():
            return await anyio.to_thread.run_sync(get_subscription)

    async def create_subscription(
        self,
        subscription_id: str,
        topic_id: str,
        config: SubscriptionConfig,
        filter: str | None = None,
    ) -> None:
        self._check_open()
        request: dict[str, Any] = {
            "name": self._subscription_path(subscription_id),
            "topic": self._topic_path(topic_id),
            "enable_message_ordering": config.enable_message_ordering,
            "retain_acked_messages": config.retain_acked_messages,
        }
        if filter:
            request["filter"] = filter
        if config.ack_deadline is not None:
            request["ack_deadline_seconds"] = _seconds(config.ack_deadline)
        if config.retention is not None:
            request["message_retention_duration"] = _duration(config.retention)
        if config.labels:
            request["labels"] = dict(config.labels)

        def create() -> None:
            self._subscriber.create_subscription(request=request)

        with _service_errors():
            await anyio.to_thread.run_sync(create)

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
        publisher = self._publisher(settings)
        topic_path = self._topic_path(topic_id)
        timeout = settings.timeout or DEFAULT_PUBLISH_SETTINGS.timeout or timedelta(0)
        extra: dict[str, Any] = {"ordering_key": ordering_key} if ordering_key else {}

        def send() -> str:
            future = publisher.publish(
                topic_path,
                data,
                timeout=timeout.total_seconds(),
                **extra,
                **attributes,
            )
            return future.result()

        with _service_errors():
            return await anyio.to_thread.run_sync(send)

    async def stream_receive(
        self,
        subscription_id: str,
        settings: ReceiveSettings,
        on_message: MessageCallback,
    ) -> None:
        self._check_open()
        settings = settings.resolve()
        path = self._subscription_path(subscription_id)
        failures: list[Exception] = []
        streams: list[Any] = []
        stopping = False

        async with BlockingPortal() as portal:

            def callback(pmsg: Any) -> None:
                try:
                    portal.call(on_message, self._to_received(pmsg))
                except Exception as e:
                    if stopping:
                        return
                    logger.exception("Dispatch failed on %s", subscription_id)
                    failures.append(e)
                    for stream in streams:
                        stream.cancel()

            executor = ThreadPoolExecutor(
                max_workers=max(settings.num_workers or 1, 1),
                thread_name_prefix=f"pubsubkit-{subscription_id}",
            )
            future = self._subscriber.subscribe(
                path,
                callback=callback,
                flow_control=flow_control(settings),
                scheduler=ThreadScheduler(executor=executor),
            )
            streams.append(future)
            if failures:
                future.cancel()

            try:
                with _service_errors():
                    await anyio.to_thread.run_sync(
                        future.result, abandon_on_cancel=True
                    )
            finally:
                stopping = True
                future.cancel()
                await portal.stop(cancel_remaining=True)

        if failures:
            raise failures[0]

    @staticmethod
    def _to_received(pmsg: Any) -> ReceivedMessage:
        async def ack_func() -> None:
            pmsg.ack()

        async def nack_func() -> None:
            pmsg.nack()

        return ReceivedMessage(
            payload=pmsg.data,
            attributes=dict(pmsg.attributes),
            id=pmsg.message_id,
            publish_time=pmsg.publish_time,
            ordering_key=pmsg.ordering_key,
            delivery_attempt=pmsg.delivery_attempt,
            _ack_func=ack_func,
            _nack_func=nack_func,
        )

    async def close(self) -> None:
        """Flush pending publishes and close the clients."""
        if self._closed:
            return
        self._closed = True
        publishers = list(self._publishers.values())
        self._publishers.clear()
        try:
            for publisher in publishers:
                await anyio.to_thread.run_sync(publisher.stop)
            await anyio.to_thread.run_sync(self._subscriber.close)
        finally:
            _restore_environ(self._restore_env)
            self._restore_env = {}

    async def __aenter__(self) -> "GoogleTransport":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
