"""Tests for receive dispatch."""

import logging

import anyio
import pytest

from pubsubkit import (
    DEFAULT_RECEIVE_SETTINGS,
    InMemoryTransport,
    Message,
    Options,
    PubSub,
    ReceivedMessage,
    ReceiveSettings,
    TransportError,
)

pytestmark = pytest.mark.anyio

TIMEOUT_SECONDS = 2
CUSTOM_WORKERS = 2
MESSAGE_COUNT = 5


class RecordingTransport(InMemoryTransport):
    """Records the settings each receive stream was opened with."""

    def __init__(self) -> None:
        super().__init__()
        self.receive_settings: list[ReceiveSettings] = []

    async def stream_receive(self, subscription_id, settings, on_message):
        self.receive_settings.append(settings)
        await super().stream_receive(subscription_id, settings, on_message)


async def _provision(pubsub: PubSub) -> None:
    await pubsub.create_topic("orders")
    await pubsub.create_subscriptions("orders", {"orders-sub": ""})


class TestDispatch:
    async def test_forwards_messages_to_sink(
        self, pubsub: PubSub, transport: InMemoryTransport
    ) -> None:
        await _provision(pubsub)
        await pubsub.publish(Message(payload=b"one", topic="orders", attributes={"k": "v"}))
        send, receive = anyio.create_memory_object_stream(1)

        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                tg.start_soon(pubsub.receive, "orders-sub", send)
                msg: ReceivedMessage = await receive.receive()
                tg.cancel_scope.cancel()

        assert msg.payload == b"one"
        assert msg.attributes == {"k": "v"}
        assert msg.delivery_attempt == 1

    async def test_never_acks_or_nacks(
        self, pubsub: PubSub, transport: InMemoryTransport
    ) -> None:
        await _provision(pubsub)
        await pubsub.publish(Message(payload=b"one", topic="orders"))
        send, receive = anyio.create_memory_object_stream(1)

        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                tg.start_soon(pubsub.receive, "orders-sub", send)
                msg: ReceivedMessage = await receive.receive()
                assert not msg.acked
                assert not msg.nacked
                assert transport.acked("orders-sub") == []

                await msg.ack()
                tg.cancel_scope.cancel()

        assert transport.acked("orders-sub") == [msg.id]

    async def test_nack_redelivers(self, pubsub: PubSub) -> None:
        await _provision(pubsub)
        await pubsub.publish(Message(payload=b"retry me", topic="orders"))
        send, receive = anyio.create_memory_object_stream(1)

        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                tg.start_soon(pubsub.receive, "orders-sub", send)
                first: ReceivedMessage = await receive.receive()
                await first.nack()
                second: ReceivedMessage = await receive.receive()
                await second.ack()
                tg.cancel_scope.cancel()

        assert second.id == first.id
        assert second.delivery_attempt == first.delivery_attempt + 1  # type: ignore[operator]

    async def test_delivers_every_message(self, pubsub: PubSub) -> None:
        await _provision(pubsub)
        for i in range(MESSAGE_COUNT):
            await pubsub.publish(Message(payload={"n": i}, topic="orders"))
        send, receive = anyio.create_memory_object_stream(MESSAGE_COUNT)
        received: list[ReceivedMessage] = []

        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                tg.start_soon(pubsub.receive, "orders-sub", send)
                async for msg in receive:
                    received.append(msg)
                    await msg.ack()
                    if len(received) == MESSAGE_COUNT:
                        break
                tg.cancel_scope.cancel()

        assert sorted(msg.decode()["n"] for msg in received) == list(range(MESSAGE_COUNT))


class TestRestart:
    async def test_unaccepted_messages_redelivered(
        self, pubsub: PubSub, transport: InMemoryTransport
    ) -> None:
        await _provision(pubsub)
        await pubsub.publish(Message(payload=b"1", topic="orders"))
        await pubsub.publish(Message(payload=b"2", topic="orders"))
        send, receive = anyio.create_memory_object_stream(0)

        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                tg.start_soon(pubsub.receive, "orders-sub", send)
                first: ReceivedMessage = await receive.receive()
                tg.cancel_scope.cancel()
        await first.ack()

        send, receive = anyio.create_memory_object_stream(0)
        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                tg.start_soon(pubsub.receive, "orders-sub", send)
                second: ReceivedMessage = await receive.receive()
                tg.cancel_scope.cancel()

        assert first.payload == b"1"
        assert second.payload == b"2"
        assert second.delivery_attempt == 2  # noqa: PLR2004
        assert transport.acked("orders-sub") == [first.id]

    async def test_unacked_handle_redelivered_once(self, pubsub: PubSub) -> None:
        await _provision(pubsub)
        await pubsub.publish(Message(payload=b"1", topic="orders"))
        send, receive = anyio.create_memory_object_stream(1)

        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                tg.start_soon(pubsub.receive, "orders-sub", send)
                stale: ReceivedMessage = await receive.receive()
                tg.cancel_scope.cancel()
        # Stream already put it back; this must not queue a second copy.
        await stale.nack()

        send, receive = anyio.create_memory_object_stream(MESSAGE_COUNT)
        with anyio.move_on_after(0.1):
            await pubsub.receive("orders-sub", send)
        send.close()
        redelivered = [msg async for msg in receive]

        assert [msg.id for msg in redelivered] == [stale.id]
        assert redelivered[0].delivery_attempt == 2  # noqa: PLR2004


class TestTermination:
    async def test_returns_when_transport_closes(
        self, pubsub: PubSub, transport: InMemoryTransport
    ) -> None:
        await _provision(pubsub)
        send, _receive = anyio.create_memory_object_stream(1)
        finished = anyio.Event()

        async def run() -> None:
            await pubsub.receive("orders-sub", send)
            finished.set()

        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                tg.start_soon(run)
                await anyio.sleep(0.01)
                await transport.close()

        assert finished.is_set()

    async def test_missing_subscription_raises(self, pubsub: PubSub) -> None:
        send, _receive = anyio.create_memory_object_stream(1)
        with pytest.raises(TransportError, match="404"):
            await pubsub.receive("missing-sub", send)

    async def test_closed_sink_stops_stream(self, pubsub: PubSub) -> None:
        await _provision(pubsub)
        await pubsub.publish(Message(payload=b"one", topic="orders"))
        send, receive = anyio.create_memory_object_stream(1)
        await receive.aclose()

        with anyio.fail_after(TIMEOUT_SECONDS):
            with pytest.raises(anyio.BrokenResourceError):
                await pubsub.receive("orders-sub", send)


class TestReceiveSettings:
    async def test_defaults_resolved(self) -> None:
        transport = RecordingTransport()
        async with PubSub(transport) as pubsub:
            await _provision(pubsub)
            send, _receive = anyio.create_memory_object_stream(1)
            with anyio.move_on_after(0.05):
                await pubsub.receive("orders-sub", send)

        assert transport.receive_settings == [DEFAULT_RECEIVE_SETTINGS]

    async def test_client_settings_overlay(self) -> None:
        transport = RecordingTransport()
        options = Options(receive_settings=ReceiveSettings(num_workers=CUSTOM_WORKERS))
        async with PubSub(transport, options) as pubsub:
            await _provision(pubsub)
            send, _receive = anyio.create_memory_object_stream(1)
            with anyio.move_on_after(0.05):
                await pubsub.receive("orders-sub", send)

        (settings,) = transport.receive_settings
        assert settings.num_workers == CUSTOM_WORKERS
        assert settings.max_outstanding_bytes == DEFAULT_RECEIVE_SETTINGS.max_outstanding_bytes

    async def test_synchronous_request_forced_to_streaming(self, caplog) -> None:
        transport = RecordingTransport()
        async with PubSub(transport) as pubsub:
            await _provision(pubsub)
            send, _receive = anyio.create_memory_object_stream(1)
            with caplog.at_level(logging.WARNING, logger="pubsubkit.client"):
                with anyio.move_on_after(0.05):
                    await pubsub.receive(
                        "orders-sub", send, settings=ReceiveSettings(synchronous=True)
                    )

        assert transport.receive_settings[0].synchronous is False
        assert "streaming pull" in caplog.text
