"""Tests for Message and ReceivedMessage."""

import pytest

from pubsubkit import Message, ReceivedMessage, SerializationError
from pubsubkit.marshaling import encode_payload

pytestmark = pytest.mark.anyio


class TestMessage:
    def test_attributes_default_empty(self) -> None:
        msg = Message(payload=b"test", topic="orders")
        assert dict(msg.attributes) == {}
        assert msg.ordering_key == ""

    def test_attributes_are_read_only(self) -> None:
        msg = Message(payload=b"test", topic="orders", attributes={"k": "v"})
        with pytest.raises(TypeError):
            msg.attributes["k"] = "changed"  # type: ignore[index]

    def test_attributes_copied_from_caller(self) -> None:
        source = {"k": "v"}
        msg = Message(payload=b"test", topic="orders", attributes=source)
        source["k"] = "changed"
        assert msg.attributes["k"] == "v"


class TestEncodePayload:
    def test_bytes_pass_through(self) -> None:
        raw = b"\x00\xffnot json"
        assert encode_payload(raw) is raw

    def test_bytearray_becomes_bytes(self) -> None:
        assert encode_payload(bytearray(b"abc")) == b"abc"

    def test_structured_value_is_json(self) -> None:
        assert encode_payload({"id": 1, "tags": ["a"]}) == b'{"id": 1, "tags": ["a"]}'

    def test_string_is_json_encoded(self) -> None:
        assert encode_payload("hello world") == b'"hello world"'

    def test_unserializable_raises(self) -> None:
        with pytest.raises(SerializationError, match="object"):
            encode_payload(object())


class TestReceivedMessage:
    def test_initial_state_not_acked_or_nacked(self) -> None:
        msg = ReceivedMessage(payload=b"test")
        assert not msg.acked
        assert not msg.nacked

    def test_decode(self) -> None:
        msg = ReceivedMessage(payload=b'{"id": 1}')
        assert msg.decode() == {"id": 1}

    def test_decode_invalid_json_raises(self) -> None:
        msg = ReceivedMessage(payload=b"\xff")
        with pytest.raises(SerializationError):
            msg.decode()


class TestReceivedMessageAck:
    async def test_ack_calls_callback(self) -> None:
        called = False

        async def on_ack() -> None:
            nonlocal called
            called = True

        msg = ReceivedMessage(payload=b"test", _ack_func=on_ack)
        await msg.ack()
        assert called
        assert msg.acked
        assert not msg.nacked

    async def test_double_ack_raises(self) -> None:
        msg = ReceivedMessage(payload=b"test")
        await msg.ack()
        with pytest.raises(ValueError, match="already acked"):
            await msg.ack()

    async def test_ack_after_nack_raises(self) -> None:
        msg = ReceivedMessage(payload=b"test")
        await msg.nack()
        with pytest.raises(ValueError, match="has been nacked"):
            await msg.ack()


class TestReceivedMessageNack:
    async def test_nack_calls_callback(self) -> None:
        called = False

        async def on_nack() -> None:
            nonlocal called
            called = True

        msg = ReceivedMessage(payload=b"test", _nack_func=on_nack)
        await msg.nack()
        assert called
        assert msg.nacked

    async def test_double_nack_raises(self) -> None:
        msg = ReceivedMessage(payload=b"test")
        await msg.nack()
        with pytest.raises(ValueError, match="already nacked"):
            await msg.nack()

    async def test_nack_after_ack_raises(self) -> None:
        msg = ReceivedMessage(payload=b"test")
        await msg.ack()
        with pytest.raises(ValueError, match="has been acked"):
            await msg.nack()
