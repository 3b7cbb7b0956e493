"""
Unit tests for PipeGuard channels over an in-memory transport
"""

import json

import pytest

from pipeguard.ipc.channel import Channel
from pipeguard.ipc.crypto import NONCE_SIZE, TAG_SIZE, MessageCipher
from pipeguard.ipc.framing import HEADER_SIZE, encode_frame
from pipeguard.utils.errors import DataError, FrameTooLargeError, NotConnectedError, TransportError
from tests.conftest import LoopbackTransport


def channel_pair(cipher=None, **kwargs):
    a, b = LoopbackTransport.pair()
    return Channel(a, cipher, **kwargs), Channel(b, cipher, **kwargs), a, b


class TestPlainChannel:
    """Test unencrypted messaging."""

    @pytest.mark.asyncio
    async def test_ping_pong(self):
        client, server, wire, _ = channel_pair()

        await client.send_string("ping")
        assert await server.receive_string() == "ping"

        await server.send_string("pong")
        assert await client.receive_string() == "pong"

        # Raw frames carry the plaintext
        assert bytes(wire.sent) == encode_frame(b"ping")

    @pytest.mark.asyncio
    async def test_bytes_are_passed_through(self):
        client, server, _, _ = channel_pair()

        await client.send_bytes(b"\x00\xff\x10")
        assert await server.receive_bytes() == b"\x00\xff\x10"

    @pytest.mark.asyncio
    async def test_messages_stay_in_order(self):
        client, server, _, _ = channel_pair()

        for i in range(20):
            await client.send_string(f"message {i}")

        received = [await server.receive_string() for _ in range(20)]
        assert received == [f"message {i}" for i in range(20)]

    @pytest.mark.asyncio
    async def test_json_round_trip(self):
        client, server, _, _ = channel_pair()
        message = {"type": "request", "id": 7, "args": [1, 2.5, None, "x"], "nested": {"ok": True}}

        await client.send_json(message)
        assert await server.receive_json() == message

    @pytest.mark.asyncio
    async def test_unicode_string(self):
        client, server, _, _ = channel_pair()

        await client.send_string("grüße, 世界")
        assert await server.receive_string() == "grüße, 世界"

    @pytest.mark.asyncio
    async def test_invalid_utf8(self):
        client, server, _, _ = channel_pair()

        await client.send_bytes(b"\xff\xfe\xfd")
        with pytest.raises(DataError):
            await server.receive_string()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client, server, _, _ = channel_pair()

        await client.send_string("{not json")
        with pytest.raises(DataError):
            await server.receive_json()

    @pytest.mark.asyncio
    async def test_unserializable_json(self):
        client, _, wire, _ = channel_pair()

        with pytest.raises(DataError):
            await client.send_json({"value": object()})

        assert wire.sent == b""

    @pytest.mark.asyncio
    async def test_frame_limit(self):
        client, server, _, _ = channel_pair(max_frame_size=8)

        await client.send_bytes(b"0123456789")
        with pytest.raises(FrameTooLargeError):
            await server.receive_bytes()


class TestEncryptedChannel:
    """Test encrypted messaging."""

    @pytest.mark.asyncio
    async def test_ping_pong_hides_plaintext(self):
        cipher = MessageCipher.default()
        client, server, client_wire, server_wire = channel_pair(cipher)

        await client.send_string("ping")
        assert await server.receive_string() == "ping"
        await server.send_string("pong")
        assert await client.receive_string() == "pong"

        for wire, text in ((client_wire, b"ping"), (server_wire, b"pong")):
            assert text not in bytes(wire.sent)
            length = int.from_bytes(wire.sent[:HEADER_SIZE], 'little')
            assert length == NONCE_SIZE + len(text) + TAG_SIZE
            assert len(wire.sent) == HEADER_SIZE + length

    @pytest.mark.asyncio
    async def test_empty_message(self):
        cipher = MessageCipher.default()
        client, server, _, _ = channel_pair(cipher)

        await client.send_bytes(b"")
        assert await server.receive_bytes() == b""

    @pytest.mark.asyncio
    async def test_corrupted_nonce_is_rejected(self):
        cipher = MessageCipher.default()
        sender, _, wire, _ = channel_pair(cipher)
        await sender.send_string("pong")

        captured = bytearray(wire.sent)
        captured[HEADER_SIZE] ^= 0x01

        a, b = LoopbackTransport.pair()
        a.write(bytes(captured))
        receiver = Channel(b, cipher)

        with pytest.raises(DataError):
            await receiver.receive_string()

    @pytest.mark.asyncio
    async def test_mismatched_keys(self):
        a, b = LoopbackTransport.pair()
        sender = Channel(a, MessageCipher.default())
        receiver = Channel(b, MessageCipher(bytes(32)))

        await sender.send_json({"k": "v"})
        with pytest.raises(DataError):
            await receiver.receive_json()

    @pytest.mark.asyncio
    async def test_plaintext_sent_to_encrypted_receiver(self):
        a, b = LoopbackTransport.pair()
        sender = Channel(a)
        receiver = Channel(b, MessageCipher.default())

        await sender.send_string("hello, are you encrypted?")
        with pytest.raises(DataError):
            await receiver.receive_string()

    @pytest.mark.asyncio
    async def test_encrypted_flag(self):
        encrypted, _, _, _ = channel_pair(MessageCipher.default())
        plain, _, _, _ = channel_pair()

        assert encrypted.encrypted
        assert not plain.encrypted


class TestChannelLifecycle:
    """Test closing behavior."""

    @pytest.mark.asyncio
    async def test_operations_after_close(self):
        client, _, wire, _ = channel_pair()

        client.close()
        client.close()

        assert not client.is_open
        assert wire.closed
        with pytest.raises(NotConnectedError):
            await client.send_string("late")
        with pytest.raises(NotConnectedError):
            await client.receive_bytes()

    @pytest.mark.asyncio
    async def test_peer_sees_closed_stream(self):
        client, server, _, _ = channel_pair()

        await client.aclose()
        with pytest.raises(TransportError):
            await server.receive_bytes()

    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self):
        client, _, _, _ = channel_pair()

        await client.aclose()
        await client.aclose()
        assert not client.is_open

    @pytest.mark.asyncio
    async def test_json_uses_compact_encoding(self):
        client, _, wire, _ = channel_pair()

        await client.send_json({"a": 1, "b": [1, 2]})
        assert bytes(wire.sent[HEADER_SIZE:]) == json.dumps({"a": 1, "b": [1, 2]}, separators=(',', ':')).encode()
