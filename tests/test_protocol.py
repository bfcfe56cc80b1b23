import asyncio
import hashlib
import io
import json
import struct

import pytest

from filetransfer.errors import MalformedFrame, TransferError, TransportError
from filetransfer.transfer.protocol import (
    MAX_FRAME_SIZE, ChecksumMessage, Connection, MessageType, Response,
    RetrievalRequest, RetrievalResponse, StorageRequest, decode, encode,
    read_envelope,
)


def body_of(header: dict, data: bytes = b'') -> bytes:
    raw = json.dumps(header).encode('utf-8')
    return struct.pack('>I', len(raw)) + raw + data


def reader_with(*chunks: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    if eof:
        reader.feed_eof()
    return reader


class FakeWriter:
    def __init__(self, fail_with: Exception = None):
        self.buffer = bytearray()
        self.fail_with = fail_with
        self.close_calls = 0

    def write(self, data):
        self.buffer.extend(data)

    async def drain(self):
        if self.fail_with:
            raise self.fail_with

    def close(self):
        self.close_calls += 1

    async def wait_closed(self):
        pass

    def get_extra_info(self, name):
        return ('127.0.0.1', 4242)


class MemoryFile:
    """Stand-in for an aiofiles handle."""

    def __init__(self, data: bytes = b''):
        self.source = io.BytesIO(data)
        self.written = bytearray()

    async def read(self, n):
        return self.source.read(n)

    async def write(self, data):
        self.written.extend(data)


def test_frame_length_prefix_covers_body():
    frame = encode(StorageRequest('a.bin', 10))
    assert struct.unpack('>I', frame[:4])[0] == len(frame) - 4
    assert decode(frame[4:]) == StorageRequest('a.bin', 10)


def test_message_types():
    assert StorageRequest('a', 1).type is MessageType.STORAGE_REQUEST
    assert RetrievalRequest('a').type is MessageType.RETRIEVAL_REQUEST
    assert Response(True, 'ok').type is MessageType.RESPONSE
    assert RetrievalResponse(True, 'ok', 3).type is MessageType.RETRIEVAL_RESPONSE
    assert ChecksumMessage(bytes(16)).type is MessageType.CHECKSUM


def test_retrieval_response_header_fields():
    body = encode(RetrievalResponse(False, 'file not found: x', 0))[4:]
    header_length = struct.unpack('>I', body[:4])[0]
    header = json.loads(body[4:4 + header_length])
    assert header == {
        'type': 'RETRIEVAL_RESPONSE',
        'success': False,
        'message': 'file not found: x',
        'size': 0,
        'data_length': 0,
    }


def test_checksum_travels_in_data_section():
    digest = bytes(range(16))
    body = encode(ChecksumMessage(digest))[4:]
    header_length = struct.unpack('>I', body[:4])[0]
    header = json.loads(body[4:4 + header_length])

    assert header == {'type': 'CHECKSUM', 'data_length': 16}
    assert body[4 + header_length:] == digest
    assert decode(body) == ChecksumMessage(digest)


def test_large_size_survives():
    request = StorageRequest('big.iso', 2 ** 64 - 1)
    assert decode(encode(request)[4:]) == request


def test_unicode_file_name():
    request = RetrievalRequest('résumé €.txt')
    assert decode(encode(request)[4:]) == request


def test_encode_rejects_non_messages():
    with pytest.raises(TypeError):
        encode({'type': 'RESPONSE'})


@pytest.mark.parametrize('header,data', [
    ({'type': 'NOPE'}, b''),
    ({'file_name': 'a'}, b''),
    ({'type': 'STORAGE_REQUEST', 'file_name': 'a'}, b''),
    ({'type': 'STORAGE_REQUEST', 'file_name': 'a', 'size': -1}, b''),
    ({'type': 'STORAGE_REQUEST', 'file_name': 'a', 'size': 2 ** 64}, b''),
    ({'type': 'STORAGE_REQUEST', 'file_name': 'a', 'size': True}, b''),
    ({'type': 'STORAGE_REQUEST', 'file_name': 7, 'size': 1}, b''),
    ({'type': 'RESPONSE', 'success': 'yes', 'message': 'x'}, b''),
    ({'type': 'RETRIEVAL_RESPONSE', 'success': True, 'message': 'x'}, b''),
    ({'type': 'CHECKSUM'}, b'short'),
    ({'type': 'RESPONSE', 'success': True, 'message': 'x', 'data_length': 5}, b''),
])
def test_decode_rejects_bad_messages(header, data):
    with pytest.raises(MalformedFrame):
        decode(body_of(header, data))


def test_decode_rejects_bad_json():
    with pytest.raises(MalformedFrame):
        decode(struct.pack('>I', 3) + b'{{{')


def test_decode_rejects_non_object_header():
    with pytest.raises(MalformedFrame):
        decode(struct.pack('>I', 2) + b'[]')


def test_decode_rejects_header_longer_than_frame():
    with pytest.raises(MalformedFrame):
        decode(struct.pack('>I', 100) + b'{}')


def test_decode_rejects_truncated_body():
    with pytest.raises(MalformedFrame):
        decode(b'\x00\x00')


async def test_eof_before_prefix_is_empty_message():
    assert await read_envelope(reader_with()) is None


async def test_eof_inside_prefix_is_transport_error():
    with pytest.raises(TransportError):
        await read_envelope(reader_with(b'\x00\x00'))


async def test_eof_mid_frame_is_transport_error():
    frame = encode(Response(True, 'Ready for data'))
    with pytest.raises(TransportError):
        await read_envelope(reader_with(frame[:-3]))


async def test_oversized_frame_is_rejected_before_reading_it():
    prefix = struct.pack('>I', MAX_FRAME_SIZE + 1)
    with pytest.raises(MalformedFrame):
        await read_envelope(reader_with(prefix, eof=False))


async def test_custom_frame_limit():
    frame = encode(Response(True, 'x' * 200))
    with pytest.raises(MalformedFrame):
        await read_envelope(reader_with(frame), max_frame_size=64)


async def test_frames_and_raw_bytes_share_the_stream():
    # Payload full of bytes that would parse as length prefixes
    payload = b'\x00\x00\x00\x10' * 40
    wire = (
        encode(RetrievalResponse(True, 'Ready to send', len(payload)))
        + payload
        + encode(ChecksumMessage(hashlib.md5(payload).digest()))
    )
    connection = Connection(reader_with(wire), FakeWriter())

    response = await connection.receive()
    assert response == RetrievalResponse(True, 'Ready to send', len(payload))

    sink = MemoryFile()
    checksum = hashlib.md5()
    received = await connection.receive_stream(sink, response.size, checksum, chunk_size=7)

    assert received == len(payload)
    assert bytes(sink.written) == payload

    final = await connection.receive()
    assert final == ChecksumMessage(checksum.digest())
    assert await connection.receive() is None


async def test_read_exactly_leaves_next_frame_alone():
    wire = b'abcdef' + encode(Response(True, 'Storage complete'))
    connection = Connection(reader_with(wire), FakeWriter())

    assert await connection.read_exactly(6) == b'abcdef'
    assert await connection.receive() == Response(True, 'Storage complete')


async def test_read_exactly_short_is_transfer_error():
    connection = Connection(reader_with(b'abc'), FakeWriter())
    with pytest.raises(TransferError):
        await connection.read_exactly(10)


async def test_receive_stream_short_is_transfer_error():
    connection = Connection(reader_with(b'x' * 10), FakeWriter())
    with pytest.raises(TransferError, match='10 of 20'):
        await connection.receive_stream(MemoryFile(), 20, hashlib.md5(), chunk_size=4)


async def test_receive_stream_write_failure_is_transfer_error():
    class FullDisk(MemoryFile):
        async def write(self, data):
            raise OSError(28, 'No space left on device')

    connection = Connection(reader_with(b'x' * 8), FakeWriter())
    with pytest.raises(TransferError, match='No space left'):
        await connection.receive_stream(FullDisk(), 8, hashlib.md5(), chunk_size=4)


async def test_send_writes_one_frame():
    writer = FakeWriter()
    connection = Connection(reader_with(), writer)

    await connection.send(StorageRequest('a.bin', 3))

    assert bytes(writer.buffer) == encode(StorageRequest('a.bin', 3))


async def test_send_stream_checksums_what_it_sends():
    data = bytes(range(256)) * 10
    writer = FakeWriter()
    connection = Connection(reader_with(), writer)
    checksum = hashlib.md5()
    progress = []

    sent = await connection.send_stream(MemoryFile(data), len(data), checksum,
                                        chunk_size=1000, on_progress=progress.append)

    assert sent == len(data)
    assert bytes(writer.buffer) == data
    assert checksum.digest() == hashlib.md5(data).digest()
    assert sum(progress) == len(data)


async def test_send_stream_stops_at_size():
    writer = FakeWriter()
    connection = Connection(reader_with(), writer)

    await connection.send_stream(MemoryFile(b'0123456789'), 4, hashlib.md5(), chunk_size=3)

    assert bytes(writer.buffer) == b'0123'


async def test_send_stream_short_source_is_transfer_error():
    connection = Connection(reader_with(), FakeWriter())
    with pytest.raises(TransferError, match='3 of 8'):
        await connection.send_stream(MemoryFile(b'abc'), 8, hashlib.md5(), chunk_size=4)


async def test_send_stream_write_failure_is_transfer_error():
    connection = Connection(reader_with(), FakeWriter(fail_with=ConnectionResetError()))
    with pytest.raises(TransferError):
        await connection.send_stream(MemoryFile(b'abcd'), 4, hashlib.md5(), chunk_size=4)


async def test_send_failure_is_transport_error():
    connection = Connection(reader_with(), FakeWriter(fail_with=BrokenPipeError()))
    with pytest.raises(TransportError):
        await connection.send(Response(False, 'nope'))


async def test_try_send_reports_failure_instead_of_raising():
    connection = Connection(reader_with(), FakeWriter(fail_with=BrokenPipeError()))
    assert await connection.try_send(Response(False, 'nope')) is False


async def test_close_is_idempotent():
    writer = FakeWriter()
    connection = Connection(reader_with(), writer)

    await connection.close()
    await connection.close()

    assert connection.closed
    assert writer.close_calls == 1
    assert await connection.try_send(Response(False, 'late')) is False
    with pytest.raises(TransportError):
        await connection.send(Response(False, 'late'))
