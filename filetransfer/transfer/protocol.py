"""
File Transfer Protocol

Design Decision: Wire Format
============================

Options Considered:
1. Frame everything, including file content
   - Uniform, but every chunk pays a header
   - Forces a chunk size into the protocol

2. Separate control and data connections (FTP style)
   - Clean separation
   - Two sockets to coordinate, harder to clean up

3. One socket, framed control messages + unframed raw byte runs
   - File bytes go straight from disk to socket
   - Both sides must always know which mode comes next

Decision: Option 3
- The exchange is strictly sequential, so each side knows from its own
  position whether to read a frame or N raw bytes
- Raw runs are always preceded by a frame that carries their exact size
- No sniffing, no escaping

Frame Format:
```
+--------------+--------------------+----------------+----------------+
| Length (4B)  | Header length (4B) | Header (JSON)  | Data (binary)  |
+--------------+--------------------+----------------+----------------+
```
Length counts everything after itself. The header always has "type" and
"data_length"; only CHECKSUM messages carry a data section (the raw digest).

Exchange:
```
PUT  client -> STORAGE_REQUEST       GET  client -> RETRIEVAL_REQUEST
     server -> RESPONSE                   server -> RETRIEVAL_RESPONSE
     client -> <size raw bytes>           server -> <size raw bytes>
     client -> CHECKSUM                   server -> CHECKSUM
     server -> RESPONSE                   (server closes)
     (server closes)
```
"""

import asyncio
import json
import struct
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Tuple, Callable, Awaitable, Dict, Any, Union, ClassVar

from ..file.checksum import CHECKSUM_SIZE
from ..errors import (
    MalformedFrame, ProtocolError, TransportError, TransferError,
)

logger = logging.getLogger(__name__)

# Control messages are tiny; anything bigger is a corrupt or hostile peer
MAX_FRAME_SIZE = 1024 * 1024

MAX_FILE_SIZE = 2 ** 64 - 1

_LENGTH = struct.Struct('>I')


class MessageType(Enum):
    """Transfer protocol message types."""
    STORAGE_REQUEST = "STORAGE_REQUEST"
    RETRIEVAL_REQUEST = "RETRIEVAL_REQUEST"
    RESPONSE = "RESPONSE"
    RETRIEVAL_RESPONSE = "RETRIEVAL_RESPONSE"
    CHECKSUM = "CHECKSUM"


@dataclass(frozen=True)
class StorageRequest:
    """Client asks the server to store `size` bytes under `file_name`."""
    file_name: str
    size: int

    type: ClassVar[MessageType] = MessageType.STORAGE_REQUEST


@dataclass(frozen=True)
class RetrievalRequest:
    """Client asks the server for `file_name`."""
    file_name: str

    type: ClassVar[MessageType] = MessageType.RETRIEVAL_REQUEST


@dataclass(frozen=True)
class Response:
    """Generic ack/nack."""
    success: bool
    message: str

    type: ClassVar[MessageType] = MessageType.RESPONSE


@dataclass(frozen=True)
class RetrievalResponse:
    """Server answer to a retrieval; `size` raw bytes follow on success."""
    success: bool
    message: str
    size: int = 0

    type: ClassVar[MessageType] = MessageType.RETRIEVAL_RESPONSE


@dataclass(frozen=True)
class ChecksumMessage:
    """Digest of the raw bytes just streamed."""
    checksum: bytes

    type: ClassVar[MessageType] = MessageType.CHECKSUM


Envelope = Union[
    StorageRequest, RetrievalRequest, Response, RetrievalResponse, ChecksumMessage
]


# === Codec ===

def encode(envelope: Envelope) -> bytes:
    """Serialize a message to a complete frame (length prefix included)."""
    header: Dict[str, Any] = {'type': envelope.type.value}
    data = b''

    if isinstance(envelope, StorageRequest):
        header.update(file_name=envelope.file_name, size=envelope.size)
    elif isinstance(envelope, RetrievalRequest):
        header.update(file_name=envelope.file_name)
    elif isinstance(envelope, Response):
        header.update(success=envelope.success, message=envelope.message)
    elif isinstance(envelope, RetrievalResponse):
        header.update(success=envelope.success, message=envelope.message,
                      size=envelope.size)
    elif isinstance(envelope, ChecksumMessage):
        data = bytes(envelope.checksum)
    else:
        raise TypeError(f"Not a protocol message: {envelope!r}")

    header['data_length'] = len(data)
    header_bytes = json.dumps(header).encode('utf-8')

    body = _LENGTH.pack(len(header_bytes)) + header_bytes + data
    return _LENGTH.pack(len(body)) + body


def _field(header: Dict[str, Any], name: str, kind: type) -> Any:
    """Fetch a typed header field or fail the frame."""
    if name not in header:
        raise MalformedFrame(f"Missing field '{name}' in {header.get('type')}")
    value = header[name]
    # bool is an int subclass; keep the two apart
    if kind is int and isinstance(value, bool):
        raise MalformedFrame(f"Field '{name}' must be an integer")
    if not isinstance(value, kind):
        raise MalformedFrame(f"Field '{name}' must be {kind.__name__}")
    return value


def _size(header: Dict[str, Any]) -> int:
    size = _field(header, 'size', int)
    if size < 0 or size > MAX_FILE_SIZE:
        raise MalformedFrame(f"Size out of range: {size}")
    return size


def _decode_storage_request(header: Dict[str, Any], data: bytes) -> StorageRequest:
    return StorageRequest(file_name=_field(header, 'file_name', str),
                          size=_size(header))


def _decode_retrieval_request(header: Dict[str, Any], data: bytes) -> RetrievalRequest:
    return RetrievalRequest(file_name=_field(header, 'file_name', str))


def _decode_response(header: Dict[str, Any], data: bytes) -> Response:
    return Response(success=_field(header, 'success', bool),
                    message=_field(header, 'message', str))


def _decode_retrieval_response(header: Dict[str, Any], data: bytes) -> RetrievalResponse:
    return RetrievalResponse(success=_field(header, 'success', bool),
                             message=_field(header, 'message', str),
                             size=_size(header))


def _decode_checksum(header: Dict[str, Any], data: bytes) -> ChecksumMessage:
    if len(data) != CHECKSUM_SIZE:
        raise MalformedFrame(f"Checksum must be {CHECKSUM_SIZE} bytes, got {len(data)}")
    return ChecksumMessage(checksum=data)


_DECODERS: Dict[MessageType, Callable[[Dict[str, Any], bytes], Envelope]] = {
    MessageType.STORAGE_REQUEST: _decode_storage_request,
    MessageType.RETRIEVAL_REQUEST: _decode_retrieval_request,
    MessageType.RESPONSE: _decode_response,
    MessageType.RETRIEVAL_RESPONSE: _decode_retrieval_response,
    MessageType.CHECKSUM: _decode_checksum,
}


def decode(body: bytes) -> Envelope:
    """
    Parse a frame body (everything after the length prefix).

    Raises:
        MalformedFrame: if the body is not one of the known messages
    """
    if len(body) < _LENGTH.size:
        raise MalformedFrame(f"Frame too short: {len(body)} bytes")

    header_length = _LENGTH.unpack_from(body)[0]
    if header_length > len(body) - _LENGTH.size:
        raise MalformedFrame(
            f"Header length {header_length} exceeds frame ({len(body)} bytes)"
        )

    header_end = _LENGTH.size + header_length
    try:
        header = json.loads(body[_LENGTH.size:header_end].decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedFrame(f"Invalid header: {e}") from e

    if not isinstance(header, dict):
        raise MalformedFrame("Header must be a JSON object")

    data = body[header_end:]
    if header.get('data_length', len(data)) != len(data):
        raise MalformedFrame(
            f"Data length mismatch: header says {header.get('data_length')}, "
            f"frame has {len(data)}"
        )

    try:
        msg_type = MessageType(header.get('type'))
    except ValueError:
        raise MalformedFrame(f"Unknown message type: {header.get('type')!r}") from None

    return _DECODERS[msg_type](header, data)


async def read_envelope(reader: asyncio.StreamReader,
                        max_frame_size: int = MAX_FRAME_SIZE) -> Optional[Envelope]:
    """
    Read one framed message from a stream.

    Returns:
        The message, or None if the peer closed before sending anything
    """
    try:
        length_bytes = await reader.readexactly(_LENGTH.size)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise TransportError(
            f"Connection closed inside length prefix ({len(e.partial)} bytes)"
        ) from e
    except (ConnectionError, OSError) as e:
        raise TransportError(f"Failed to read frame: {e}") from e

    length = _LENGTH.unpack(length_bytes)[0]
    if length > max_frame_size:
        raise MalformedFrame(f"Message too large: {length} > {max_frame_size}")

    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise TransportError(
            f"Connection closed mid-frame ({len(e.partial)} of {length} bytes)"
        ) from e
    except (ConnectionError, OSError) as e:
        raise TransportError(f"Failed to read frame: {e}") from e

    return decode(body)


# Per-chunk progress callback: receives the number of bytes just moved
StreamCallback = Callable[[int], None]


class Connection:
    """
    One transfer connection.

    Carries framed messages (send/receive) and raw byte runs
    (read_exactly/write, send_stream/receive_stream) over the same
    stream. Raw reads never ask the stream for more than the remaining
    run length, so the next frame is never consumed by accident.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter,
                 max_frame_size: int = MAX_FRAME_SIZE):
        self.reader = reader
        self.writer = writer
        self.max_frame_size = max_frame_size
        self._closed = False

    @property
    def remote_address(self) -> Tuple[str, int]:
        """Get remote peer address."""
        return self.writer.get_extra_info('peername')

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, envelope: Envelope):
        """Send a message as a single write."""
        if self._closed:
            raise TransportError("Connection closed")

        data = encode(envelope)
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Failed to send {envelope.type.value}: {e}") from e

    async def receive(self) -> Optional[Envelope]:
        """Receive a message; None means the peer disconnected."""
        if self._closed:
            raise TransportError("Connection closed")
        return await read_envelope(self.reader, self.max_frame_size)

    async def try_send(self, envelope: Envelope, timeout: float = 5.0) -> bool:
        """
        Best-effort notification before giving up on a transfer.

        Returns:
            True if the message was written, False otherwise
        """
        if self._closed:
            return False
        try:
            await asyncio.wait_for(self.send(envelope), timeout=timeout)
            return True
        except (TransportError, asyncio.TimeoutError) as e:
            logger.debug(f"Could not notify {self.remote_address}: {e!r}")
            return False

    async def close(self):
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error while closing connection: {e}")

    # === Raw byte runs ===

    async def read_exactly(self, n: int) -> bytes:
        """Read exactly n raw bytes."""
        try:
            return await self.reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise TransferError(
                f"Connection closed after {len(e.partial)} of {n} bytes"
            ) from e
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Failed to read: {e}") from e

    async def write(self, data: bytes):
        """Write raw bytes."""
        if self._closed:
            raise TransportError("Connection closed")
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Failed to write: {e}") from e

    async def send_stream(self, source, size: int, checksum, chunk_size: int,
                          on_progress: Optional[StreamCallback] = None) -> int:
        """
        Copy exactly `size` bytes from an async file to the peer.

        Args:
            source: Async file opened for reading (aiofiles)
            checksum: Hash object updated with every byte sent

        Raises:
            TransferError: on a local read failure, an early EOF of the
                source, or a transport write failure
        """
        sent = 0
        while sent < size:
            try:
                chunk = await source.read(min(chunk_size, size - sent))
            except OSError as e:
                raise TransferError(f"Failed to read local file: {e}") from e
            if not chunk:
                raise TransferError(f"Local file ended after {sent} of {size} bytes")

            checksum.update(chunk)
            try:
                await self.write(chunk)
            except TransportError as e:
                raise TransferError(f"Stream aborted after {sent} of {size} bytes: {e}") from e

            sent += len(chunk)
            if on_progress:
                on_progress(len(chunk))

        return sent

    async def receive_stream(self, sink, size: int, checksum, chunk_size: int,
                             on_progress: Optional[StreamCallback] = None) -> int:
        """
        Copy exactly `size` bytes from the peer into an async file.

        Args:
            sink: Async file opened for writing (aiofiles)
            checksum: Hash object updated with every byte received

        Raises:
            TransferError: on a short stream, a transport read failure,
                or a local write failure
        """
        received = 0
        while received < size:
            try:
                chunk = await self.reader.read(min(chunk_size, size - received))
            except (ConnectionError, OSError) as e:
                raise TransferError(
                    f"Stream aborted after {received} of {size} bytes: {e}"
                ) from e
            if not chunk:
                raise TransferError(
                    f"Connection closed after {received} of {size} bytes"
                )

            checksum.update(chunk)
            try:
                await sink.write(chunk)
            except OSError as e:
                raise TransferError(f"Failed to write local file: {e}") from e

            received += len(chunk)
            if on_progress:
                on_progress(len(chunk))

        return received


# Type for request handlers
RequestHandler = Callable[[Envelope, Connection], Awaitable[None]]


class TransferServer:
    """
    TCP acceptor for transfer connections.

    Each connection gets its own task, reads exactly one request,
    hands it to the registered handler and is then closed.
    """

    def __init__(self, host: str = '0.0.0.0', port: int = 9000,
                 max_frame_size: int = MAX_FRAME_SIZE):
        self.host = host
        self.port = port
        self.max_frame_size = max_frame_size
        self.server: Optional[asyncio.AbstractServer] = None
        self._handlers: Dict[MessageType, RequestHandler] = {}

    def set_handler(self, msg_type: MessageType, handler: RequestHandler):
        """Set a request handler."""
        self._handlers[msg_type] = handler

    @property
    def is_running(self) -> bool:
        return self.server is not None and self.server.is_serving()

    async def start(self):
        """Start accepting connections."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )

        addr = self.server.sockets[0].getsockname()
        # Port 0 means "pick one"; remember what we got
        self.port = addr[1]
        logger.info(f"Transfer server listening on {addr[0]}:{addr[1]}")

    async def serve_forever(self):
        """Block until the server is stopped."""
        if self.server is None:
            await self.start()
        await self.server.serve_forever()

    async def stop(self):
        """Stop the transfer server."""
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
            logger.info("Transfer server stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Serve one connection: one request, then close."""
        connection = Connection(reader, writer, self.max_frame_size)
        peer = connection.remote_address
        logger.info(f"Accepted connection {peer}")

        try:
            message = await connection.receive()
            if message is None:
                logger.debug(f"Received an empty message from {peer}, closing")
                return

            handler = self._handlers.get(message.type)
            if handler:
                await handler(message, connection)
            else:
                logger.warning(f"Unexpected message type {message.type.value} from {peer}")

        except ProtocolError as e:
            logger.warning(f"Protocol violation from {peer}: {e}")
        except TransportError as e:
            logger.warning(f"Transport failure with {peer}: {e}")
        except Exception as e:
            logger.exception(f"Error handling connection from {peer}: {e}")
        finally:
            await connection.close()
            logger.debug(f"Connection closed: {peer}")


async def connect_to_server(host: str, port: int,
                            max_frame_size: int = MAX_FRAME_SIZE) -> Connection:
    """
    Dial a transfer server.

    Raises:
        TransportError: if the connection cannot be established
    """
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except (ConnectionError, OSError) as e:
        raise TransportError(f"Failed to connect to {host}:{port}: {e}") from e
    return Connection(reader, writer, max_frame_size)
