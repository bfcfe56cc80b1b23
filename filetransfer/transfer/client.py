"""
Transfer Client

Design Decision: One Transfer per Connection
============================================

Options Considered:
1. Persistent session, many files per connection
   - Saves handshakes
   - Every failure must leave the stream re-synchronised
2. One connection per transfer
   - Any failure just drops the socket
   - Nothing to re-synchronise

Decision: Option 2
- The server closes after the final status, the client after the last
  expected message
- No retries: any failure ends the transfer and is raised to the caller

PUT:  REQUESTING -> AWAITING_READY -> STREAMING -> AWAITING_FINAL_STATUS -> DONE
GET:  REQUESTING -> AWAITING_READY -> STREAMING -> AWAITING_CHECKSUM
      -> VERIFYING -> DONE
Any step may end in FAILED.
"""

import time
import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Callable, Type, TypeVar, Union
from dataclasses import dataclass, field

import aiofiles
import aiofiles.os

from .protocol import (
    Connection, connect_to_server, MAX_FRAME_SIZE,
    StorageRequest, RetrievalRequest, Response, RetrievalResponse,
    ChecksumMessage,
)
from ..file.checksum import new_checksum, verify_checksum
from ..file.storage import bare_name
from ..errors import (
    FileTransferError, AlreadyExists, ChecksumMismatch, LocalFileError,
    ProtocolError, RemoteError, TransportError,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024

M = TypeVar('M')


class TransferPhase(Enum):
    """Where a transfer is in its exchange."""
    REQUESTING = 'requesting'
    AWAITING_READY = 'awaiting_ready'
    STREAMING = 'streaming'
    AWAITING_FINAL_STATUS = 'awaiting_final_status'
    AWAITING_CHECKSUM = 'awaiting_checksum'
    VERIFYING = 'verifying'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class TransferProgress:
    """Track a single transfer for display."""
    operation: str  # 'put' or 'get'
    file_name: str
    total_bytes: int = 0
    bytes_transferred: int = 0
    phase: TransferPhase = TransferPhase.REQUESTING
    start_time: float = field(default_factory=time.time)
    error: Optional[str] = None

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.total_bytes == 0:
            return 1.0 if self.phase == TransferPhase.DONE else 0.0
        return self.bytes_transferred / self.total_bytes

    @property
    def progress_percent(self) -> float:
        """Progress as percentage."""
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        """Time elapsed since start."""
        return time.time() - self.start_time

    @property
    def speed_bytes_per_sec(self) -> float:
        """Transfer speed in bytes/second."""
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_transferred / elapsed

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'operation': self.operation,
            'file_name': self.file_name,
            'total_bytes': self.total_bytes,
            'bytes_transferred': self.bytes_transferred,
            'progress_percent': self.progress_percent,
            'speed_bytes_per_sec': self.speed_bytes_per_sec,
            'elapsed_seconds': self.elapsed_seconds,
            'phase': self.phase.value,
            'error': self.error,
        }


@dataclass
class TransferResult:
    """Outcome of a completed transfer."""
    operation: str
    file_name: str
    path: Path
    size: int
    checksum: str  # hex MD5
    elapsed_seconds: float
    message: str


# Progress callback type
ProgressCallback = Callable[[TransferProgress], None]


class TransferClient:
    """
    Stores files on and retrieves files from a transfer server.

    Each call opens its own connection, runs one transfer and closes it.
    Failures raise a FileTransferError subclass; a refusal by the server
    raises RemoteError with the server's reason.
    """

    def __init__(self, host: str, port: int, chunk_size: int = CHUNK_SIZE,
                 max_frame_size: int = MAX_FRAME_SIZE,
                 progress_callback: Optional[ProgressCallback] = None):
        self.host = host
        self.port = port
        self.chunk_size = chunk_size
        self.max_frame_size = max_frame_size
        self.progress_callback = progress_callback

    def _set_phase(self, progress: TransferProgress, phase: TransferPhase):
        logger.debug(f"{progress.operation.upper()} {progress.file_name}: "
                     f"{progress.phase.value} -> {phase.value}")
        progress.phase = phase
        if self.progress_callback:
            self.progress_callback(progress)

    def _on_bytes(self, progress: TransferProgress) -> Callable[[int], None]:
        def update(count: int):
            progress.bytes_transferred += count
            if self.progress_callback:
                self.progress_callback(progress)
        return update

    async def _expect(self, connection: Connection, kind: Type[M]) -> M:
        """Receive the one message the current phase allows."""
        message = await connection.receive()
        if message is None:
            raise TransportError("Server closed the connection")
        if not isinstance(message, kind):
            raise ProtocolError(
                f"Expected {kind.type.value}, got {message.type.value}"
            )
        return message

    # === PUT ===

    async def put(self, file_path: Union[str, Path]) -> TransferResult:
        """
        Store a local file on the server under its base name.

        Raises:
            LocalFileError: if the file cannot be stat'ed or opened (before
                the server is contacted)
            RemoteError: if the server refuses or rejects the file
            TransferError: if the stream is cut short
        """
        file_path = Path(file_path)
        try:
            size = (await aiofiles.os.stat(file_path)).st_size
        except OSError as e:
            raise LocalFileError(f"cannot stat {file_path}: {e.strerror or e}") from e

        try:
            source = await aiofiles.open(file_path, 'rb')
        except OSError as e:
            raise LocalFileError(f"cannot open {file_path}: {e.strerror or e}") from e

        progress = TransferProgress(operation='put', file_name=file_path.name,
                                    total_bytes=size)
        logger.info(f"PUT {file_path} ({size:,} bytes)")

        try:
            connection = await connect_to_server(self.host, self.port, self.max_frame_size)
            try:
                return await self._put(connection, source, file_path, progress)
            finally:
                await connection.close()
        except FileTransferError as e:
            progress.error = str(e)
            self._set_phase(progress, TransferPhase.FAILED)
            raise
        finally:
            await source.close()

    async def _put(self, connection: Connection, source, file_path: Path,
                   progress: TransferProgress) -> TransferResult:
        await connection.send(StorageRequest(progress.file_name, progress.total_bytes))
        self._set_phase(progress, TransferPhase.AWAITING_READY)

        response = await self._expect(connection, Response)
        if not response.success:
            raise RemoteError(response.message)

        self._set_phase(progress, TransferPhase.STREAMING)
        checksum = new_checksum()
        await connection.send_stream(source, progress.total_bytes, checksum,
                                     self.chunk_size, self._on_bytes(progress))

        await connection.send(ChecksumMessage(checksum.digest()))
        self._set_phase(progress, TransferPhase.AWAITING_FINAL_STATUS)

        response = await self._expect(connection, Response)
        if not response.success:
            raise RemoteError(response.message)

        self._set_phase(progress, TransferPhase.DONE)
        logger.info(f"Storage of {progress.file_name} complete")
        return TransferResult(
            operation='put',
            file_name=progress.file_name,
            path=file_path,
            size=progress.total_bytes,
            checksum=checksum.hexdigest(),
            elapsed_seconds=progress.elapsed_seconds,
            message=response.message,
        )

    # === GET ===

    async def get(self, file_name: str,
                  dest_dir: Union[str, Path] = '.') -> TransferResult:
        """
        Retrieve a file from the server into `dest_dir`.

        The destination is created only once the server has confirmed the
        file, and never overwrites an existing one.

        Raises:
            RemoteError: if the server cannot provide the file
            AlreadyExists: if the destination already exists
            ChecksumMismatch: if the received bytes fail verification
            TransferError: if the stream is cut short
        """
        dest_path = Path(dest_dir) / bare_name(file_name)
        progress = TransferProgress(operation='get', file_name=file_name)
        logger.info(f"GET {file_name} -> {dest_path}")

        try:
            connection = await connect_to_server(self.host, self.port, self.max_frame_size)
            try:
                return await self._get(connection, dest_path, progress)
            finally:
                await connection.close()
        except FileTransferError as e:
            progress.error = str(e)
            self._set_phase(progress, TransferPhase.FAILED)
            raise

    async def _get(self, connection: Connection, dest_path: Path,
                   progress: TransferProgress) -> TransferResult:
        await connection.send(RetrievalRequest(progress.file_name))
        self._set_phase(progress, TransferPhase.AWAITING_READY)

        response = await self._expect(connection, RetrievalResponse)
        if not response.success:
            raise RemoteError(response.message)
        progress.total_bytes = response.size

        try:
            sink = await aiofiles.open(dest_path, 'xb')
        except FileExistsError as e:
            raise AlreadyExists(f"file already exists: {dest_path}") from e
        except OSError as e:
            raise LocalFileError(f"cannot create {dest_path}: {e.strerror or e}") from e

        verified = False
        try:
            self._set_phase(progress, TransferPhase.STREAMING)
            checksum = new_checksum()
            try:
                await connection.receive_stream(sink, response.size, checksum,
                                                self.chunk_size, self._on_bytes(progress))
            finally:
                try:
                    await sink.close()
                except OSError as e:
                    raise LocalFileError(f"cannot write {dest_path}: {e.strerror or e}") from e

            self._set_phase(progress, TransferPhase.AWAITING_CHECKSUM)
            message = await self._expect(connection, ChecksumMessage)

            self._set_phase(progress, TransferPhase.VERIFYING)
            if not verify_checksum(message.checksum, checksum.digest()):
                raise ChecksumMismatch("Invalid checksum")
            verified = True
        finally:
            if not verified:
                await self._discard(dest_path)

        self._set_phase(progress, TransferPhase.DONE)
        logger.info(f"Successfully retrieved {progress.file_name}")
        return TransferResult(
            operation='get',
            file_name=progress.file_name,
            path=dest_path,
            size=response.size,
            checksum=checksum.hexdigest(),
            elapsed_seconds=progress.elapsed_seconds,
            message=response.message,
        )

    async def _discard(self, path: Path):
        """Remove a partially or incorrectly retrieved file."""
        try:
            await aiofiles.os.remove(path)
            logger.info(f"Removed incomplete file {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Could not remove incomplete file {path}: {e}")
