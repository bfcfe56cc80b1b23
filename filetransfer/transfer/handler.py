"""
Transfer Handler

Server side of a transfer. Registered on a TransferServer for the two
request types; each call runs one storage or retrieval to completion and
the server closes the connection afterwards.

Storage:
1. Exclusive-create the target (rejects existing files and bad names)
2. Free space preflight
3. "Ready for data", then receive exactly `size` raw bytes
4. Receive the client's checksum and compare
5. Final status; the file survives only if everything matched

Retrieval:
1. Open the file (rejects missing/unreadable files)
2. "Ready to send" with the size, then stream it
3. Send the checksum
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from .protocol import (
    Connection, TransferServer, MessageType, Envelope,
    StorageRequest, RetrievalRequest, Response, RetrievalResponse,
    ChecksumMessage,
)
from ..file.storage import FileStore
from ..file.checksum import new_checksum, verify_checksum
from ..errors import (
    FileTransferError, ChecksumMismatch, ProtocolError, TransportError, TransferError,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024


class TransferHandler:
    """
    Handles storage and retrieval requests against a FileStore.

    Holds no per-transfer state; every connection works on its own locals,
    so concurrent transfers only meet at the filesystem.
    """

    def __init__(self, store: FileStore, chunk_size: int = CHUNK_SIZE,
                 notify_timeout: float = 5.0):
        self.store = store
        self.chunk_size = chunk_size
        self.notify_timeout = notify_timeout

        # Statistics
        self.files_stored = 0
        self.files_served = 0
        self.bytes_received = 0
        self.bytes_sent = 0
        self.failed_transfers = 0

    def register(self, server: TransferServer):
        """Register request handlers with the server."""
        server.set_handler(MessageType.STORAGE_REQUEST, self.handle_storage)
        server.set_handler(MessageType.RETRIEVAL_REQUEST, self.handle_retrieval)

    async def _fail(self, connection: Connection, reason: str,
                    response: Optional[Envelope] = None):
        """Log a failed transfer and tell the peer, once, if it still listens."""
        self.failed_transfers += 1
        logger.warning(f"Transfer with {connection.remote_address} failed: {reason}")
        await connection.try_send(response or Response(False, reason),
                                  timeout=self.notify_timeout)

    # === Storage ===

    async def handle_storage(self, request: StorageRequest, connection: Connection):
        """Store one file sent by the client."""
        logger.info(f"Attempting to store {request.file_name} ({request.size:,} bytes)")

        try:
            path, handle = await self.store.create_exclusive(request.file_name)
        except FileTransferError as e:
            await self._fail(connection, str(e))
            return

        try:
            await self._receive_file(request, connection, handle)
        except FileTransferError as e:
            await self._abandon(handle, path)
            if isinstance(e, TransportError):
                # Peer is gone; nobody to tell
                self.failed_transfers += 1
                logger.warning(f"Storage of {request.file_name} aborted: {e}")
            else:
                await self._fail(connection, str(e))
            return
        except Exception as e:
            logger.exception(f"Unexpected error storing {request.file_name}")
            await self._abandon(handle, path)
            await self._fail(connection, f"internal server error: {e}")
            return
        except asyncio.CancelledError:
            await self._abandon(handle, path)
            raise

        self.files_stored += 1
        logger.info(f"Stored {request.file_name} ({request.size:,} bytes)")
        await connection.try_send(Response(True, "Storage complete"),
                                  timeout=self.notify_timeout)

    async def _receive_file(self, request: StorageRequest, connection: Connection,
                            handle):
        """Steps 2-5 of storage; raises on any failure, leaving cleanup to the caller."""
        self.store.check_space(request.size)

        await connection.send(Response(True, "Ready for data"))

        checksum = new_checksum()
        received = await connection.receive_stream(
            handle, request.size, checksum, self.chunk_size
        )
        self.bytes_received += received

        try:
            await handle.close()
        except OSError as e:
            raise TransferError(f"failed to close file: {e}") from e

        message = await connection.receive()
        if message is None:
            raise TransportError("connection closed before checksum")
        if not isinstance(message, ChecksumMessage):
            raise ProtocolError(f"invalid checksum message: got {message.type.value}")

        if not verify_checksum(message.checksum, checksum.digest()):
            raise ChecksumMismatch("Invalid checksum")

    async def _abandon(self, handle, path: Path):
        """Close and drop a partially written file."""
        try:
            await handle.close()
        except OSError as e:
            logger.error(f"Could not close partial file {path}: {e}")
        try:
            await self.store.remove(path)
        except FileTransferError as e:
            logger.error(f"Could not remove partial file {path}: {e}")

    # === Retrieval ===

    async def handle_retrieval(self, request: RetrievalRequest, connection: Connection):
        """Send one stored file to the client."""
        logger.info(f"Attempting to retrieve {request.file_name}")

        try:
            _, size, handle = await self.store.open_read(request.file_name)
        except FileTransferError as e:
            await self._fail(connection, str(e), RetrievalResponse(False, str(e), 0))
            return

        try:
            await connection.send(RetrievalResponse(True, "Ready to send", size))

            checksum = new_checksum()
            sent = await connection.send_stream(handle, size, checksum, self.chunk_size)
        except FileTransferError as e:
            # Mid-stream there is no frame the client could expect; it sees a short stream
            self.failed_transfers += 1
            logger.warning(f"Retrieval of {request.file_name} aborted: {e}")
            return
        finally:
            await handle.close()

        self.bytes_sent += sent
        self.files_served += 1
        logger.info(f"Sent {request.file_name} ({size:,} bytes)")

        await connection.send(ChecksumMessage(checksum.digest()))

    def get_stats(self) -> dict:
        """Get handler statistics."""
        return {
            'files_stored': self.files_stored,
            'files_served': self.files_served,
            'bytes_received': self.bytes_received,
            'bytes_sent': self.bytes_sent,
            'failed_transfers': self.failed_transfers,
        }
