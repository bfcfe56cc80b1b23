"""
File Server - Main Controller

Wires the pieces of the server together:
- FileStore rooted at the configured directory
- TransferHandler for storage/retrieval requests
- TransferServer accepting one task per connection
"""

import logging
from typing import Optional

from .config import Config
from .file import FileStore
from .file.storage import FreeSpaceProbe
from .transfer import TransferServer, TransferHandler

logger = logging.getLogger(__name__)


class FileServer:
    """
    A complete file transfer server.

    Every accepted connection serves exactly one transfer. Transfers share
    nothing but the store directory.
    """

    def __init__(self, config: Config = None,
                 free_space: Optional[FreeSpaceProbe] = None):
        """
        Initialize the server.

        Args:
            config: Server configuration (uses defaults if not provided)
            free_space: Override for the free space probe
        """
        self.config = config or Config()

        self.store = FileStore(self.config.root_dir, free_space=free_space)

        self.transfer_server = TransferServer(
            host=self.config.host,
            port=self.config.port,
            max_frame_size=self.config.max_frame_size,
        )

        self.handler = TransferHandler(
            store=self.store,
            chunk_size=self.config.chunk_size,
            notify_timeout=self.config.notify_timeout,
        )
        self.handler.register(self.transfer_server)

    @property
    def is_running(self) -> bool:
        return self.transfer_server.is_running

    @property
    def port(self) -> int:
        """Bound port (differs from the configured one when that was 0)."""
        return self.transfer_server.port

    async def start(self):
        """Start accepting transfers."""
        if self.is_running:
            return

        await self.transfer_server.start()

        logger.info("File server started")
        logger.info(f"  Port: {self.port}")
        logger.info(f"  Root Dir: {self.store.root}")

    async def stop(self):
        """Stop accepting transfers."""
        if self.transfer_server.server is None:
            return

        logger.info("Stopping file server...")
        await self.transfer_server.stop()
        logger.info("File server stopped")

    async def serve_forever(self):
        """Start (if needed) and serve until cancelled."""
        await self.start()
        try:
            await self.transfer_server.serve_forever()
        finally:
            await self.stop()

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            'running': self.is_running,
            'port': self.port,
            'root_dir': str(self.store.root),
            'free_space': self.store.free_space(),
            'transfers': self.handler.get_stats(),
        }
