"""
File Transfer - single-file storage and retrieval over TCP

A client stores (PUT) or retrieves (GET) one named file per connection;
both sides verify the streamed bytes with an MD5 checksum.
"""

from .errors import FileTransferError
from .server import FileServer
from .transfer import TransferClient

__version__ = '1.0.0'

__all__ = ['FileServer', 'TransferClient', 'FileTransferError', '__version__']
