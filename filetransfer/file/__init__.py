"""
File Module - Server-side Storage and Checksums
"""

from .checksum import new_checksum, verify_checksum, CHECKSUM_SIZE
from .storage import FileStore

__all__ = [
    'FileStore',
    'new_checksum',
    'verify_checksum',
    'CHECKSUM_SIZE',
]
