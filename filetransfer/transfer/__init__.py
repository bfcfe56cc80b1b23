"""
Transfer Module - Wire Protocol, Client and Server Handler

Handles TCP-based single-file storage and retrieval.
"""

from .protocol import (
    Connection, TransferServer, MessageType, connect_to_server,
    StorageRequest, RetrievalRequest, Response, RetrievalResponse,
    ChecksumMessage, encode, decode, read_envelope,
)
from .client import TransferClient, TransferPhase, TransferProgress, TransferResult
from .handler import TransferHandler

__all__ = [
    'Connection',
    'TransferServer',
    'MessageType',
    'connect_to_server',
    'StorageRequest',
    'RetrievalRequest',
    'Response',
    'RetrievalResponse',
    'ChecksumMessage',
    'encode',
    'decode',
    'read_envelope',
    'TransferClient',
    'TransferPhase',
    'TransferProgress',
    'TransferResult',
    'TransferHandler',
]
