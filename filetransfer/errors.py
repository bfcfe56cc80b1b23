"""
Transfer Errors

Every failure is terminal for the transfer that raised it. Callers catch
FileTransferError to handle them all at once.
"""


class FileTransferError(Exception):
    """Base class for all transfer failures."""


class LocalFileError(FileTransferError):
    """Stat/open/read/write failure on the local filesystem."""


class AlreadyExists(LocalFileError):
    """Exclusive create hit an existing path."""


class InvalidFileName(LocalFileError):
    """Name is not a bare file name inside the store root."""


class TransportError(FileTransferError):
    """Socket connect/read/write failure."""


class TransferError(FileTransferError):
    """Raw stream phase aborted (short read or write failure)."""


class ProtocolError(FileTransferError):
    """Peer sent an unexpected message for the current protocol position."""


class MalformedFrame(ProtocolError):
    """Frame could not be decoded into a known message."""


class ChecksumMismatch(FileTransferError):
    """Local and remote checksums differ."""


class InsufficientSpace(FileTransferError):
    """Not enough free space for the requested size."""

    def __init__(self, needed: int, available: int):
        super().__init__(
            f"not enough disk space: need={needed} available={available}"
        )
        self.needed = needed
        self.available = available


class RemoteError(FileTransferError):
    """The peer answered with success=false."""
