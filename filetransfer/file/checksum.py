"""
Checksums

Design Decision: MD5
====================
Integrity here guards against truncation and corruption in transit, not
against a malicious peer, so a fast 16-byte digest is enough. Both sides
hash the raw byte run while streaming it, never in a second pass.
"""

import hmac
import hashlib


CHECKSUM_SIZE = 16


def new_checksum():
    """Fresh rolling checksum for one transfer."""
    return hashlib.md5()


def verify_checksum(expected: bytes, actual: bytes) -> bool:
    """Byte-for-byte digest comparison."""
    return hmac.compare_digest(bytes(expected), bytes(actual))
