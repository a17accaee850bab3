"""
Secure Memory - zeroable buffers for PINs, unlock codes and passphrases.

Provides:
- secure_zero_memory() for bytearrays
- SecretBuffer, a bytearray holder that wipes itself on clear/exit/GC
- secure_compare() for constant-time equality

SECURITY: Secrets are held in bytearrays so they can be overwritten in
place after use. Python may still copy data internally (e.g. when a
caller converts to str), so this is best-effort: the engine avoids such
conversions and passes the buffer itself to pipes.
"""

import ctypes
import hmac
from typing import Union

from ..logging_config import get_logger

logger = get_logger(__name__)


def secure_zero_memory(data: bytearray) -> bool:
    """
    Overwrite a bytearray with zeros in place.

    Uses ctypes.memset on the underlying buffer, then a slice assignment
    as a second pass, then verifies.

    Args:
        data: The buffer to wipe

    Returns:
        True if every byte reads back as zero
    """
    if data is None or len(data) == 0:
        return True

    if not isinstance(data, bytearray):
        logger.warning("secure_zero_memory requires bytearray, got %s", type(data).__name__)
        return False

    size = len(data)
    try:
        buf = (ctypes.c_char * size).from_buffer(data)
        ctypes.memset(ctypes.addressof(buf), 0, size)
        del buf
    except (ValueError, TypeError, BufferError) as e:
        logger.debug("memset unavailable for buffer: %s", e)

    data[:] = bytes(size)

    if any(data):
        logger.warning("Memory zeroing verification failed")
        return False
    return True


class SecretBuffer:
    """
    A bytearray that is wiped when the holder is done with it.

    The buffer keeps its length after clearing (all zeros) so that tests
    and auditors can inspect the backing storage.

        with SecretBuffer(b"123456") as pin:
            proc.stdin.write(pin.data)
        # pin.raw is now all zeros
    """

    def __init__(self, data: Union[bytes, bytearray, None] = None):
        if isinstance(data, bytearray):
            # Take ownership: no second copy of the caller's buffer
            self._data = data
        elif data is not None:
            self._data = bytearray(data)
        else:
            self._data = bytearray()
        self._cleared = False

    @property
    def data(self) -> bytearray:
        """The live buffer. Raises once cleared."""
        if self._cleared:
            raise ValueError("SecretBuffer has been cleared")
        return self._data

    @property
    def raw(self) -> bytearray:
        """Backing storage, readable after clearing (for verification only)."""
        return self._data

    @property
    def cleared(self) -> bool:
        return self._cleared

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        state = "cleared" if self._cleared else f"{len(self._data)} bytes"
        return f"<SecretBuffer {state}>"

    def equals(self, other: Union['SecretBuffer', bytes, bytearray, str]) -> bool:
        """Constant-time comparison against another secret or a known value."""
        if isinstance(other, SecretBuffer):
            other = other.data
        return secure_compare(self.data, other)

    def is_hex(self) -> bool:
        return all(chr(b) in "0123456789abcdefABCDEF" for b in self.data)

    def __enter__(self) -> 'SecretBuffer':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.clear()

    def clear(self) -> bool:
        """Zero the buffer. Safe to call more than once."""
        if self._cleared:
            return True
        result = secure_zero_memory(self._data)
        self._cleared = True
        return result

    def __del__(self):
        if not getattr(self, '_cleared', True):
            self.clear()


def secure_compare(a: Union[str, bytes, bytearray], b: Union[str, bytes, bytearray]) -> bool:
    """Constant-time comparison via hmac.compare_digest."""
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)
