"""
Part of dotnetmeta

Bounds-checked little-endian reader. Every decoder of the package reads through a ByteCursor, so this is the only
place that knows about buffer limits.
"""

import mmap
import os
from contextlib import contextmanager
from struct import unpack_from
from typing import Iterator, Optional, Union

from .errors import OutOfRangeError
from .util import parse_compressed_uint

Buffer = Union[bytes, bytearray, memoryview, mmap.mmap]


class ByteCursor:
    def __init__(self, buffer: Buffer, position: int = 0):
        self._buffer = buffer
        self._size = len(buffer)
        self._position = 0
        self.seek(position)

    @property
    def size(self) -> int:
        return self._size

    @property
    def position(self) -> int:
        return self._position

    @property
    def remaining(self) -> int:
        return self._size - self._position

    def seek(self, offset: int) -> None:
        """
        Move to an absolute offset. Seeking to the end of the buffer is allowed, beyond it is not.
        """
        if offset < 0 or offset > self._size:
            raise OutOfRangeError(f'seek to 0x{offset:x} outside of buffer of size 0x{self._size:x}')

        self._position = offset

    def skip(self, count: int) -> None:
        self.seek(self._position + count)

    def _check(self, count: int) -> None:
        if count < 0 or count > self.remaining:
            raise OutOfRangeError(
                f'read of {count} bytes at 0x{self._position:x} crosses end of buffer (size 0x{self._size:x})')

    def read_bytes(self, count: int) -> bytes:
        self._check(count)
        data = bytes(self._buffer[self._position:self._position + count])
        self._position += count

        return data

    def read_format(self, fmt: str, count: int) -> int:
        self._check(count)
        value = unpack_from(fmt, self._buffer, self._position)[0]
        self._position += count

        return value

    def read_u8(self) -> int:
        return self.read_format('<B', 1)

    def read_u16(self) -> int:
        return self.read_format('<H', 2)

    def read_u32(self) -> int:
        return self.read_format('<I', 4)

    def read_u64(self) -> int:
        return self.read_format('<Q', 8)

    def read_u16_at(self, offset: int) -> int:
        self.seek(offset)
        return self.read_u16()

    def read_u32_at(self, offset: int) -> int:
        self.seek(offset)
        return self.read_u32()

    def read_compressed_uint(self) -> int:
        # At most 4 bytes are needed, the helper reports truncation itself
        window = bytes(self._buffer[self._position:self._position + 4])
        value, used = parse_compressed_uint(window)
        if value is None:
            raise OutOfRangeError(f'invalid or truncated compressed integer at 0x{self._position:x}')

        self._position += used

        return value

    def read_null_terminated(self, limit: Optional[int] = None) -> bytes:
        """
        Read up to (not including) the next 0x0 byte and consume the terminator.
        """
        end = self._size if limit is None else min(self._size, self._position + limit)
        terminator = bytes(self._buffer[self._position:end]).find(b'\x00')
        if terminator == -1:
            raise OutOfRangeError(f'unterminated string at 0x{self._position:x}')

        data = self.read_bytes(terminator)
        self._position += 1

        return data

    def align(self, boundary: int, base: int = 0) -> None:
        misalignment = (self._position - base) % boundary
        if misalignment:
            self.skip(boundary - misalignment)

    def sub_cursor(self, offset: int, size: int) -> 'ByteCursor':
        """
        Cursor over a window of this buffer, positions in the window start at 0.
        """
        if offset < 0 or size < 0 or offset + size > self._size:
            raise OutOfRangeError(f'window 0x{offset:x}+0x{size:x} outside of buffer of size 0x{self._size:x}')

        return ByteCursor(self._buffer[offset:offset + size])


@contextmanager
def open_file_cursor(path: Union[str, os.PathLike]) -> Iterator[ByteCursor]:
    """
    Map a file read-only and yield a cursor over it. The mapping and the file handle are released on exit.
    """
    with open(path, 'rb') as file_handle:
        if os.fstat(file_handle.fileno()).st_size == 0:
            # Empty files cannot be mapped
            yield ByteCursor(b'')
            return

        mapped = mmap.mmap(file_handle.fileno(), 0, access=mmap.ACCESS_READ)
        try:
            yield ByteCursor(mapped)
        finally:
            mapped.close()
