"""
Part of dotnetmeta

Helpers for the variable length encodings used by the metadata heaps and signature blobs.
"""

from hashlib import sha1
from typing import Optional, Tuple


def parse_compressed_uint(data: bytes, offset: int = 0) -> Tuple[Optional[int], Optional[int]]:
    """
    Decode an ECMA-335 compressed unsigned integer (II.23.2).

    :return: (value, number of bytes used) or (None, None) if the data is truncated or the first byte
             does not start a valid encoding
    """
    if len(data) <= offset:
        return None, None

    first_byte = data[offset]

    if (first_byte & 0x80) == 0:
        return first_byte, 1
    elif (first_byte & 0xC0) == 0x80:
        if len(data) < offset + 2:
            return None, None
        return ((first_byte & 0x3F) << 8) | data[offset + 1], 2
    elif (first_byte & 0xE0) == 0xC0:
        if len(data) < offset + 4:
            return None, None
        value = ((first_byte & 0x1F) << 24) | (data[offset + 1] << 16) | (data[offset + 2] << 8) | data[offset + 3]
        return value, 4

    return None, None


def is_dotted_version(text: str) -> bool:
    """
    Check for two to four dot separated decimal components, each fitting a signed 32 bit integer.
    """
    components = text.split('.')
    if not 2 <= len(components) <= 4:
        return False

    for component in components:
        if not component.isdigit() or not component.isascii() or int(component) > 0x7FFFFFFF:
            return False

    return True


def public_key_token_from_key(public_key: bytes) -> bytes:
    """
    The token is the last 8 bytes of the SHA-1 hash of the full key in reverse order.
    """
    return sha1(public_key).digest()[-8:][::-1]
