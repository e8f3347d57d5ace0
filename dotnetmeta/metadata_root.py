"""
Part of dotnetmeta

Locate the metadata root (ECMA-335 II.24.2.1) through the CLI header and read the runtime version text stored there,
e.g. "v4.0.30319". Any failure on the way degrades to an empty version.
"""

import os
from typing import Union

from .constants import (CLI_HEADER_METADATA_RVA_OFFSET, METADATA_ROOT_SIGNATURE, METADATA_VERSION_LENGTH_OFFSET,
                        MAX_METADATA_VERSION_LENGTH)
from .cursor import ByteCursor, open_file_cursor
from .errors import DotNetMetaError, NoRuntimeHeaderError, NoMetadataRootError, MalformedImageError
from .image import ImageHeaderLocator
from .logger import get_logger
from .util import is_dotted_version

logger = get_logger('metadata_root')


class MetadataRootLocator:
    def __init__(self, cursor: ByteCursor, image: ImageHeaderLocator):
        self.cursor = cursor
        self.image = image

    def metadata_root_offset(self) -> int:
        cli_header_offset = self.image.rva_to_offset(self.image.cli_header_rva)
        if cli_header_offset is None:
            raise NoRuntimeHeaderError(f'runtime header rva 0x{self.image.cli_header_rva:x} is not in any section')

        metadata_rva = self.cursor.read_u32_at(cli_header_offset + CLI_HEADER_METADATA_RVA_OFFSET)
        metadata_offset = self.image.rva_to_offset(metadata_rva)
        if metadata_offset is None:
            raise NoMetadataRootError(f'metadata root rva 0x{metadata_rva:x} is not in any section')

        self.cursor.seek(metadata_offset)
        if self.cursor.read_bytes(len(METADATA_ROOT_SIGNATURE)) != METADATA_ROOT_SIGNATURE:
            raise MalformedImageError(f'no metadata root signature at 0x{metadata_offset:x}')

        return metadata_offset

    def read_version_text(self) -> str:
        """
        Raw version text of the metadata root with the 0x0 padding removed.
        """
        metadata_offset = self.metadata_root_offset()

        length = self.cursor.read_u32_at(metadata_offset + METADATA_VERSION_LENGTH_OFFSET)
        if length == 0 or length > MAX_METADATA_VERSION_LENGTH:
            raise MalformedImageError(f'invalid version string length: {length}')

        # The cursor refuses a length running past the end of the file
        version_bytes = self.cursor.read_bytes(length)

        try:
            return version_bytes.split(b'\x00', 1)[0].decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedImageError(f'version string is not UTF-8: {e}')

    def image_runtime_version(self) -> str:
        """
        The version text as stored, e.g. "WindowsRuntime 1.4;CLR v4.0.30319" for Windows metadata, '' if unreadable.
        """
        try:
            return self.read_version_text()
        except DotNetMetaError as e:
            logger.debug(f'runtime version unavailable - {e}')
            return ''

    def runtime_version(self) -> str:
        """
        The runtime version text, or '' if it does not look like 'v' followed by a dotted version.
        """
        version = self.image_runtime_version()

        if len(version) < 2 or version[0] != 'v' or not is_dotted_version(version[1:]):
            logger.debug(f'runtime version text not recognized: {version!r}')
            return ''

        return version


def runtime_version_from_cursor(cursor: ByteCursor, validate: bool = True) -> str:
    try:
        image = ImageHeaderLocator(cursor)
    except DotNetMetaError as e:
        logger.debug(f'runtime version unavailable - {e}')
        return ''

    locator = MetadataRootLocator(cursor, image)

    return locator.runtime_version() if validate else locator.image_runtime_version()


def get_runtime_version(path: Union[str, os.PathLike], validate: bool = True) -> str:
    """
    Get the runtime version text of the assembly at path. Returns '' if the file does not exist, cannot be read or is
    not a managed image. With validate set, texts other than 'v' followed by a dotted version also give ''.
    """
    try:
        with open_file_cursor(path) as cursor:
            return runtime_version_from_cursor(cursor, validate)
    except (OSError, ValueError) as e:
        logger.debug(f'cannot read {path} - {e}')
        return ''


def get_image_runtime_version(path: Union[str, os.PathLike]) -> str:
    return get_runtime_version(path, validate=False)
