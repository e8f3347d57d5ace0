"""
Part of dotnetmeta

Metadata import scope over an assembly opened with pefile. The scope offers the enumeration primitives of a
metadata import interface: paged token enumeration with explicit enumeration handles, property lookup per token and
custom attribute lookup by type name.

Tokens carry the table number in the top byte and the 1-based row in the lower 24 bits, e.g. 0x23000001 is the
first AssemblyRef row.
"""

import os
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Tuple, Union

from pefile import PE, DIRECTORY_ENTRY, PEFormatError

from .constants import (CLI_HEADER_SIZE, CLI_HEADER_METADATA_RVA_OFFSET, METADATA_TABLE_IDS, METADATA_TABLE_SCHEMA,
                        TOKEN_TABLE_SHIFT, TOKEN_ROW_MASK)
from .cursor import ByteCursor
from .errors import DotNetMetaError, NotAnAssemblyError, MetadataImportError
from .logger import get_logger
from .tables import MetadataTables, TableIndex

logger = get_logger('scope')


def make_token(table_name: str, row: int) -> int:
    return (METADATA_TABLE_IDS[table_name] << TOKEN_TABLE_SHIFT) | row


def split_token(token: int) -> Tuple[Optional[str], int]:
    table_id = token >> TOKEN_TABLE_SHIFT
    table_name = METADATA_TABLE_SCHEMA[table_id][0] if table_id in METADATA_TABLE_SCHEMA else None

    return table_name, token & TOKEN_ROW_MASK


class AssemblyRefProps(NamedTuple):
    name: str
    major_version: int
    minor_version: int
    build_number: int
    revision_number: int
    locale: str
    public_key_or_token: bytes
    hash_value: bytes
    flags: int


class FileProps(NamedTuple):
    name: str
    hash_value: bytes
    flags: int


@dataclass
class EnumHandle:
    table_name: str
    next_row: int = 1
    closed: bool = False


class MetadataImportScope:
    def __init__(self, pe: PE, tables: MetadataTables, path: str = ''):
        self.pe = pe
        self.tables = tables
        self.path = path
        self.open_enums: List[EnumHandle] = []
        self.closed = False

    @classmethod
    def open(cls, path: Union[str, os.PathLike]) -> 'MetadataImportScope':
        """
        Open the scope of the assembly at path. The PE object is closed again if the metadata cannot be located.
        """
        path = os.fspath(path)

        try:
            pe = PE(name=path, fast_load=True)
        except PEFormatError as e:
            raise NotAnAssemblyError(f'{path} is not a PE image - {e}') from e

        try:
            tables = MetadataTables(ByteCursor(cls._read_metadata(pe)))
        except (PEFormatError, DotNetMetaError) as e:
            pe.close()
            raise NotAnAssemblyError(f'{path} has no readable metadata - {e}') from e
        except BaseException:
            pe.close()
            raise

        logger.debug(f'opened metadata scope of {path}, runtime version: {tables.version_string}')

        return cls(pe, tables, path)

    @staticmethod
    def _read_metadata(pe: PE) -> bytes:
        com_descriptor_index = DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR']

        try:
            clr_directory = pe.OPTIONAL_HEADER.DATA_DIRECTORY[com_descriptor_index]  # pylint: disable=E1101
        except (AttributeError, IndexError):
            raise NotAnAssemblyError('image has no runtime header data directory')

        if clr_directory.VirtualAddress == 0:
            raise NotAnAssemblyError('image has no runtime header')

        clr_header = ByteCursor(pe.get_data(clr_directory.VirtualAddress, CLI_HEADER_SIZE))
        clr_header.seek(CLI_HEADER_METADATA_RVA_OFFSET)
        metadata_rva = clr_header.read_u32()
        metadata_size = clr_header.read_u32()

        if metadata_rva == 0 or metadata_size == 0:
            raise NotAnAssemblyError('runtime header has no metadata directory')

        metadata = pe.get_data(metadata_rva, metadata_size)
        if len(metadata) < metadata_size:
            raise NotAnAssemblyError(f'metadata truncated: 0x{len(metadata):x} of 0x{metadata_size:x} bytes present')

        return metadata

    def _check_open(self) -> None:
        if self.closed:
            raise MetadataImportError('metadata scope is closed')

    def _rows(self, table_name: str) -> List[Tuple]:
        try:
            return self.tables.rows(table_name)
        except DotNetMetaError as e:
            raise MetadataImportError(f'cannot read table {table_name} - {e}') from e

    def _enum_tokens(self, table_name: str, handle: Optional[EnumHandle], max_count: int) \
            -> Tuple[EnumHandle, List[int]]:
        self._check_open()

        if handle is None:
            handle = EnumHandle(table_name)
            self.open_enums.append(handle)
        elif handle.closed or handle.table_name != table_name:
            raise MetadataImportError(f'invalid enumeration handle for table {table_name}')

        row_count = len(self._rows(table_name))
        first_row = handle.next_row
        last_row = min(row_count, first_row + max_count - 1)
        tokens = [make_token(table_name, row) for row in range(first_row, last_row + 1)]
        handle.next_row = last_row + 1

        return handle, tokens

    def enum_assembly_refs(self, handle: Optional[EnumHandle], max_count: int) -> Tuple[EnumHandle, List[int]]:
        return self._enum_tokens('AssemblyRef', handle, max_count)

    def enum_files(self, handle: Optional[EnumHandle], max_count: int) -> Tuple[EnumHandle, List[int]]:
        return self._enum_tokens('File', handle, max_count)

    def close_enum(self, handle: EnumHandle) -> None:
        handle.closed = True
        if handle in self.open_enums:
            self.open_enums.remove(handle)

    def _row_for_token(self, token: int, expected_table: str) -> Tuple:
        self._check_open()

        table_name, row = split_token(token)
        if table_name != expected_table:
            raise MetadataImportError(f'token 0x{token:08x} is not a {expected_table} token')

        rows = self._rows(table_name)
        if not 0 < row <= len(rows):
            raise MetadataImportError(f'token 0x{token:08x} is out of range')

        return rows[row - 1]

    def get_assembly_ref_props(self, token: int) -> AssemblyRefProps:
        row = self._row_for_token(token, 'AssemblyRef')

        return AssemblyRefProps(row.Name, row.MajorVersion, row.MinorVersion, row.BuildNumber, row.RevisionNumber,
                                row.Culture, row.PublicKeyOrToken, row.HashValue, row.Flags)

    def get_file_props(self, token: int) -> FileProps:
        row = self._row_for_token(token, 'File')

        return FileProps(row.Name, row.HashValue, row.Flags)

    def get_assembly_from_scope(self) -> int:
        """
        Token of the assembly definition, a netmodule has none.
        """
        if not self._rows('Assembly'):
            raise MetadataImportError('scope has no assembly definition')

        return make_token('Assembly', 1)

    def _attribute_type_name(self, attribute_type: TableIndex) -> Optional[str]:
        tables = self.tables

        if attribute_type.table == 'MemberRef':
            member_ref = tables.get_row('MemberRef', attribute_type.row)
            if member_ref is None:
                return None
            return tables.type_full_name(member_ref.Class)
        elif attribute_type.table == 'MethodDef':
            owner = tables.method_owner(attribute_type.row)
            if owner is None:
                return None
            return tables.type_full_name(owner)

        return None

    def get_custom_attribute_by_name(self, owner_token: int, attribute_type_name: str) -> Optional[bytes]:
        """
        Value blob of the first custom attribute of the given type attached to owner_token, None if there is none.
        """
        self._check_open()

        owner_table, owner_row = split_token(owner_token)

        try:
            for attribute in self.tables.rows('CustomAttribute'):
                if attribute.Parent != (owner_table, owner_row):
                    continue

                if self._attribute_type_name(attribute.Type) == attribute_type_name:
                    return attribute.Value
        except DotNetMetaError as e:
            raise MetadataImportError(f'cannot read custom attributes - {e}') from e

        return None

    def close(self) -> None:
        if self.closed:
            return

        self.closed = True
        for handle in list(self.open_enums):
            self.close_enum(handle)
        self.pe.close()
        logger.debug(f'closed metadata scope of {self.path}')
