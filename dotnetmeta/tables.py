"""
Part of dotnetmeta

Reader for the metadata streams of an assembly: the stream directory behind the metadata root, the #Strings, #Blob
and #GUID heaps and the compressed ("#~") or uncompressed ("#-") table stream.

Tables and their rows are dynamically sized: index columns grow from 2 to 4 bytes with the number of rows of the
tables they point to, heap columns with the heap size flags. Row sizes are therefore computed from the row counts in
the table stream header before any row is decoded, and rows are only decoded for the tables that are asked for.

References:
    CLI specification (ECMA-335 standard), II.24.2
        https://www.ecma-international.org/publications/files/ECMA-ST/ECMA-335.pdf
    Erik Pistelli's .NET file format documentation
        https://www.ntcore.com/files/dotnetformat.htm
"""

import threading
from collections import namedtuple
from typing import Dict, List, NamedTuple, Optional, Tuple
from uuid import UUID

from .constants import (METADATA_TABLE_SCHEMA, METADATA_TABLE_IDS, CODED_INDEX_TABLES, METADATA_ROOT_SIGNATURE_VALUE,
                        MAX_METADATA_VERSION_LENGTH, TABLES_STREAM_NAMES, STRINGS_STREAM_NAME, BLOB_STREAM_NAME,
                        GUID_STREAM_NAME, USER_STRINGS_STREAM_NAME, HEAP_STRINGS_LARGE, HEAP_GUID_LARGE,
                        HEAP_BLOB_LARGE, HEAP_EXTRA_DATA)
from .cursor import ByteCursor
from .errors import MalformedImageError, OutOfRangeError
from .logger import get_logger

logger = get_logger('tables')


class TableIndex(NamedTuple):
    """
    Decoded coded index: target table (None for unused tags) and 1-based row, 0 meaning null.
    """
    table: Optional[str]
    row: int


class StreamHeader(NamedTuple):
    offset: int
    size: int
    name: str


ROW_TYPES = {
    name: namedtuple(f'{name}Row', [column_name for column_name, _ in columns])
    for name, columns in METADATA_TABLE_SCHEMA.values()
}


def coded_index_tag_bits(coded_index: str) -> int:
    return (len(CODED_INDEX_TABLES[coded_index]) - 1).bit_length()


class MetadataTables:
    def __init__(self, metadata: ByteCursor):
        self.metadata = metadata
        self.version_string = ''
        self.stream_headers: List[StreamHeader] = []
        self.streams: Dict[str, ByteCursor] = {}
        self.has_mixed_case_stream_names = False

        self.heap_sizes = 0
        self.row_counts: Dict[str, int] = {}
        self.sorted_mask = 0
        self._table_offsets: Dict[str, int] = {}
        self._row_sizes: Dict[str, int] = {}
        self._rows: Dict[str, List[Tuple]] = {}
        # Stream and heap cursors are shared, every read seeks them first
        self._lock = threading.RLock()

        self._parse_root()
        self._parse_tables_header()

    def _parse_root(self) -> None:
        cursor = self.metadata
        cursor.seek(0)

        if cursor.read_u32() != METADATA_ROOT_SIGNATURE_VALUE:
            raise MalformedImageError('invalid metadata root signature')

        # MajorVersion, MinorVersion, Reserved
        cursor.skip(2 + 2 + 4)
        # The stored length includes the padding to a multiple of 4
        version_length = cursor.read_u32()
        if version_length > MAX_METADATA_VERSION_LENGTH + 1:
            raise MalformedImageError(f'invalid version string length: {version_length}')

        self.version_string = cursor.read_bytes(version_length).split(b'\x00', 1)[0].decode('utf-8', 'replace')
        cursor.align(4)

        # Flags
        cursor.skip(2)
        number_of_streams = cursor.read_u16()

        known_names = {name.lower(): name for name in (*TABLES_STREAM_NAMES, STRINGS_STREAM_NAME, BLOB_STREAM_NAME,
                                                       GUID_STREAM_NAME, USER_STRINGS_STREAM_NAME)}

        for _ in range(number_of_streams):
            offset = cursor.read_u32()
            size = cursor.read_u32()
            name = cursor.read_null_terminated(limit=32).decode('ascii', 'replace')
            cursor.align(4)

            stream_header = StreamHeader(offset, size, name)
            self.stream_headers.append(stream_header)

            canonical_name = known_names.get(name.lower())
            if canonical_name is None:
                logger.info(f'unknown stream name: {name}')
                continue

            if canonical_name != name:
                self.has_mixed_case_stream_names = True

            # Obfuscators append fake streams with known names after the real ones, the first one wins
            if canonical_name in self.streams:
                logger.debug(f'skipping duplicate stream: {name}')
                continue

            self.streams[canonical_name] = self.metadata.sub_cursor(offset, size)
            logger.debug(f'stream {name} at offset 0x{offset:x} size 0x{size:x}')

    @property
    def tables_stream(self) -> ByteCursor:
        for name in TABLES_STREAM_NAMES:
            if name in self.streams:
                return self.streams[name]

        raise MalformedImageError('assembly has no metadata table stream')

    def _parse_tables_header(self) -> None:
        cursor = self.tables_stream
        cursor.seek(0)

        # Reserved, MajorVersion, MinorVersion
        cursor.skip(4 + 1 + 1)
        self.heap_sizes = cursor.read_u8()
        # Reserved
        cursor.skip(1)
        valid_mask = cursor.read_u64()
        self.sorted_mask = cursor.read_u64()

        present_table_ids = [table_id for table_id in range(64) if valid_mask & (1 << table_id)]
        raw_row_counts = [(table_id, cursor.read_u32()) for table_id in present_table_ids]

        # Some protectors add 4 bytes after the row counts and flag it in the heap sizes
        if self.heap_sizes & HEAP_EXTRA_DATA:
            cursor.skip(4)

        for table_id, row_count in raw_row_counts:
            if table_id in METADATA_TABLE_SCHEMA:
                self.row_counts[METADATA_TABLE_SCHEMA[table_id][0]] = row_count

        self._calculate_table_offsets(cursor.position, raw_row_counts)

    def _calculate_table_offsets(self, tables_start: int, raw_row_counts: List[Tuple[int, int]]) -> None:
        current_offset = tables_start

        for table_id, row_count in raw_row_counts:
            if table_id not in METADATA_TABLE_SCHEMA:
                # Without a row layout the position of all following tables is unknown
                logger.info(f'unknown metadata table 0x{table_id:x}, later tables are not available')
                break

            table_name, columns = METADATA_TABLE_SCHEMA[table_id]
            row_size = sum(self._column_size(kind) for _, kind in columns)

            self._table_offsets[table_name] = current_offset
            self._row_sizes[table_name] = row_size
            current_offset += row_size * row_count

    def _heap_index_size(self, flag: int) -> int:
        return 4 if self.heap_sizes & flag else 2

    def _table_index_size(self, table_name: str) -> int:
        return 4 if self.row_counts.get(table_name, 0) > 0xFFFF else 2

    def _coded_index_size(self, coded_index: str) -> int:
        tag_bits = coded_index_tag_bits(coded_index)
        max_rows = max(self.row_counts.get(table_name, 0) for table_name in CODED_INDEX_TABLES[coded_index]
                       if table_name is not None)

        return 2 if max_rows < (1 << (16 - tag_bits)) else 4

    def _column_size(self, kind) -> int:
        if kind == 'u16':
            return 2
        elif kind == 'u32':
            return 4
        elif kind == 'string':
            return self._heap_index_size(HEAP_STRINGS_LARGE)
        elif kind == 'guid':
            return self._heap_index_size(HEAP_GUID_LARGE)
        elif kind == 'blob':
            return self._heap_index_size(HEAP_BLOB_LARGE)
        elif kind[0] == 'index':
            return self._table_index_size(kind[1])
        elif kind[0] == 'coded':
            return self._coded_index_size(kind[1])

        raise ValueError(f'unknown column kind: {kind}')

    @staticmethod
    def _read_index(cursor: ByteCursor, size: int) -> int:
        return cursor.read_u32() if size == 4 else cursor.read_u16()

    def _read_column(self, cursor: ByteCursor, kind, size: int):

        if kind == 'u16':
            return cursor.read_u16()
        elif kind == 'u32':
            return cursor.read_u32()

        raw = self._read_index(cursor, size)

        if kind == 'string':
            return self.get_string(raw)
        elif kind == 'guid':
            return self.get_guid(raw)
        elif kind == 'blob':
            return self.get_blob(raw)
        elif kind[0] == 'index':
            return raw

        coded_index = kind[1]
        tag_bits = coded_index_tag_bits(coded_index)
        tag = raw & ((1 << tag_bits) - 1)
        targets = CODED_INDEX_TABLES[coded_index]
        table_name = targets[tag] if tag < len(targets) else None

        return TableIndex(table_name, raw >> tag_bits)

    def has_table(self, table_name: str) -> bool:
        return self.row_counts.get(table_name, 0) > 0

    def row_count(self, table_name: str) -> int:
        return self.row_counts.get(table_name, 0)

    def rows(self, table_name: str) -> List[Tuple]:
        """
        All rows of a table in table order, decoded on first access. Missing tables have no rows.
        """
        if table_name in self._rows:
            return self._rows[table_name]

        if table_name not in METADATA_TABLE_IDS:
            raise KeyError(f'unknown metadata table: {table_name}')

        with self._lock:
            if table_name not in self._rows:
                self._rows[table_name] = self._parse_rows(table_name)

        return self._rows[table_name]

    def _parse_rows(self, table_name: str) -> List[Tuple]:
        row_count = self.row_count(table_name)
        if row_count and table_name not in self._table_offsets:
            raise MalformedImageError(f'position of table {table_name} is unknown')

        result = []

        if row_count:
            _, columns = METADATA_TABLE_SCHEMA[METADATA_TABLE_IDS[table_name]]
            row_type = ROW_TYPES[table_name]
            cursor = self.tables_stream
            cursor.seek(self._table_offsets[table_name])

            # The whole table must fit into the stream before decoding starts
            if self._row_sizes[table_name] * row_count > cursor.remaining:
                raise OutOfRangeError(f'table {table_name} with {row_count} rows exceeds the table stream')

            logger.debug(f'parsing table {table_name} rows: {row_count:d}')

            column_sizes = [(kind, self._column_size(kind)) for _, kind in columns]

            for _ in range(row_count):
                result.append(row_type(*(self._read_column(cursor, kind, size) for kind, size in column_sizes)))

        return result

    def get_row(self, table_name: str, row: int) -> Optional[Tuple]:
        """
        Row by its 1-based index, None for the null index or an index past the table end.
        """
        rows = self.rows(table_name)
        if 0 < row <= len(rows):
            return rows[row - 1]

        return None

    def _heap(self, stream_name: str) -> Optional[ByteCursor]:
        return self.streams.get(stream_name)

    def get_string(self, offset: int) -> str:
        heap = self._heap(STRINGS_STREAM_NAME)
        if heap is None:
            if offset:
                raise MalformedImageError(f'string reference 0x{offset:x} without #Strings stream')
            return ''

        with self._lock:
            heap.seek(offset)
            return heap.read_null_terminated().decode('utf-8', 'replace')

    def get_blob(self, offset: int) -> bytes:
        heap = self._heap(BLOB_STREAM_NAME)
        if heap is None:
            if offset:
                raise MalformedImageError(f'blob reference 0x{offset:x} without #Blob stream')
            return b''

        with self._lock:
            heap.seek(offset)
            if not heap.remaining:
                return b''

            length = heap.read_compressed_uint()
            return heap.read_bytes(length)

    def get_guid(self, index: int) -> Optional[UUID]:
        if index == 0:
            return None

        heap = self._heap(GUID_STREAM_NAME)
        if heap is None:
            raise MalformedImageError(f'GUID reference {index} without #GUID stream')

        with self._lock:
            heap.seek((index - 1) * 16)
            return UUID(bytes_le=heap.read_bytes(16))

    def type_full_name(self, index: TableIndex) -> Optional[str]:
        """
        Namespace qualified name of a TypeDef or TypeRef row, nested TypeRefs are joined with "+".
        """
        if index.table not in ('TypeDef', 'TypeRef'):
            return None

        row = self.get_row(index.table, index.row)
        if row is None:
            return None

        name = f'{row.TypeNamespace}.{row.TypeName}' if row.TypeNamespace else row.TypeName

        if index.table == 'TypeRef' and row.ResolutionScope.table == 'TypeRef' and row.ResolutionScope.row:
            enclosing = self.type_full_name(row.ResolutionScope)
            if enclosing:
                name = f'{enclosing}+{row.TypeName}'

        return name

    def method_owner(self, method_row: int) -> Optional[TableIndex]:
        """
        TypeDef owning a MethodDef row: the last type whose method list starts at or before the method.
        """
        if not 0 < method_row <= self.row_count('MethodDef'):
            return None

        owner = None

        for type_row, type_def in enumerate(self.rows('TypeDef'), start=1):
            if type_def.MethodList and type_def.MethodList <= method_row:
                owner = TableIndex('TypeDef', type_row)
            elif type_def.MethodList > method_row:
                break

        return owner
