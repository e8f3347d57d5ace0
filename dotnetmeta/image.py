"""
Part of dotnetmeta

Walk of the image front matter (ECMA-335 II.25): DOS header pointer -> PE signature -> file header -> optional header
-> section table. The result is the runtime (CLI) header RVA plus the section descriptors needed to turn RVAs into
file offsets.
"""

from dataclasses import dataclass
from typing import List, Optional

from .constants import (PE_HEADER_POINTER_OFFSET, PE_SIGNATURE, PE_FILE_HEADER_SIZE, PE_NUMBER_OF_SECTIONS_OFFSET,
                        MAX_NUMBER_OF_SECTIONS, MIN_IMAGE_SIZE, OPTIONAL_HEADER_SIZE_PE32, SECTION_HEADER_SIZE,
                        CLI_HEADER_RVA_OFFSETS, OPTIONAL_HEADER_SIZES, SECTION_VIRTUAL_SIZE_OFFSET,
                        SECTION_VIRTUAL_ADDRESS_OFFSET, SECTION_RAW_DATA_POINTER_OFFSET)
from .cursor import ByteCursor
from .errors import NotAnImageError, MalformedImageError, NoRuntimeHeaderError
from .logger import get_logger

logger = get_logger('image')


@dataclass(frozen=True)
class SectionDescriptor:
    virtual_address: int
    size: int
    file_offset: int

    def contains(self, rva: int) -> bool:
        return self.virtual_address <= rva < self.virtual_address + self.size


class ImageHeaderLocator:
    def __init__(self, cursor: ByteCursor):
        self.cursor = cursor
        self.is_pe32_plus = False
        self.cli_header_rva = 0
        self.sections: List[SectionDescriptor] = []
        self._locate()

    def _locate(self) -> None:
        cursor = self.cursor

        if cursor.size < MIN_IMAGE_SIZE:
            raise NotAnImageError(f'file too small for an image header: {cursor.size} bytes')

        pe_header_offset = cursor.read_u32_at(PE_HEADER_POINTER_OFFSET)
        if pe_header_offset + len(PE_SIGNATURE) + PE_FILE_HEADER_SIZE + OPTIONAL_HEADER_SIZE_PE32 + \
                SECTION_HEADER_SIZE > cursor.size:
            raise NotAnImageError(f'image header offset 0x{pe_header_offset:x} leaves no room for the headers')

        cursor.seek(pe_header_offset)
        if cursor.read_bytes(len(PE_SIGNATURE)) != PE_SIGNATURE:
            raise NotAnImageError(f'no image signature at 0x{pe_header_offset:x}')

        file_header_offset = pe_header_offset + len(PE_SIGNATURE)
        number_of_sections = cursor.read_u16_at(file_header_offset + PE_NUMBER_OF_SECTIONS_OFFSET)
        if number_of_sections > MAX_NUMBER_OF_SECTIONS:
            raise MalformedImageError(f'implausible number of sections: {number_of_sections}')

        optional_header_offset = file_header_offset + PE_FILE_HEADER_SIZE
        magic = cursor.read_u16_at(optional_header_offset)
        if magic not in OPTIONAL_HEADER_SIZES:
            raise NotAnImageError(f'unknown optional header magic 0x{magic:x}')

        self.is_pe32_plus = OPTIONAL_HEADER_SIZES[magic] != OPTIONAL_HEADER_SIZE_PE32

        self.cli_header_rva = cursor.read_u32_at(optional_header_offset + CLI_HEADER_RVA_OFFSETS[magic])
        if self.cli_header_rva == 0:
            raise NoRuntimeHeaderError('image has no runtime header data directory')

        self.sections = self._read_section_table(optional_header_offset + OPTIONAL_HEADER_SIZES[magic],
                                                 number_of_sections)

        logger.debug(f'image header at 0x{pe_header_offset:x}, PE32+: {self.is_pe32_plus}, '
                     f'sections: {number_of_sections}, runtime header rva: 0x{self.cli_header_rva:x}')

    def _read_section_table(self, section_table_offset: int, number_of_sections: int) -> List[SectionDescriptor]:
        result = []

        for index in range(number_of_sections):
            section_offset = section_table_offset + index * SECTION_HEADER_SIZE
            size = self.cursor.read_u32_at(section_offset + SECTION_VIRTUAL_SIZE_OFFSET)
            virtual_address = self.cursor.read_u32_at(section_offset + SECTION_VIRTUAL_ADDRESS_OFFSET)
            file_offset = self.cursor.read_u32_at(section_offset + SECTION_RAW_DATA_POINTER_OFFSET)
            result.append(SectionDescriptor(virtual_address, size, file_offset))

        return result

    def rva_to_offset(self, rva: int) -> Optional[int]:
        """
        Translate an RVA with a linear scan over the sections (the table is not sorted).
        None means no section covers the RVA.
        """
        return rva_to_offset(self.sections, rva)


def rva_to_offset(sections: List[SectionDescriptor], rva: int) -> Optional[int]:
    for section in sections:
        if section.contains(rva):
            return section.file_offset + (rva - section.virtual_address)

    return None
