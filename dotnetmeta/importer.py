"""
Part of dotnetmeta

Enumeration of the referenced assemblies, the scatter files and the assembly level custom attributes through a
metadata import scope, and the metadata backend built on top of it.
"""

import os
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple, Union

from .constants import ENUM_PAGE_SIZE, TARGET_FRAMEWORK_ATTRIBUTE
from .errors import DotNetMetaError, MetadataImportError, CustomAttributeFormatError
from .identity import AssemblyReference, FileReference, FrameworkName, decode_assembly_identity
from .logger import get_logger
from .scope import MetadataImportScope, EnumHandle
from .signatures import read_metadata_string

logger = get_logger('importer')

EnumFunction = Callable[[Optional[EnumHandle], int], Tuple[EnumHandle, List[int]]]


class MetadataTableImporter:
    def __init__(self, scope: MetadataImportScope, page_size: int = ENUM_PAGE_SIZE):
        if page_size < 1:
            raise ValueError(f'invalid enumeration page size: {page_size}')

        self.scope = scope
        self.page_size = page_size

    def _collect_tokens(self, enum_function: EnumFunction) -> List[int]:
        """
        Fetch tokens page by page until a page comes back empty. The enumeration handle is always released.
        """
        result = []
        handle = None

        try:
            while True:
                handle, tokens = enum_function(handle, self.page_size)
                if not tokens:
                    break

                result.extend(tokens)
        finally:
            if handle is not None:
                self.scope.close_enum(handle)

        return result

    def enumerate_references(self) -> List[AssemblyReference]:
        """
        Get all AssemblyRef entries in table order. Duplicates are kept.
        """
        result = []

        try:
            for token in self._collect_tokens(self.scope.enum_assembly_refs):
                props = self.scope.get_assembly_ref_props(token)
                reference = decode_assembly_identity(props.name, props.major_version, props.minor_version,
                                                     props.build_number, props.revision_number, props.locale,
                                                     props.public_key_or_token, props.flags)
                result.append(reference)
        except MetadataImportError:
            raise
        except (DotNetMetaError, ValueError) as e:
            raise MetadataImportError(f'cannot enumerate assembly references - {e}') from e

        logger.debug(f'{len(result)} assembly references')

        return result

    def enumerate_files(self) -> List[FileReference]:
        result = []

        try:
            for token in self._collect_tokens(self.scope.enum_files):
                result.append(FileReference(self.scope.get_file_props(token).name))
        except MetadataImportError:
            raise
        except DotNetMetaError as e:
            raise MetadataImportError(f'cannot enumerate files - {e}') from e

        logger.debug(f'{len(result)} file references')

        return result

    def get_custom_attribute(self, owner_token: int, attribute_type_name: str) -> Optional[bytes]:
        """
        Value blob of the named custom attribute on owner_token. Any lookup failure counts as "not present".
        """
        try:
            return self.scope.get_custom_attribute_by_name(owner_token, attribute_type_name)
        except DotNetMetaError as e:
            logger.debug(f'custom attribute {attribute_type_name} lookup failed - {e}')
            return None


class MetadataBackend(ABC):
    """
    Source of the assembly metadata behind AssemblyMetadata. Backends are opened on construction and raise
    NotAnAssemblyError for files without readable metadata.
    """
    name = ''
    # Whether files() is backed by the File table
    provides_files = True
    # Keyword options of AssemblyMetadata passed on to the constructor
    option_names: Tuple[str, ...] = ()

    @abstractmethod
    def dependencies(self) -> Tuple[AssemblyReference, ...]:
        pass

    @abstractmethod
    def files(self) -> Tuple[FileReference, ...]:
        pass

    @abstractmethod
    def target_framework_text(self) -> Optional[str]:
        """
        The framework name string recorded by the assembly's TargetFrameworkAttribute, None if there is none.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def target_framework(self) -> Optional[FrameworkName]:
        text = self.target_framework_text()
        if text is None:
            return None

        try:
            return FrameworkName.parse(text)
        except ValueError as e:
            logger.debug(f'target framework not recognized: {text!r} - {e}')
            return None


class ImportBackend(MetadataBackend):
    name = 'import'
    option_names = ('page_size',)

    def __init__(self, path: Union[str, os.PathLike], page_size: int = ENUM_PAGE_SIZE):
        self.scope = MetadataImportScope.open(path)

        try:
            self.importer = MetadataTableImporter(self.scope, page_size)
        except BaseException:
            self.scope.close()
            raise

    def dependencies(self) -> Tuple[AssemblyReference, ...]:
        return tuple(self.importer.enumerate_references())

    def files(self) -> Tuple[FileReference, ...]:
        return tuple(self.importer.enumerate_files())

    def target_framework_text(self) -> Optional[str]:
        try:
            assembly_token = self.scope.get_assembly_from_scope()
        except MetadataImportError as e:
            logger.debug(f'no assembly scope - {e}')
            return None

        blob = self.importer.get_custom_attribute(assembly_token, TARGET_FRAMEWORK_ATTRIBUTE)
        if blob is None:
            return None

        try:
            return read_metadata_string(blob)
        except CustomAttributeFormatError as e:
            logger.debug(f'malformed {TARGET_FRAMEWORK_ATTRIBUTE} value - {e}')
            return None

    def close(self) -> None:
        self.scope.close()
