"""
Part of dotnetmeta

Metadata backend on top of dnfile. Besides the referenced assemblies it decodes the assembly level custom attributes
including their named arguments. Enum typed arguments need the underlying type of the enum, which may be defined in
a referenced assembly; those assemblies are located through an AssemblyResolver and opened on demand.
"""

import os
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

import dnfile
from pefile import PEFormatError

from .constants import ASSEMBLY_FILE_EXTENSIONS, TARGET_FRAMEWORK_ATTRIBUTE, PRIMITIVE_ELEMENT_FORMATS
from .errors import DotNetMetaError, NotAnAssemblyError, MetadataImportError
from .identity import AssemblyReference, FileReference, decode_assembly_identity
from .importer import MetadataBackend
from .logger import get_logger
from .signatures import (CustomAttributeDecoder, CustomAttributeValue, parse_constructor_parameters,
                         split_assembly_qualified_name)
from .tables import TableIndex

logger = get_logger('inspection')

# Field flags (II.23.1.5)
FIELD_ATTRIBUTE_STATIC = 0x0010
ENUM_VALUE_FIELD_NAME = 'value__'
FIELD_SIGNATURE = 0x06


def _text(item) -> str:
    """
    dnfile hands out heap strings either as str or as heap items carrying the str in .value.
    """
    if item is None:
        return ''

    value = getattr(item, 'value', item)
    if value is None:
        return ''
    if isinstance(value, bytes):
        return value.decode('utf-8', 'replace')

    return str(value)


def _blob(item) -> bytes:
    if item is None:
        return b''

    value = getattr(item, 'value', item)
    if value is None:
        return b''

    return bytes(value)


def _raw_flags(row) -> int:
    return int(row.struct.Flags)


def _table_rows(metadata_tables, table_name: str) -> List:
    table = getattr(metadata_tables, table_name, None)
    if table is None:
        return []

    return table.rows


def _type_def_name(type_def) -> str:
    namespace = _text(type_def.TypeNamespace)
    name = _text(type_def.TypeName)

    return f'{namespace}.{name}' if namespace else name


class DeclaredAttribute(NamedTuple):
    type_name: str
    value: CustomAttributeValue


class AssemblyResolver(ABC):
    @abstractmethod
    def resolve(self, requesting_path: str, assembly_name: str) -> Optional[str]:
        """
        Path of the assembly named assembly_name as seen from the assembly at requesting_path, None if it cannot be
        found. assembly_name may be a simple or a full display name.
        """
        pass


class DirectoryFirstResolver(AssemblyResolver):
    """
    Look for <name>.dll next to the requesting assembly first, then for <name>.dll, .exe or .winmd in each of the
    probe directories in order.
    """
    def __init__(self, probe_directories: Iterable[Union[str, os.PathLike]] = ()):
        self.probe_directories = [os.fspath(directory) for directory in probe_directories]

    def candidates(self, requesting_path: str, simple_name: str) -> List[str]:
        result = [os.path.join(os.path.dirname(os.path.abspath(requesting_path)), simple_name + '.dll')]

        for directory in self.probe_directories:
            for extension in ASSEMBLY_FILE_EXTENSIONS:
                result.append(os.path.join(directory, simple_name + extension))

        return result

    def resolve(self, requesting_path: str, assembly_name: str) -> Optional[str]:
        simple_name = assembly_name.split(',', 1)[0].strip()
        if not simple_name:
            return None

        for candidate in self.candidates(requesting_path, simple_name):
            try:
                if os.path.isfile(candidate):
                    logger.debug(f'resolved {simple_name} to {candidate}')
                    return candidate
            except (OSError, ValueError) as e:
                logger.debug(f'cannot probe {candidate} - {e}')

        logger.debug(f'cannot resolve assembly {simple_name}')

        return None


class InspectionBackend(MetadataBackend):
    name = 'inspection'
    provides_files = False
    option_names = ('resolver',)

    def __init__(self, path: Union[str, os.PathLike], resolver: Optional[AssemblyResolver] = None):
        self.path = os.path.abspath(os.fspath(path))
        self.resolver = resolver if resolver is not None else DirectoryFirstResolver()
        # Resolved dependency path -> opened image, None for images that failed to open
        self._dependency_images: Dict[str, Optional[dnfile.dnPE]] = {}
        self._enum_cache: Dict[str, Optional[int]] = {}
        self._enum_lock = threading.Lock()
        self.pe = self._open_image(self.path)

    @staticmethod
    def _open_image(path: str) -> dnfile.dnPE:
        try:
            pe = dnfile.dnPE(path)
        except (PEFormatError, OSError) as e:
            raise NotAnAssemblyError(f'{path} is not a PE image - {e}') from e

        net = getattr(pe, 'net', None)
        if net is None or getattr(net, 'mdtables', None) is None:
            pe.close()
            raise NotAnAssemblyError(f'{path} has no metadata')

        return pe

    @property
    def metadata_tables(self):
        return self.pe.net.mdtables

    def referenced_identities(self) -> List[AssemblyReference]:
        result = []

        for row in _table_rows(self.metadata_tables, 'AssemblyRef'):
            reference = decode_assembly_identity(_text(row.Name), row.MajorVersion, row.MinorVersion,
                                                 row.BuildNumber, row.RevisionNumber, _text(row.Culture),
                                                 _blob(row.PublicKey), _raw_flags(row))
            result.append(reference)

        return result

    def dependencies(self) -> Tuple[AssemblyReference, ...]:
        try:
            return tuple(self.referenced_identities())
        except (DotNetMetaError, ValueError, AttributeError, IndexError) as e:
            raise MetadataImportError(f'cannot enumerate assembly references - {e}') from e

    def files(self) -> Tuple[FileReference, ...]:
        return ()

    def _resolution_scope_assembly(self, type_ref) -> Optional[str]:
        scope = type_ref.ResolutionScope
        if scope is None or scope.table is None:
            return None

        if scope.table.name == 'AssemblyRef':
            return _text(scope.row.Name)
        elif scope.table.name == 'TypeRef':
            return self._resolution_scope_assembly(scope.row)

        return None

    def _type_ref_name(self, type_ref) -> str:
        scope = type_ref.ResolutionScope
        name = _text(type_ref.TypeName)

        if scope is not None and scope.table is not None and scope.table.name == 'TypeRef':
            return f'{self._type_ref_name(scope.row)}+{name}'

        namespace = _text(type_ref.TypeNamespace)

        return f'{namespace}.{name}' if namespace else name

    def type_name(self, index: TableIndex, assembly_qualified: bool = False) -> Optional[str]:
        """
        Name of a TypeDef or TypeRef row. TypeRefs into other assemblies get the assembly name appended when
        assembly_qualified is set.
        """
        rows = _table_rows(self.metadata_tables, index.table) if index.table in ('TypeDef', 'TypeRef') else []
        if not 0 < index.row <= len(rows):
            return None

        row = rows[index.row - 1]
        if index.table == 'TypeDef':
            return _type_def_name(row)

        name = self._type_ref_name(row)
        if assembly_qualified:
            assembly_name = self._resolution_scope_assembly(row)
            if assembly_name:
                return f'{name}, {assembly_name}'

        return name

    def _method_owner_name(self, method_row_index: int) -> Optional[str]:
        for type_def in _table_rows(self.metadata_tables, 'TypeDef'):
            for method in type_def.MethodList or ():
                if method.row_index == method_row_index:
                    return _type_def_name(type_def)

        return None

    def _attribute_constructor(self, attribute_type) -> Tuple[Optional[str], bytes]:
        """
        Attribute type name and constructor signature of a CustomAttribute Type column.
        """
        if attribute_type is None or attribute_type.table is None:
            return None, b''

        constructor = attribute_type.row
        if constructor is None:
            return None, b''

        if attribute_type.table.name == 'MemberRef':
            parent = constructor.Class
            if parent is None or parent.table is None or parent.table.name not in ('TypeDef', 'TypeRef'):
                return None, _blob(constructor.Signature)
            return self.type_name(TableIndex(parent.table.name, parent.row_index)), _blob(constructor.Signature)
        elif attribute_type.table.name == 'MethodDef':
            return self._method_owner_name(attribute_type.row_index), _blob(constructor.Signature)

        return None, b''

    def declared_attributes(self) -> List[DeclaredAttribute]:
        """
        Decoded custom attributes attached to the assembly definition. Attributes that cannot be decoded are skipped.
        """
        result = []
        decoder = CustomAttributeDecoder(self.enum_underlying_type)

        for attribute in _table_rows(self.metadata_tables, 'CustomAttribute'):
            parent = attribute.Parent
            if parent is None or parent.table is None or parent.table.name != 'Assembly':
                continue

            try:
                type_name, signature = self._attribute_constructor(attribute.Type)
            except IndexError as e:
                logger.info(f'custom attribute with invalid constructor reference - {e}')
                continue

            if type_name is None:
                continue

            try:
                parameter_types = parse_constructor_parameters(
                    signature, lambda index: self.type_name(index, assembly_qualified=True))
                value = decoder.decode(_blob(attribute.Value), parameter_types)
            except DotNetMetaError as e:
                logger.info(f'cannot decode custom attribute {type_name} - {e}')
                continue

            result.append(DeclaredAttribute(type_name, value))

        return result

    def target_framework_text(self) -> Optional[str]:
        """
        The framework name is the constructor argument of TargetFrameworkAttribute, the FrameworkDisplayName named
        argument is only a display text.
        """
        for attribute in self.declared_attributes():
            if attribute.type_name != TARGET_FRAMEWORK_ATTRIBUTE:
                continue

            arguments = attribute.value.fixed_arguments
            if arguments and isinstance(arguments[0], str):
                return arguments[0]

            return None

        return None

    def _dependency_image(self, assembly_name: str) -> Optional[dnfile.dnPE]:
        path = self.resolver.resolve(self.path, assembly_name)
        if path is None:
            return None

        path = os.path.abspath(path)
        if path == self.path:
            return self.pe

        if path not in self._dependency_images:
            try:
                self._dependency_images[path] = self._open_image(path)
            except NotAnAssemblyError as e:
                logger.debug(f'cannot open dependency {path} - {e}')
                self._dependency_images[path] = None

        return self._dependency_images[path]

    @staticmethod
    def _find_enum_underlying_type(pe: dnfile.dnPE, type_name: str) -> Optional[int]:
        metadata_tables = pe.net.mdtables

        for type_def in _table_rows(metadata_tables, 'TypeDef'):
            if _type_def_name(type_def) != type_name:
                continue

            for field_index in type_def.FieldList or ():
                field = field_index.row
                if field is None or _raw_flags(field) & FIELD_ATTRIBUTE_STATIC:
                    continue

                signature = _blob(field.Signature)
                if _text(field.Name) == ENUM_VALUE_FIELD_NAME and len(signature) >= 2 and \
                        signature[0] == FIELD_SIGNATURE:
                    element_type = signature[1]
                    if element_type in PRIMITIVE_ELEMENT_FORMATS:
                        return element_type

            return None

        return None

    def enum_underlying_type(self, enum_name: str) -> Optional[int]:
        """
        Underlying element type of the enum named enum_name (optionally assembly qualified): the own assembly is
        searched first, then the resolved defining assembly. Resolution failures give None.
        """
        with self._enum_lock:
            if enum_name not in self._enum_cache:
                self._enum_cache[enum_name] = self._resolve_enum_underlying_type(enum_name)

            return self._enum_cache[enum_name]

    def _resolve_enum_underlying_type(self, enum_name: str) -> Optional[int]:
        type_name, assembly_name = split_assembly_qualified_name(enum_name)

        try:
            result = self._find_enum_underlying_type(self.pe, type_name)

            if result is None and assembly_name:
                dependency = self._dependency_image(assembly_name)
                if dependency is not None:
                    result = self._find_enum_underlying_type(dependency, type_name)
        except (DotNetMetaError, OSError, AttributeError, IndexError, ValueError) as e:
            logger.debug(f'cannot resolve enum {enum_name} - {e}')
            result = None

        return result

    def close(self) -> None:
        for dependency in self._dependency_images.values():
            if dependency is not None:
                dependency.close()

        self._dependency_images.clear()
        self.pe.close()
