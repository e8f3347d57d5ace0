"""
Part of dotnetmeta

Decoding of custom attribute value blobs (ECMA-335 II.23.3) and of the constructor signatures (II.23.2.1) that describe
their fixed arguments.

A value blob starts with the prolog 0x0001, followed by one value per constructor parameter, a 16 bit count of named
arguments and the named arguments themselves. Enum values are stored in the size of their underlying type, which is
only recorded in the assembly defining the enum, so the decoder asks an enum resolver for it.
"""

from typing import Any, Callable, List, NamedTuple, Optional, Tuple

from .constants import (CUSTOM_ATTRIBUTE_PROLOG, SER_STRING_NULL, NAMED_ARGUMENT_FIELD, NAMED_ARGUMENT_PROPERTY,
                        PRIMITIVE_ELEMENT_FORMATS, KNOWN_ENUM_UNDERLYING_TYPES, SIGNATURE_GENERIC, ELEMENT_TYPE_VOID,
                        ELEMENT_TYPE_CHAR, ELEMENT_TYPE_I4, ELEMENT_TYPE_STRING,
                        ELEMENT_TYPE_VALUETYPE, ELEMENT_TYPE_CLASS, ELEMENT_TYPE_OBJECT, ELEMENT_TYPE_SZARRAY,
                        ELEMENT_TYPE_CMOD_REQD, ELEMENT_TYPE_CMOD_OPT, ELEMENT_TYPE_SYSTEM_TYPE, ELEMENT_TYPE_BOXED,
                        ELEMENT_TYPE_ENUM)
from .cursor import ByteCursor
from .errors import OutOfRangeError, CustomAttributeFormatError
from .logger import get_logger
from .tables import TableIndex

logger = get_logger('signatures')

SYSTEM_TYPE_NAME = 'System.Type'
NULL_ARRAY_LENGTH = 0xFFFFFFFF

TYPE_DEF_OR_REF_TAGS = ('TypeDef', 'TypeRef', 'TypeSpec')

EnumResolver = Callable[[str], Optional[int]]
TypeNameResolver = Callable[[TableIndex], Optional[str]]


class FieldOrPropType(NamedTuple):
    """
    Type of one attribute argument. type_name is set for enums, element for single dimensional arrays.
    """
    element_type: int
    type_name: Optional[str] = None
    element: Optional['FieldOrPropType'] = None


class NamedArgument(NamedTuple):
    is_field: bool
    name: str
    value: Any


class CustomAttributeValue(NamedTuple):
    fixed_arguments: List[Any]
    named_arguments: List[NamedArgument]

    def get_named_argument(self, name: str, default: Any = None) -> Any:
        for argument in self.named_arguments:
            if argument.name == name:
                return argument.value

        return default


def read_ser_string(cursor: ByteCursor) -> Optional[str]:
    start = cursor.position
    if cursor.read_u8() == SER_STRING_NULL:
        return None

    cursor.seek(start)
    length = cursor.read_compressed_uint()

    try:
        return cursor.read_bytes(length).decode('utf-8')
    except UnicodeDecodeError as e:
        raise CustomAttributeFormatError(f'string at 0x{start:x} is not UTF-8 - {e}')


def _read_prolog(cursor: ByteCursor) -> None:
    prolog = cursor.read_u16()
    if prolog != CUSTOM_ATTRIBUTE_PROLOG:
        raise CustomAttributeFormatError(f'invalid custom attribute prolog 0x{prolog:04x}')


def read_metadata_string(blob: bytes) -> Optional[str]:
    """
    Read the single string argument of an attribute value blob, e.g. the framework name of a
    TargetFrameworkAttribute. A null string gives None.
    """
    cursor = ByteCursor(blob)

    try:
        _read_prolog(cursor)
        return read_ser_string(cursor)
    except OutOfRangeError as e:
        raise CustomAttributeFormatError(f'truncated custom attribute value - {e}') from e


def _read_type_def_or_ref(cursor: ByteCursor) -> TableIndex:
    coded = cursor.read_compressed_uint()
    tag = coded & 0x03
    if tag >= len(TYPE_DEF_OR_REF_TAGS):
        raise CustomAttributeFormatError(f'invalid TypeDefOrRef tag {tag}')

    return TableIndex(TYPE_DEF_OR_REF_TAGS[tag], coded >> 2)


def _skip_custom_modifiers(cursor: ByteCursor) -> int:
    """
    Skip leading custom modifiers and return the next element type.
    """
    element_type = cursor.read_u8()
    while element_type in (ELEMENT_TYPE_CMOD_REQD, ELEMENT_TYPE_CMOD_OPT):
        _read_type_def_or_ref(cursor)
        element_type = cursor.read_u8()

    return element_type


def _read_parameter_type(cursor: ByteCursor, type_name_resolver: TypeNameResolver) -> FieldOrPropType:
    element_type = _skip_custom_modifiers(cursor)

    if element_type in PRIMITIVE_ELEMENT_FORMATS or element_type == ELEMENT_TYPE_STRING:
        return FieldOrPropType(element_type)
    elif element_type == ELEMENT_TYPE_OBJECT:
        return FieldOrPropType(ELEMENT_TYPE_BOXED)
    elif element_type == ELEMENT_TYPE_SZARRAY:
        return FieldOrPropType(ELEMENT_TYPE_SZARRAY, element=_read_parameter_type(cursor, type_name_resolver))
    elif element_type in (ELEMENT_TYPE_VALUETYPE, ELEMENT_TYPE_CLASS):
        type_index = _read_type_def_or_ref(cursor)
        type_name = type_name_resolver(type_index)
        if type_name is None:
            raise CustomAttributeFormatError(f'cannot resolve parameter type {type_index}')

        if element_type == ELEMENT_TYPE_VALUETYPE:
            return FieldOrPropType(ELEMENT_TYPE_ENUM, type_name=type_name)
        elif type_name == SYSTEM_TYPE_NAME:
            return FieldOrPropType(ELEMENT_TYPE_SYSTEM_TYPE)

        raise CustomAttributeFormatError(f'class type {type_name} is not a valid attribute parameter')

    raise CustomAttributeFormatError(f'element type 0x{element_type:02x} is not a valid attribute parameter')


def parse_constructor_parameters(signature: bytes, type_name_resolver: TypeNameResolver) -> List[FieldOrPropType]:
    """
    Parameter types of an attribute constructor signature. type_name_resolver turns TypeDef/TypeRef indexes into
    namespace qualified type names.
    """
    cursor = ByteCursor(signature)

    try:
        calling_convention = cursor.read_u8()
        if calling_convention & SIGNATURE_GENERIC:
            # Number of generic parameters
            cursor.read_compressed_uint()

        parameter_count = cursor.read_compressed_uint()

        return_type = _skip_custom_modifiers(cursor)
        if return_type != ELEMENT_TYPE_VOID:
            raise CustomAttributeFormatError(f'constructor with return type 0x{return_type:02x}')

        return [_read_parameter_type(cursor, type_name_resolver) for _ in range(parameter_count)]
    except OutOfRangeError as e:
        raise CustomAttributeFormatError(f'truncated method signature - {e}') from e


def split_assembly_qualified_name(name: str) -> Tuple[str, Optional[str]]:
    """
    "Namespace.Type, Assembly, Version=..." -> ("Namespace.Type", "Assembly, Version=..."), the assembly part is
    None for names without one.
    """
    type_name, separator, assembly_name = name.partition(',')
    if not separator:
        return name.strip(), None

    return type_name.strip(), assembly_name.strip() or None


class CustomAttributeDecoder:
    def __init__(self, enum_resolver: Optional[EnumResolver] = None):
        self.enum_resolver = enum_resolver

    def enum_underlying_type(self, enum_name: Optional[str]) -> int:
        """
        Underlying element type of an enum. Unresolvable enums are read as 4 byte integers, the most common case.
        """
        if enum_name:
            type_name, _ = split_assembly_qualified_name(enum_name)
            if type_name in KNOWN_ENUM_UNDERLYING_TYPES:
                return KNOWN_ENUM_UNDERLYING_TYPES[type_name]

            if self.enum_resolver is not None:
                underlying_type = self.enum_resolver(enum_name)
                if underlying_type in PRIMITIVE_ELEMENT_FORMATS:
                    return underlying_type

        logger.debug(f'underlying type of enum {enum_name} unknown, reading as I4')

        return ELEMENT_TYPE_I4

    def decode(self, blob: bytes, parameter_types: List[FieldOrPropType]) -> CustomAttributeValue:
        cursor = ByteCursor(blob)

        try:
            _read_prolog(cursor)

            fixed_arguments = [self._read_value(cursor, parameter_type) for parameter_type in parameter_types]

            named_arguments = []
            # Blobs written by old compilers may end without the named argument count
            named_count = cursor.read_u16() if cursor.remaining else 0

            for _ in range(named_count):
                named_arguments.append(self._read_named_argument(cursor))
        except OutOfRangeError as e:
            raise CustomAttributeFormatError(f'truncated custom attribute value - {e}') from e

        return CustomAttributeValue(fixed_arguments, named_arguments)

    def _read_field_or_prop_type(self, cursor: ByteCursor) -> FieldOrPropType:
        element_type = cursor.read_u8()

        if element_type == ELEMENT_TYPE_SZARRAY:
            return FieldOrPropType(element_type, element=self._read_field_or_prop_type(cursor))
        elif element_type == ELEMENT_TYPE_ENUM:
            return FieldOrPropType(element_type, type_name=read_ser_string(cursor))
        elif element_type in PRIMITIVE_ELEMENT_FORMATS or element_type in (ELEMENT_TYPE_STRING,
                                                                          ELEMENT_TYPE_SYSTEM_TYPE,
                                                                          ELEMENT_TYPE_BOXED):
            return FieldOrPropType(element_type)

        raise CustomAttributeFormatError(f'invalid named argument type 0x{element_type:02x}')

    def _read_named_argument(self, cursor: ByteCursor) -> NamedArgument:
        kind = cursor.read_u8()
        if kind not in (NAMED_ARGUMENT_FIELD, NAMED_ARGUMENT_PROPERTY):
            raise CustomAttributeFormatError(f'invalid named argument kind 0x{kind:02x}')

        argument_type = self._read_field_or_prop_type(cursor)
        name = read_ser_string(cursor)
        if name is None:
            raise CustomAttributeFormatError('named argument without name')

        return NamedArgument(kind == NAMED_ARGUMENT_FIELD, name, self._read_value(cursor, argument_type))

    @staticmethod
    def _read_primitive(cursor: ByteCursor, element_type: int):
        fmt, size = PRIMITIVE_ELEMENT_FORMATS[element_type]
        value = cursor.read_format(fmt, size)

        if element_type == ELEMENT_TYPE_CHAR:
            return chr(value)

        return value

    def _read_value(self, cursor: ByteCursor, value_type: FieldOrPropType) -> Any:
        element_type = value_type.element_type

        if element_type in PRIMITIVE_ELEMENT_FORMATS:
            return self._read_primitive(cursor, element_type)
        elif element_type in (ELEMENT_TYPE_STRING, ELEMENT_TYPE_SYSTEM_TYPE):
            return read_ser_string(cursor)
        elif element_type == ELEMENT_TYPE_ENUM:
            return self._read_primitive(cursor, self.enum_underlying_type(value_type.type_name))
        elif element_type == ELEMENT_TYPE_BOXED:
            return self._read_value(cursor, self._read_field_or_prop_type(cursor))
        elif element_type == ELEMENT_TYPE_SZARRAY:
            count = cursor.read_u32()
            if count == NULL_ARRAY_LENGTH:
                return None
            # Every element takes at least one byte
            if count > cursor.remaining:
                raise CustomAttributeFormatError(f'array of {count} elements exceeds the value blob')

            return [self._read_value(cursor, value_type.element) for _ in range(count)]

        raise CustomAttributeFormatError(f'cannot read value of element type 0x{element_type:02x}')

