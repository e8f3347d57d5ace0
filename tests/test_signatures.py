import struct

import pytest
from dotnetmeta.constants import (ELEMENT_TYPE_STRING, ELEMENT_TYPE_I4, ELEMENT_TYPE_U1, ELEMENT_TYPE_I8,
                                  ELEMENT_TYPE_R8, ELEMENT_TYPE_CHAR, ELEMENT_TYPE_BOOLEAN, ELEMENT_TYPE_SZARRAY,
                                  ELEMENT_TYPE_ENUM, ELEMENT_TYPE_SYSTEM_TYPE, ELEMENT_TYPE_BOXED)
from dotnetmeta.errors import CustomAttributeFormatError
from dotnetmeta.signatures import (CustomAttributeDecoder, FieldOrPropType, NamedArgument, read_metadata_string,
                                   parse_constructor_parameters, split_assembly_qualified_name)
from dotnetmeta.tables import TableIndex

from pe_builder import ser_string, string_attribute_value

PROLOG = b'\x01\x00'
NO_NAMED_ARGUMENTS = b'\x00\x00'
STRING = FieldOrPropType(ELEMENT_TYPE_STRING)
I4 = FieldOrPropType(ELEMENT_TYPE_I4)

TYPE_NAMES = {
    TableIndex('TypeRef', 1): 'System.AttributeTargets',
    TableIndex('TypeRef', 2): 'System.Type',
    TableIndex('TypeRef', 3): 'System.Version',
    TableIndex('TypeDef', 2): 'Sample.Mode',
}

def resolve_type_name(index):
    return TYPE_NAMES.get(index)

def named_argument(kind, type_bytes, name, value_bytes):
    return bytes([kind]) + type_bytes + ser_string(name) + value_bytes

def test_read_metadata_string():
    assert read_metadata_string(string_attribute_value('.NETFramework,Version=v4.8')) == '.NETFramework,Version=v4.8'
    assert read_metadata_string(string_attribute_value('')) == ''
    assert read_metadata_string(PROLOG + b'\xff') is None

@pytest.mark.parametrize('blob', [b'', b'\x01', b'\x00\x01\x03abc', PROLOG, PROLOG + b'\x05abc',
                                  PROLOG + b'\x02\xc3\x28'])
def test_read_metadata_string_malformed(blob):
    with pytest.raises(CustomAttributeFormatError):
        read_metadata_string(blob)

def test_parse_string_constructor():
    assert parse_constructor_parameters(b'\x20\x01\x01\x0e', resolve_type_name) == [STRING]

def test_parse_constructor_parameters():
    # instance void .ctor(int32, string[], object, valuetype System.AttributeTargets, class System.Type)
    signature = b'\x20\x05\x01\x08\x1d\x0e\x1c\x11\x05\x12\x09'
    assert parse_constructor_parameters(signature, resolve_type_name) == [
        I4,
        FieldOrPropType(ELEMENT_TYPE_SZARRAY, element=STRING),
        FieldOrPropType(ELEMENT_TYPE_BOXED),
        FieldOrPropType(ELEMENT_TYPE_ENUM, type_name='System.AttributeTargets'),
        FieldOrPropType(ELEMENT_TYPE_SYSTEM_TYPE),
    ]

def test_parse_constructor_with_custom_modifier():
    assert parse_constructor_parameters(b'\x20\x01\x01\x1f\x05\x0e', resolve_type_name) == [STRING]

def test_parse_constructor_without_parameters():
    assert parse_constructor_parameters(b'\x20\x00\x01', resolve_type_name) == []

@pytest.mark.parametrize('signature', [
    b'\x20\x01\x08\x0e',       # returns int32
    b'\x20\x01\x01\x11\x19',   # unknown value type
    b'\x20\x01\x01\x12\x0d',   # class other than System.Type
    b'\x20\x01\x01\x13\x00',   # generic type parameter
    b'\x20\x02\x01\x0e',       # truncated
    b'',
])
def test_parse_constructor_invalid(signature):
    with pytest.raises(CustomAttributeFormatError):
        parse_constructor_parameters(signature, resolve_type_name)

def test_split_assembly_qualified_name():
    assert split_assembly_qualified_name('Sample.Mode') == ('Sample.Mode', None)
    assert split_assembly_qualified_name('Sample.Mode, Sample.Lib, Version=1.0.0.0') == \
        ('Sample.Mode', 'Sample.Lib, Version=1.0.0.0')
    assert split_assembly_qualified_name('Sample.Mode, ') == ('Sample.Mode', None)

def test_decode_fixed_arguments():
    blob = PROLOG + struct.pack('<i', -5) + ser_string('text') + NO_NAMED_ARGUMENTS
    value = CustomAttributeDecoder().decode(blob, [I4, STRING])
    assert value.fixed_arguments == [-5, 'text']
    assert value.named_arguments == []

def test_decode_primitives():
    types = [FieldOrPropType(element_type) for element_type in (ELEMENT_TYPE_BOOLEAN, ELEMENT_TYPE_CHAR,
                                                                 ELEMENT_TYPE_U1, ELEMENT_TYPE_I8, ELEMENT_TYPE_R8)]
    blob = PROLOG + b'\x01' + b'A\x00' + b'\xff' + struct.pack('<q', -2) + struct.pack('<d', 1.5) + \
        NO_NAMED_ARGUMENTS
    assert CustomAttributeDecoder().decode(blob, types).fixed_arguments == [True, 'A', 255, -2, 1.5]

def test_decode_named_arguments():
    blob = PROLOG + ser_string('.NETFramework,Version=v4.8') + b'\x02\x00'
    blob += named_argument(0x54, b'\x0e', 'FrameworkDisplayName', ser_string('.NET Framework 4.8'))
    blob += named_argument(0x53, b'\x02', 'Enabled', b'\x01')
    value = CustomAttributeDecoder().decode(blob, [STRING])
    assert value.fixed_arguments == ['.NETFramework,Version=v4.8']
    assert value.named_arguments == [NamedArgument(False, 'FrameworkDisplayName', '.NET Framework 4.8'),
                                     NamedArgument(True, 'Enabled', True)]
    assert value.get_named_argument('FrameworkDisplayName') == '.NET Framework 4.8'
    assert value.get_named_argument('Missing', 'default') == 'default'

def test_decode_without_named_argument_count():
    value = CustomAttributeDecoder().decode(PROLOG + ser_string('x'), [STRING])
    assert value.fixed_arguments == ['x']
    assert value.named_arguments == []

def test_decode_enum_with_resolver():
    requested = []

    def resolve(enum_name):
        requested.append(enum_name)
        return ELEMENT_TYPE_U1

    blob = PROLOG + b'\x01\x00'
    blob += named_argument(0x54, b'\x55' + ser_string('Sample.Mode, Sample.Lib'), 'Mode', b'\x07')
    value = CustomAttributeDecoder(resolve).decode(blob, [])
    assert value.get_named_argument('Mode') == 7
    assert requested == ['Sample.Mode, Sample.Lib']

def test_decode_unresolved_enum_reads_four_bytes():
    enum_type = FieldOrPropType(ELEMENT_TYPE_ENUM, type_name='Sample.Mode')
    blob = PROLOG + struct.pack('<i', 3) + ser_string('after') + NO_NAMED_ARGUMENTS
    value = CustomAttributeDecoder(lambda enum_name: None).decode(blob, [enum_type, STRING])
    assert value.fixed_arguments == [3, 'after']

def test_decode_known_enum_without_resolver():
    def resolve(enum_name):
        raise AssertionError('known enums are not resolved')

    enum_type = FieldOrPropType(ELEMENT_TYPE_ENUM, type_name='System.AttributeTargets')
    blob = PROLOG + struct.pack('<i', 0x7FFF) + NO_NAMED_ARGUMENTS
    assert CustomAttributeDecoder(resolve).decode(blob, [enum_type]).fixed_arguments == [0x7FFF]

def test_decode_arrays():
    array_type = FieldOrPropType(ELEMENT_TYPE_SZARRAY, element=I4)
    blob = PROLOG + struct.pack('<Iii', 2, 10, 20) + b'\xff\xff\xff\xff' + NO_NAMED_ARGUMENTS
    assert CustomAttributeDecoder().decode(blob, [array_type, array_type]).fixed_arguments == [[10, 20], None]

def test_decode_boxed_and_type_arguments():
    blob = PROLOG + b'\x08' + struct.pack('<i', 42) + ser_string('System.String') + b'\x01\x00'
    blob += named_argument(0x54, b'\x51', 'Tag', b'\x0e' + ser_string('boxed'))
    value = CustomAttributeDecoder().decode(blob, [FieldOrPropType(ELEMENT_TYPE_BOXED),
                                                   FieldOrPropType(ELEMENT_TYPE_SYSTEM_TYPE)])
    assert value.fixed_arguments == [42, 'System.String']
    assert value.get_named_argument('Tag') == 'boxed'

@pytest.mark.parametrize('blob, types', [
    (b'\x02\x00' + NO_NAMED_ARGUMENTS, []),
    (PROLOG + b'\x01\x00', [I4]),
    (PROLOG + b'\x01\x00' + b'\x60\x0e' + ser_string('Name') + ser_string('value'), []),
    (PROLOG + b'\x01\x00' + b'\x54\x0e', []),
    (PROLOG + struct.pack('<I', 1000) + NO_NAMED_ARGUMENTS, [FieldOrPropType(ELEMENT_TYPE_SZARRAY, element=I4)]),
])
def test_decode_malformed(blob, types):
    with pytest.raises(CustomAttributeFormatError):
        CustomAttributeDecoder().decode(blob, types)
