'''
Part of dotnetmeta

Fixed offsets, signatures and the metadata table schema (ECMA-335, partitions II.22 - II.25).
'''

# flake8: noqa

from typing import Dict, List, Optional, Tuple


# Image front matter and header chain (ECMA-335 II.25)
PE_HEADER_POINTER_OFFSET = 0x3C
PE_SIGNATURE = b'PE\x00\x00'
PE_FILE_HEADER_SIZE = 20
PE_NUMBER_OF_SECTIONS_OFFSET = 2
OPTIONAL_HEADER_SIZE_PE32 = 224
OPTIONAL_HEADER_SIZE_PE32_PLUS = 240
SECTION_HEADER_SIZE = 40
MAX_NUMBER_OF_SECTIONS = 96

OPTIONAL_HEADER_MAGIC_PE32 = 0x10B
OPTIONAL_HEADER_MAGIC_PE32_PLUS = 0x20B

# Offset of the CLI header data directory RVA inside the optional header, per variant
CLI_HEADER_RVA_OFFSETS = {
    OPTIONAL_HEADER_MAGIC_PE32:         208,
    OPTIONAL_HEADER_MAGIC_PE32_PLUS:    224
}

OPTIONAL_HEADER_SIZES = {
    OPTIONAL_HEADER_MAGIC_PE32:         OPTIONAL_HEADER_SIZE_PE32,
    OPTIONAL_HEADER_MAGIC_PE32_PLUS:    OPTIONAL_HEADER_SIZE_PE32_PLUS
}

# Section header fields
SECTION_VIRTUAL_SIZE_OFFSET = 8
SECTION_VIRTUAL_ADDRESS_OFFSET = 12
SECTION_RAW_DATA_POINTER_OFFSET = 20

# Smallest file that can hold DOS header pointer, PE signature, file header, PE32 optional header and
# one section header
MIN_IMAGE_SIZE = PE_HEADER_POINTER_OFFSET + 4 + PE_FILE_HEADER_SIZE + OPTIONAL_HEADER_SIZE_PE32 + SECTION_HEADER_SIZE

# CLI header (II.25.3.3)
CLI_HEADER_METADATA_RVA_OFFSET = 8
CLI_HEADER_SIZE = 72

# Metadata root (II.24.2.1)
METADATA_ROOT_SIGNATURE = b'BSJB'
METADATA_ROOT_SIGNATURE_VALUE = 0x424A5342
METADATA_VERSION_LENGTH_OFFSET = 12
MAX_METADATA_VERSION_LENGTH = 255

# Runtime version markers of Windows metadata files
WINDOWS_RUNTIME_MARKER = 'WindowsRuntime'
MANAGED_WINMD_MARKER = 'CLR'

# Enumeration page size used when walking the reference and file tables
ENUM_PAGE_SIZE = 16

TARGET_FRAMEWORK_ATTRIBUTE = 'System.Runtime.Versioning.TargetFrameworkAttribute'

# Metadata tokens (II.22): the table number is kept in the top byte
TOKEN_TABLE_SHIFT = 24
TOKEN_ROW_MASK = 0x00FFFFFF

# Heap size flags of the "#~" stream header (II.24.2.6)
HEAP_STRINGS_LARGE = 0x01
HEAP_GUID_LARGE = 0x02
HEAP_BLOB_LARGE = 0x04
HEAP_EXTRA_DATA = 0x40

TABLES_STREAM_NAMES = ('#~', '#-')
STRINGS_STREAM_NAME = '#Strings'
BLOB_STREAM_NAME = '#Blob'
GUID_STREAM_NAME = '#GUID'
USER_STRINGS_STREAM_NAME = '#US'

# Coded index targets, the tag size follows from the number of entries (II.24.2.6)
CODED_INDEX_TABLES: Dict[str, List[Optional[str]]] = {
    'TypeDefOrRef':         ['TypeDef', 'TypeRef', 'TypeSpec'],
    'HasConstant':          ['Field', 'Param', 'Property'],
    'HasCustomAttribute':   ['MethodDef', 'Field', 'TypeRef', 'TypeDef', 'Param', 'InterfaceImpl', 'MemberRef',
                             'Module', 'DeclSecurity', 'Property', 'Event', 'StandAloneSig', 'ModuleRef', 'TypeSpec',
                             'Assembly', 'AssemblyRef', 'File', 'ExportedType', 'ManifestResource', 'GenericParam',
                             'GenericParamConstraint', 'MethodSpec'],
    'HasFieldMarshal':      ['Field', 'Param'],
    'HasDeclSecurity':      ['TypeDef', 'MethodDef', 'Assembly'],
    'MemberRefParent':      ['TypeDef', 'TypeRef', 'ModuleRef', 'MethodDef', 'TypeSpec'],
    'HasSemantics':         ['Event', 'Property'],
    'MethodDefOrRef':       ['MethodDef', 'MemberRef'],
    'MemberForwarded':      ['Field', 'MethodDef'],
    'Implementation':       ['File', 'AssemblyRef', 'ExportedType'],
    'CustomAttributeType':  [None, None, 'MethodDef', 'MemberRef', None],
    'ResolutionScope':      ['Module', 'ModuleRef', 'AssemblyRef', 'TypeRef'],
    'TypeOrMethodDef':      ['TypeDef', 'MethodDef']
}

# Column kinds: 'u16', 'u32', 'string', 'guid', 'blob', ('index', <table>), ('coded', <coded index>)
Column = Tuple[str, object]

METADATA_TABLE_SCHEMA: Dict[int, Tuple[str, List[Column]]] = {
    0x00: ('Module', [('Generation', 'u16'), ('Name', 'string'), ('Mvid', 'guid'), ('EncId', 'guid'),
                      ('EncBaseId', 'guid')]),
    0x01: ('TypeRef', [('ResolutionScope', ('coded', 'ResolutionScope')), ('TypeName', 'string'),
                       ('TypeNamespace', 'string')]),
    0x02: ('TypeDef', [('Flags', 'u32'), ('TypeName', 'string'), ('TypeNamespace', 'string'),
                       ('Extends', ('coded', 'TypeDefOrRef')), ('FieldList', ('index', 'Field')),
                       ('MethodList', ('index', 'MethodDef'))]),
    0x03: ('FieldPtr', [('Field', ('index', 'Field'))]),
    0x04: ('Field', [('Flags', 'u16'), ('Name', 'string'), ('Signature', 'blob')]),
    0x05: ('MethodPtr', [('Method', ('index', 'MethodDef'))]),
    0x06: ('MethodDef', [('RVA', 'u32'), ('ImplFlags', 'u16'), ('Flags', 'u16'), ('Name', 'string'),
                         ('Signature', 'blob'), ('ParamList', ('index', 'Param'))]),
    0x07: ('ParamPtr', [('Param', ('index', 'Param'))]),
    0x08: ('Param', [('Flags', 'u16'), ('Sequence', 'u16'), ('Name', 'string')]),
    0x09: ('InterfaceImpl', [('Class', ('index', 'TypeDef')), ('Interface', ('coded', 'TypeDefOrRef'))]),
    0x0A: ('MemberRef', [('Class', ('coded', 'MemberRefParent')), ('Name', 'string'), ('Signature', 'blob')]),
    # Type is a single byte followed by a padding byte
    0x0B: ('Constant', [('Type', 'u16'), ('Parent', ('coded', 'HasConstant')), ('Value', 'blob')]),
    0x0C: ('CustomAttribute', [('Parent', ('coded', 'HasCustomAttribute')),
                               ('Type', ('coded', 'CustomAttributeType')), ('Value', 'blob')]),
    0x0D: ('FieldMarshal', [('Parent', ('coded', 'HasFieldMarshal')), ('NativeType', 'blob')]),
    0x0E: ('DeclSecurity', [('Action', 'u16'), ('Parent', ('coded', 'HasDeclSecurity')),
                            ('PermissionSet', 'blob')]),
    0x0F: ('ClassLayout', [('PackingSize', 'u16'), ('ClassSize', 'u32'), ('Parent', ('index', 'TypeDef'))]),
    0x10: ('FieldLayout', [('Offset', 'u32'), ('Field', ('index', 'Field'))]),
    0x11: ('StandAloneSig', [('Signature', 'blob')]),
    0x12: ('EventMap', [('Parent', ('index', 'TypeDef')), ('EventList', ('index', 'Event'))]),
    0x13: ('EventPtr', [('Event', ('index', 'Event'))]),
    0x14: ('Event', [('EventFlags', 'u16'), ('Name', 'string'), ('EventType', ('coded', 'TypeDefOrRef'))]),
    0x15: ('PropertyMap', [('Parent', ('index', 'TypeDef')), ('PropertyList', ('index', 'Property'))]),
    0x16: ('PropertyPtr', [('Property', ('index', 'Property'))]),
    0x17: ('Property', [('Flags', 'u16'), ('Name', 'string'), ('Type', 'blob')]),
    0x18: ('MethodSemantics', [('Semantics', 'u16'), ('Method', ('index', 'MethodDef')),
                               ('Association', ('coded', 'HasSemantics'))]),
    0x19: ('MethodImpl', [('Class', ('index', 'TypeDef')), ('MethodBody', ('coded', 'MethodDefOrRef')),
                          ('MethodDeclaration', ('coded', 'MethodDefOrRef'))]),
    0x1A: ('ModuleRef', [('Name', 'string')]),
    0x1B: ('TypeSpec', [('Signature', 'blob')]),
    0x1C: ('ImplMap', [('MappingFlags', 'u16'), ('MemberForwarded', ('coded', 'MemberForwarded')),
                       ('ImportName', 'string'), ('ImportScope', ('index', 'ModuleRef'))]),
    0x1D: ('FieldRVA', [('RVA', 'u32'), ('Field', ('index', 'Field'))]),
    0x1E: ('EncLog', [('Token', 'u32'), ('FuncCode', 'u32')]),
    0x1F: ('EncMap', [('Token', 'u32')]),
    0x20: ('Assembly', [('HashAlgId', 'u32'), ('MajorVersion', 'u16'), ('MinorVersion', 'u16'),
                        ('BuildNumber', 'u16'), ('RevisionNumber', 'u16'), ('Flags', 'u32'),
                        ('PublicKey', 'blob'), ('Name', 'string'), ('Culture', 'string')]),
    0x21: ('AssemblyProcessor', [('Processor', 'u32')]),
    0x22: ('AssemblyOS', [('OSPlatformID', 'u32'), ('OSMajorVersion', 'u32'), ('OSMinorVersion', 'u32')]),
    0x23: ('AssemblyRef', [('MajorVersion', 'u16'), ('MinorVersion', 'u16'), ('BuildNumber', 'u16'),
                           ('RevisionNumber', 'u16'), ('Flags', 'u32'), ('PublicKeyOrToken', 'blob'),
                           ('Name', 'string'), ('Culture', 'string'), ('HashValue', 'blob')]),
    0x24: ('AssemblyRefProcessor', [('Processor', 'u32'), ('AssemblyRef', ('index', 'AssemblyRef'))]),
    0x25: ('AssemblyRefOS', [('OSPlatformID', 'u32'), ('OSMajorVersion', 'u32'), ('OSMinorVersion', 'u32'),
                             ('AssemblyRef', ('index', 'AssemblyRef'))]),
    0x26: ('File', [('Flags', 'u32'), ('Name', 'string'), ('HashValue', 'blob')]),
    0x27: ('ExportedType', [('Flags', 'u32'), ('TypeDefId', 'u32'), ('TypeName', 'string'),
                            ('TypeNamespace', 'string'), ('Implementation', ('coded', 'Implementation'))]),
    0x28: ('ManifestResource', [('Offset', 'u32'), ('Flags', 'u32'), ('Name', 'string'),
                                ('Implementation', ('coded', 'Implementation'))]),
    0x29: ('NestedClass', [('NestedClass', ('index', 'TypeDef')), ('EnclosingClass', ('index', 'TypeDef'))]),
    0x2A: ('GenericParam', [('Number', 'u16'), ('Flags', 'u16'), ('Owner', ('coded', 'TypeOrMethodDef')),
                            ('Name', 'string')]),
    0x2B: ('MethodSpec', [('Method', ('coded', 'MethodDefOrRef')), ('Instantiation', 'blob')]),
    0x2C: ('GenericParamConstraint', [('Owner', ('index', 'GenericParam')),
                                      ('Constraint', ('coded', 'TypeDefOrRef'))]),
}

METADATA_TABLE_IDS: Dict[str, int] = {name: table_id for table_id, (name, _) in METADATA_TABLE_SCHEMA.items()}

# Custom attribute blobs (II.23.3)
CUSTOM_ATTRIBUTE_PROLOG = 0x0001
SER_STRING_NULL = 0xFF
NAMED_ARGUMENT_FIELD = 0x53
NAMED_ARGUMENT_PROPERTY = 0x54

# Element types (II.23.1.16) used in attribute signatures and values
ELEMENT_TYPE_VOID = 0x01
ELEMENT_TYPE_BOOLEAN = 0x02
ELEMENT_TYPE_CHAR = 0x03
ELEMENT_TYPE_I1 = 0x04
ELEMENT_TYPE_U1 = 0x05
ELEMENT_TYPE_I2 = 0x06
ELEMENT_TYPE_U2 = 0x07
ELEMENT_TYPE_I4 = 0x08
ELEMENT_TYPE_U4 = 0x09
ELEMENT_TYPE_I8 = 0x0A
ELEMENT_TYPE_U8 = 0x0B
ELEMENT_TYPE_R4 = 0x0C
ELEMENT_TYPE_R8 = 0x0D
ELEMENT_TYPE_STRING = 0x0E
ELEMENT_TYPE_VALUETYPE = 0x11
ELEMENT_TYPE_CLASS = 0x12
ELEMENT_TYPE_SZARRAY = 0x1D
ELEMENT_TYPE_OBJECT = 0x1C
ELEMENT_TYPE_CMOD_REQD = 0x1F
ELEMENT_TYPE_CMOD_OPT = 0x20
ELEMENT_TYPE_SYSTEM_TYPE = 0x50
ELEMENT_TYPE_BOXED = 0x51
ELEMENT_TYPE_ENUM = 0x55

# struct format and size of the fixed size primitive element types
PRIMITIVE_ELEMENT_FORMATS: Dict[int, Tuple[str, int]] = {
    ELEMENT_TYPE_BOOLEAN:   ('<?', 1),
    ELEMENT_TYPE_CHAR:      ('<H', 2),
    ELEMENT_TYPE_I1:        ('<b', 1),
    ELEMENT_TYPE_U1:        ('<B', 1),
    ELEMENT_TYPE_I2:        ('<h', 2),
    ELEMENT_TYPE_U2:        ('<H', 2),
    ELEMENT_TYPE_I4:        ('<i', 4),
    ELEMENT_TYPE_U4:        ('<I', 4),
    ELEMENT_TYPE_I8:        ('<q', 8),
    ELEMENT_TYPE_U8:        ('<Q', 8),
    ELEMENT_TYPE_R4:        ('<f', 4),
    ELEMENT_TYPE_R8:        ('<d', 8),
}

# Calling convention flags of method signatures (II.23.2.1)
SIGNATURE_GENERIC = 0x10

# Enum types the attribute decoder knows without resolving their assembly
KNOWN_ENUM_UNDERLYING_TYPES: Dict[str, int] = {
    'System.AttributeTargets': ELEMENT_TYPE_I4,
    'System.Reflection.AssemblyNameFlags': ELEMENT_TYPE_I4,
    'System.Runtime.InteropServices.ComInterfaceType': ELEMENT_TYPE_I4,
    'System.Diagnostics.DebuggableAttribute+DebuggingModes': ELEMENT_TYPE_I4,
}

# Extensions probed when resolving a referenced assembly by name
ASSEMBLY_FILE_EXTENSIONS = ('.dll', '.exe', '.winmd')
