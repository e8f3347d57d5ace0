"""
Part of dotnetmeta

Identity values produced from the metadata tables: referenced assemblies, scatter files and the target framework.

References:
    CLI specification (ECMA-335 standard), II.22.5 (AssemblyRef), II.22.19 (File), II.23.1.2 (AssemblyFlags)
    https://learn.microsoft.com/en-us/dotnet/api/system.runtime.versioning.frameworkname
"""

from dataclasses import dataclass
from enum import IntFlag
from typing import NamedTuple, Optional

from .util import public_key_token_from_key, is_dotted_version

NEUTRAL_CULTURE = 'neutral'
MAX_VERSION_COMPONENT = 0xFFFF


class AssemblyFlags(IntFlag):
    """
    Sources:
    https://www.ecma-international.org/publications-and-standards/standards/ecma-335/
    https://learn.microsoft.com/en-us/dotnet/api/system.reflection.assemblynameflags
    """
    NONE = 0x0000
    PUBLIC_KEY = 0x0001
    RETARGETABLE = 0x0100
    WINDOWS_RUNTIME = 0x0200
    DISABLE_JIT_COMPILE_OPTIMIZER = 0x4000
    ENABLE_JIT_COMPILE_TRACKING = 0x8000


class AssemblyVersion(NamedTuple):
    major: int
    minor: int
    build: int
    revision: int

    def __str__(self):
        return f'{self.major}.{self.minor}.{self.build}.{self.revision}'


@dataclass(frozen=True)
class AssemblyReference:
    name: str
    version: AssemblyVersion
    culture: str = NEUTRAL_CULTURE
    public_key: Optional[bytes] = None
    public_key_token: Optional[bytes] = None
    flags: int = AssemblyFlags.NONE

    def __post_init__(self):
        if self.public_key is not None and self.public_key_token is not None:
            raise ValueError('an assembly reference carries either a public key or a token, not both')

    @property
    def has_full_public_key(self) -> bool:
        return bool(self.flags & AssemblyFlags.PUBLIC_KEY)

    @property
    def is_retargetable(self) -> bool:
        return bool(self.flags & AssemblyFlags.RETARGETABLE)

    def get_public_key_token(self) -> Optional[bytes]:
        """
        Token of the reference, computed from the full key if only that is stored.
        """
        if self.public_key_token is not None:
            return self.public_key_token

        if self.public_key is not None:
            return public_key_token_from_key(self.public_key)

        return None

    @property
    def full_name(self) -> str:
        token = self.get_public_key_token()
        token_text = token.hex() if token else 'null'
        result = f'{self.name}, Version={self.version}, Culture={self.culture}, PublicKeyToken={token_text}'

        if self.is_retargetable:
            result += ', Retargetable=Yes'

        return result

    def __str__(self):
        return self.full_name


@dataclass(frozen=True)
class FileReference:
    name: str

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class FrameworkName:
    """
    Target framework identifier as recorded by TargetFrameworkAttribute, e.g. ".NETFramework,Version=v4.7.2".
    """
    identifier: str
    version: str
    profile: str = ''

    @classmethod
    def parse(cls, text: str) -> 'FrameworkName':
        if not text or not text.strip():
            raise ValueError('empty framework name')

        components = text.split(',')
        identifier = components[0].strip()
        if not identifier:
            raise ValueError(f'framework name without identifier: {text!r}')

        version = None
        profile = ''

        for component in components[1:]:
            key, separator, value = component.partition('=')
            if not separator:
                raise ValueError(f'framework name component without value: {component!r}')

            key = key.strip().lower()
            value = value.strip()

            if key == 'version':
                if value[:1] in ('v', 'V'):
                    value = value[1:]
                if not is_dotted_version(value):
                    raise ValueError(f'invalid framework version: {value!r}')
                version = value
            elif key == 'profile':
                profile = value
            else:
                raise ValueError(f'unknown framework name component: {key!r}')

        if version is None:
            raise ValueError(f'framework name without version: {text!r}')

        return cls(identifier, version, profile)

    @property
    def full_name(self) -> str:
        result = f'{self.identifier},Version=v{self.version}'

        if self.profile:
            result += f',Profile={self.profile}'

        return result

    def __str__(self):
        return self.full_name


def decode_assembly_identity(name: str, major: int, minor: int, build: int, revision: int, locale: str,
                             public_key_or_token: bytes, flags: int) -> AssemblyReference:
    """
    Build an AssemblyReference from the raw AssemblyRef fields. The PUBLIC_KEY flag decides whether the key bytes
    are a full public key or a token, an empty locale is the neutral culture and empty key bytes mean no key material.
    """
    components = (major, minor, build, revision)
    for component in components:
        if not 0 <= component <= MAX_VERSION_COMPONENT:
            raise ValueError(f'version component out of range: {component}')

    culture = locale if locale else NEUTRAL_CULTURE

    public_key = None
    public_key_token = None

    if public_key_or_token:
        if flags & AssemblyFlags.PUBLIC_KEY:
            public_key = bytes(public_key_or_token)
        else:
            public_key_token = bytes(public_key_or_token)

    return AssemblyReference(name, AssemblyVersion(*components), culture, public_key, public_key_token, int(flags))
