"""
Part of dotnetmeta

Exception hierarchy. Image and metadata-root errors are recovered inside the library, import errors and
missing files are surfaced to the caller.
"""


class DotNetMetaError(Exception):
    def __init__(self, value):
        super().__init__(value)
        self.value = value

    def __str__(self):
        return repr(self.value)


class OutOfRangeError(DotNetMetaError):
    pass


class NotAnImageError(DotNetMetaError):
    pass


class MalformedImageError(DotNetMetaError):
    pass


class NoRuntimeHeaderError(DotNetMetaError):
    pass


class NoMetadataRootError(DotNetMetaError):
    pass


class NotAnAssemblyError(DotNetMetaError):
    pass


class AssemblyNotFoundError(DotNetMetaError, FileNotFoundError):
    pass


class MetadataImportError(DotNetMetaError):
    pass


class CustomAttributeFormatError(DotNetMetaError):
    pass
