__version__ = '0.1.0'

from .assemblyinfo import (AssemblyMetadata, OnceCell, get_assembly_metadata,  # noqa: F401
                           get_target_framework_attribute, is_winmd_file)
from .errors import (DotNetMetaError, AssemblyNotFoundError, NotAnAssemblyError, MetadataImportError,  # noqa: F401
                     CustomAttributeFormatError)
from .identity import AssemblyReference, FileReference, FrameworkName, AssemblyFlags  # noqa: F401
from .inspection import AssemblyResolver, DirectoryFirstResolver  # noqa: F401
from .metadata_root import get_runtime_version, get_image_runtime_version  # noqa: F401
from .signatures import read_metadata_string  # noqa: F401
