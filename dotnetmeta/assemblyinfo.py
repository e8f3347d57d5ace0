"""
Part of dotnetmeta

AssemblyMetadata is the entry point of the package: it opens an assembly once and answers questions about its
dependencies, scatter files, target framework and runtime version. Every answer is computed on first request and
then served from a cache, also when several threads ask at the same time.

Example:
    with AssemblyMetadata('application.exe') as assembly:
        for reference in assembly.get_dependencies():
            print(reference.full_name)
"""

import logging
import os
import threading
from typing import Callable, Dict, Generic, Optional, Tuple, Type, TypeVar, Union

from .constants import ENUM_PAGE_SIZE, WINDOWS_RUNTIME_MARKER, MANAGED_WINMD_MARKER
from .errors import AssemblyNotFoundError, DotNetMetaError
from .identity import AssemblyReference, FileReference, FrameworkName
from .importer import MetadataBackend, ImportBackend
from .inspection import AssemblyResolver, InspectionBackend
from .logger import get_logger
from .metadata_root import get_runtime_version, get_image_runtime_version

T = TypeVar('T')

BACKENDS: Dict[str, Type[MetadataBackend]] = {
    ImportBackend.name: ImportBackend,
    InspectionBackend.name: InspectionBackend,
}

DEFAULT_BACKEND = ImportBackend.name


class OnceCell(Generic[T]):
    """
    Holds a value computed at most once. A failed computation leaves the cell empty, so the next caller retries.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._is_set = False
        self._value: Optional[T] = None

    @property
    def is_set(self) -> bool:
        return self._is_set

    def get_or_compute(self, compute: Callable[[], T]) -> T:
        if self._is_set:
            return self._value

        with self._lock:
            if not self._is_set:
                self._value = compute()
                self._is_set = True

        return self._value


def winmd_status_from_version(runtime_version: str) -> Tuple[bool, bool]:
    """
    (is Windows metadata, is managed Windows metadata) judged from the runtime version text, e.g.
    "WindowsRuntime 1.4;CLR v4.0.30319" is managed Windows metadata.
    """
    is_winmd = WINDOWS_RUNTIME_MARKER.lower() in runtime_version.lower()
    is_managed = is_winmd and MANAGED_WINMD_MARKER.lower() in runtime_version.lower()

    return is_winmd, is_managed


class AssemblyMetadata:
    def __init__(self, path: Union[str, os.PathLike], backend: str = DEFAULT_BACKEND,
                 page_size: int = ENUM_PAGE_SIZE, resolver: Optional[AssemblyResolver] = None,
                 log_level: int = logging.INFO):
        """
        :param path: path of the assembly
        :param backend: 'import' reads the metadata tables through pefile, 'inspection' uses dnfile and decodes the
                        custom attributes including their named arguments
        :param page_size: number of tokens fetched per enumeration step ('import' backend)
        :param resolver: locates referenced assemblies for enum arguments ('inspection' backend)
        :param log_level: level of the package loggers, applied if no earlier call configured them
        """
        self.logger = get_logger('assemblyinfo', level=log_level)

        if path is None:
            raise ValueError('no assembly path given')

        self.path = os.fspath(path)

        if not os.path.isfile(self.path):
            raise AssemblyNotFoundError(f'assembly not found: {self.path}')

        if backend not in BACKENDS:
            raise ValueError(f'unknown metadata backend: {backend!r}, expected one of {", ".join(BACKENDS)}')

        self.backend_name = backend
        self._closed = False
        self._close_lock = threading.Lock()

        self._dependencies: OnceCell[Tuple[AssemblyReference, ...]] = OnceCell()
        self._files: OnceCell[Tuple[FileReference, ...]] = OnceCell()
        self._framework: OnceCell[Optional[FrameworkName]] = OnceCell()
        self._runtime_version: OnceCell[str] = OnceCell()
        self._image_runtime_version: OnceCell[str] = OnceCell()

        options = {'page_size': page_size, 'resolver': resolver}
        backend_class = BACKENDS[backend]
        # Backends release what they acquired themselves when their construction fails
        self._backend: MetadataBackend = backend_class(
            self.path, **{name: options[name] for name in backend_class.option_names})

        self.logger.debug(f'opened {self.path} with the {backend} backend')

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def provides_files(self) -> bool:
        return self._backend.provides_files

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError(f'metadata of {self.path} is closed')

    def get_dependencies(self) -> Tuple[AssemblyReference, ...]:
        """
        Referenced assemblies in AssemblyRef table order, duplicates included.
        """
        self._check_open()
        return self._dependencies.get_or_compute(self._backend.dependencies)

    def get_files(self) -> Tuple[FileReference, ...]:
        """
        Scatter files of a multi-file assembly. The 'inspection' backend does not read the File table and always
        returns an empty tuple, see provides_files.
        """
        self._check_open()
        return self._files.get_or_compute(self._backend.files)

    def _compute_framework(self) -> Optional[FrameworkName]:
        try:
            return self._backend.target_framework()
        except DotNetMetaError as e:
            self.logger.debug(f'target framework unavailable - {e}')
            return None

    def get_target_framework(self) -> Optional[FrameworkName]:
        """
        Framework recorded by the assembly's TargetFrameworkAttribute, None if the attribute is missing or
        unreadable.
        """
        self._check_open()
        return self._framework.get_or_compute(self._compute_framework)

    def get_runtime_version(self) -> str:
        """
        Runtime version text of the metadata root, '' if unavailable. Read directly from the file, so it also works
        after close().
        """
        return self._runtime_version.get_or_compute(lambda: get_runtime_version(self.path))

    def get_image_runtime_version(self) -> str:
        """
        Version text as stored in the metadata root, without the check for a dotted version.
        """
        return self._image_runtime_version.get_or_compute(lambda: get_image_runtime_version(self.path))

    def get_winmd_status(self) -> Tuple[bool, bool]:
        """
        (is Windows metadata, is managed Windows metadata), a best-effort check on the stored version text.
        """
        return winmd_status_from_version(self.get_image_runtime_version())

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        self._backend.close()
        self.logger.debug(f'closed {self.path}')

    def __enter__(self) -> 'AssemblyMetadata':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self):
        return f'{type(self).__name__}({self.path!r}, backend={self.backend_name!r})'


def get_assembly_metadata(path: Union[str, os.PathLike], **options) \
        -> Tuple[Tuple[AssemblyReference, ...], Optional[Tuple[FileReference, ...]], Optional[FrameworkName]]:
    """
    One shot query: (dependencies, files, target framework). files is None for backends that do not read the File
    table. options are passed on to AssemblyMetadata.
    """
    with AssemblyMetadata(path, **options) as assembly:
        dependencies = assembly.get_dependencies()
        files = assembly.get_files() if assembly.provides_files else None
        framework = assembly.get_target_framework()

    return dependencies, files, framework


def get_target_framework_attribute(path: Union[str, os.PathLike], **options) -> Optional[FrameworkName]:
    with AssemblyMetadata(path, **options) as assembly:
        return assembly.get_target_framework()


def is_winmd_file(full_path: Union[str, os.PathLike],
                  get_runtime_version: Callable[[str], str] = get_image_runtime_version,  # pylint: disable=W0621
                  file_exists: Callable[[str], bool] = os.path.isfile) -> Tuple[bool, str, bool]:
    """
    Check for a Windows metadata file without opening the metadata tables.

    :param get_runtime_version: reads the stored runtime version text of a file
    :param file_exists: checks for the file
    :return: (is Windows metadata, runtime version text, is managed Windows metadata); a missing file gives
             (False, '', False)
    """
    if not full_path:
        return False, '', False

    full_path = os.fspath(full_path)

    if not file_exists(full_path):
        return False, '', False

    runtime_version = get_runtime_version(full_path)
    is_winmd, is_managed = winmd_status_from_version(runtime_version)

    return is_winmd, runtime_version, is_managed
