import logging
import sys
import threading

import pytest
from dotnetmeta import (AssemblyMetadata, OnceCell, get_assembly_metadata, get_target_framework_attribute,
                        is_winmd_file)
from dotnetmeta.assemblyinfo import winmd_status_from_version
from dotnetmeta.errors import AssemblyNotFoundError, NotAnAssemblyError
from dotnetmeta.identity import FileReference, FrameworkName

from pe_builder import write_image, ReferenceSpec, AttributeSpec, string_attribute_value

TOKEN = bytes.fromhex('b77a5c561934e089')
THREAD_COUNT = 8

def target_framework_attribute(text):
    return AttributeSpec('System.Runtime.Versioning', 'TargetFrameworkAttribute', string_attribute_value(text),
                         scope='mscorlib')

@pytest.fixture
def assembly_path(tmp_path):
    references = [ReferenceSpec('mscorlib', (4, 0, 0, 0), public_key_or_token=TOKEN),
                  ReferenceSpec('System.Core', (4, 0, 0, 0), public_key_or_token=TOKEN)]
    return write_image(tmp_path / 'Sample.dll', references=references, files=['part.netmodule'],
                       attributes=[target_framework_attribute('.NETFramework,Version=v4.7.2')])

def run_in_threads(function):
    barrier = threading.Barrier(THREAD_COUNT)
    results = [None] * THREAD_COUNT

    def worker(index):
        barrier.wait()
        results[index] = function()

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(THREAD_COUNT)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    return results

def test_once_cell_computes_once():
    calls = []

    def compute():
        calls.append(1)
        return object()

    cell = OnceCell()
    assert not cell.is_set

    results = run_in_threads(lambda: cell.get_or_compute(compute))
    assert len(calls) == 1
    assert all(result is results[0] for result in results)
    assert cell.is_set

def test_once_cell_retries_after_failure():
    cell = OnceCell()

    def fail():
        raise RuntimeError('not yet')

    with pytest.raises(RuntimeError):
        cell.get_or_compute(fail)
    assert not cell.is_set
    assert cell.get_or_compute(lambda: 5) == 5
    assert cell.get_or_compute(lambda: 6) == 5

def test_once_cell_caches_none():
    calls = []
    cell = OnceCell()
    assert cell.get_or_compute(lambda: calls.append(1)) is None
    assert cell.get_or_compute(lambda: calls.append(1)) is None
    assert len(calls) == 1

@pytest.mark.parametrize('backend', ['import', 'inspection'])
def test_dependencies(assembly_path, backend):
    with AssemblyMetadata(assembly_path, backend=backend) as assembly:
        dependencies = assembly.get_dependencies()
        assert dependencies is assembly.get_dependencies()

    assert [reference.name for reference in dependencies] == ['mscorlib', 'System.Core']
    assert dependencies[1].full_name == \
        'System.Core, Version=4.0.0.0, Culture=neutral, PublicKeyToken=b77a5c561934e089'

@pytest.mark.parametrize('backend', ['import', 'inspection'])
def test_target_framework(assembly_path, backend):
    with AssemblyMetadata(assembly_path, backend=backend) as assembly:
        assert assembly.get_target_framework() == FrameworkName('.NETFramework', '4.7.2')

def test_dependencies_shared_across_threads(assembly_path):
    with AssemblyMetadata(assembly_path) as assembly:
        results = run_in_threads(assembly.get_dependencies)

    assert all(result is results[0] for result in results)
    assert len(results[0]) == 2

def test_concurrent_first_access(tmp_path):
    references = [ReferenceSpec('mscorlib', (4, 0, 0, 0), public_key_or_token=TOKEN)]
    references += [ReferenceSpec(f'Reference{index:03d}', (1, 0, index, 0)) for index in range(599)]
    files = [f'part{index:03d}.netmodule' for index in range(600)]
    path = write_image(tmp_path / 'Large.dll', references=references, files=files,
                       attributes=[target_framework_attribute('.NETFramework,Version=v4.8')])
    results = {}

    with AssemblyMetadata(path) as assembly:
        accessors = {'dependencies': assembly.get_dependencies, 'files': assembly.get_files,
                     'framework': assembly.get_target_framework}
        barrier = threading.Barrier(len(accessors))

        def worker(key):
            barrier.wait()
            results[key] = accessors[key]()

        switch_interval = sys.getswitchinterval()
        sys.setswitchinterval(1e-6)
        try:
            threads = [threading.Thread(target=worker, args=(key,)) for key in accessors]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
        finally:
            sys.setswitchinterval(switch_interval)

    assert len(results['dependencies']) == 600
    assert [reference.name for reference in results['dependencies'][1:]] == \
        [f'Reference{index:03d}' for index in range(599)]
    assert [file_reference.name for file_reference in results['files']] == files
    assert results['framework'] == FrameworkName('.NETFramework', '4.8')

def test_backend_options(assembly_path):
    with pytest.raises(ValueError):
        AssemblyMetadata(assembly_path, page_size=0)

    with AssemblyMetadata(assembly_path, backend='inspection', page_size=0) as assembly:
        assert len(assembly.get_dependencies()) == 2

def test_files(assembly_path):
    with AssemblyMetadata(assembly_path) as assembly:
        assert assembly.provides_files
        assert assembly.get_files() == (FileReference('part.netmodule'),)

    with AssemblyMetadata(assembly_path, backend='inspection') as assembly:
        assert not assembly.provides_files
        assert assembly.get_files() == ()

def test_runtime_version(assembly_path):
    with AssemblyMetadata(assembly_path) as assembly:
        assert assembly.get_runtime_version() == 'v4.0.30319'
        assert assembly.get_image_runtime_version() == 'v4.0.30319'
        assert assembly.get_winmd_status() == (False, False)

def test_log_level_does_not_reconfigure(assembly_path):
    package_logger = logging.getLogger('dotnetmeta')
    AssemblyMetadata(assembly_path).close()
    level = package_logger.level

    AssemblyMetadata(assembly_path, log_level=logging.CRITICAL).close()
    assert package_logger.level == level
    assert len(package_logger.handlers) == 1

def test_runtime_version_after_close(assembly_path):
    assembly = AssemblyMetadata(assembly_path)
    assembly.close()
    assert assembly.get_runtime_version() == 'v4.0.30319'

def test_missing_target_framework(tmp_path):
    path = write_image(tmp_path / 'Plain.dll', references=[ReferenceSpec('mscorlib')])
    with AssemblyMetadata(path) as assembly:
        assert assembly.get_target_framework() is None

def test_unparsable_target_framework(tmp_path):
    path = write_image(tmp_path / 'Odd.dll', references=[ReferenceSpec('mscorlib')],
                       attributes=[target_framework_attribute('Silverlight')])
    with AssemblyMetadata(path) as assembly:
        assert assembly.get_target_framework() is None

def test_missing_assembly(tmp_path):
    with pytest.raises(AssemblyNotFoundError):
        AssemblyMetadata(tmp_path / 'missing.dll')

    with pytest.raises(FileNotFoundError):
        AssemblyMetadata(tmp_path / 'missing.dll')

def test_no_path():
    with pytest.raises(ValueError):
        AssemblyMetadata(None)

def test_unknown_backend(assembly_path):
    with pytest.raises(ValueError):
        AssemblyMetadata(assembly_path, backend='reflection')

@pytest.mark.parametrize('backend', ['import', 'inspection'])
def test_not_an_assembly(tmp_path, backend):
    path = tmp_path / 'readme.dll'
    path.write_bytes(b'This is not a PE image.\n' * 20)
    with pytest.raises(NotAnAssemblyError):
        AssemblyMetadata(path, backend=backend)

def test_close(assembly_path):
    assembly = AssemblyMetadata(assembly_path)
    assembly.get_dependencies()
    assembly.close()
    assembly.close()

    assert assembly.closed
    with pytest.raises(ValueError):
        assembly.get_dependencies()
    with pytest.raises(ValueError):
        assembly.get_target_framework()

def test_get_assembly_metadata(assembly_path):
    dependencies, files, framework = get_assembly_metadata(assembly_path)
    assert len(dependencies) == 2
    assert files == (FileReference('part.netmodule'),)
    assert framework.full_name == '.NETFramework,Version=v4.7.2'

def test_get_assembly_metadata_inspection(assembly_path):
    dependencies, files, framework = get_assembly_metadata(assembly_path, backend='inspection')
    assert len(dependencies) == 2
    assert files is None
    assert framework == FrameworkName('.NETFramework', '4.7.2')

def test_get_target_framework_attribute(assembly_path):
    assert str(get_target_framework_attribute(assembly_path)) == '.NETFramework,Version=v4.7.2'

@pytest.mark.parametrize('version, expected', [
    ('WindowsRuntime 1.4;CLR v4.0.30319', (True, True)),
    ('WindowsRuntime 1.4', (True, False)),
    ('windowsruntime 1.2;clr v4.0.30319', (True, True)),
    ('v4.0.30319', (False, False)),
    ('CLR v4.0.30319', (False, False)),
    ('', (False, False)),
])
def test_winmd_status_from_version(version, expected):
    assert winmd_status_from_version(version) == expected

def test_is_winmd_file_with_injected_functions():
    requested = []

    def runtime_version(path):
        requested.append(path)
        return 'WindowsRuntime 1.4;CLR v4.0.30319'

    assert is_winmd_file('Windows.winmd', runtime_version, lambda path: True) == \
        (True, 'WindowsRuntime 1.4;CLR v4.0.30319', True)
    assert requested == ['Windows.winmd']

    assert is_winmd_file('Windows.winmd', runtime_version, lambda path: False) == (False, '', False)
    assert requested == ['Windows.winmd']

@pytest.mark.parametrize('version, expected', [
    ('WindowsRuntime 1.4;CLR v4.0.30319', (True, 'WindowsRuntime 1.4;CLR v4.0.30319', True)),
    ('WindowsRuntime 1.4', (True, 'WindowsRuntime 1.4', False)),
    ('v4.0.30319', (False, 'v4.0.30319', False)),
])
def test_is_winmd_file(tmp_path, version, expected):
    path = write_image(tmp_path / 'Windows.winmd', runtime_version=version)
    assert is_winmd_file(path) == expected

    with AssemblyMetadata(path) as assembly:
        assert assembly.get_winmd_status() == (expected[0], expected[2])

def test_is_winmd_file_missing(tmp_path):
    assert is_winmd_file(tmp_path / 'missing.winmd') == (False, '', False)
    assert is_winmd_file('') == (False, '', False)
    assert is_winmd_file(None) == (False, '', False)

def test_is_winmd_file_not_an_image(tmp_path):
    path = tmp_path / 'notes.winmd'
    path.write_bytes(b'WindowsRuntime')
    assert is_winmd_file(path) == (False, '', False)
