import pytest
from dotnetmeta.cursor import ByteCursor
from dotnetmeta.errors import NoRuntimeHeaderError
from dotnetmeta.image import ImageHeaderLocator
from dotnetmeta.metadata_root import (MetadataRootLocator, get_runtime_version, get_image_runtime_version,
                                      runtime_version_from_cursor)

from pe_builder import build_image, METADATA_FILE_OFFSET

# Signature, versions, reserved and the version length field
ROOT_HEADER_SIZE = 16

def write(tmp_path, data, name='sample.dll'):
    path = tmp_path / name
    path.write_bytes(data)
    return path

@pytest.mark.parametrize('pe32_plus', [False, True])
@pytest.mark.parametrize('version', ['v4.0.30319', 'v2.0.50727', 'v1.1.4322'])
def test_runtime_version(tmp_path, pe32_plus, version):
    path = write(tmp_path, build_image(pe32_plus=pe32_plus, runtime_version=version))
    assert get_runtime_version(path) == version
    assert get_runtime_version(str(path)) == version

def test_runtime_version_is_stateless(tmp_path):
    path = write(tmp_path, build_image())
    assert get_runtime_version(path) == get_runtime_version(path) == 'v4.0.30319'

def test_metadata_root_offset():
    cursor = ByteCursor(build_image())
    locator = MetadataRootLocator(cursor, ImageHeaderLocator(cursor))
    assert locator.metadata_root_offset() == METADATA_FILE_OFFSET
    assert locator.read_version_text() == 'v4.0.30319'

def test_runtime_header_outside_sections():
    cursor = ByteCursor(build_image(cli_header_rva=0x9000))
    locator = MetadataRootLocator(cursor, ImageHeaderLocator(cursor))
    with pytest.raises(NoRuntimeHeaderError):
        locator.metadata_root_offset()
    assert locator.runtime_version() == ''

@pytest.mark.parametrize('version', ['4.0.30319', 'v', 'vNext', 'v4', 'v4.0.x', 'WindowsRuntime 1.4;CLR v4.0.30319'])
def test_unrecognized_runtime_version(tmp_path, version):
    path = write(tmp_path, build_image(runtime_version=version))
    assert get_runtime_version(path) == ''
    assert get_image_runtime_version(path) == version

def test_version_length_zero(tmp_path):
    path = write(tmp_path, build_image(version_length=0))
    assert get_runtime_version(path) == ''
    assert get_image_runtime_version(path) == ''

def test_version_length_too_large(tmp_path):
    path = write(tmp_path, build_image(version_length=256))
    assert get_runtime_version(path) == ''

def test_version_length_past_end_of_file(tmp_path):
    data = build_image(version_length=64)[:METADATA_FILE_OFFSET + ROOT_HEADER_SIZE + 12]
    assert get_runtime_version(write(tmp_path, data)) == ''

def test_version_ending_at_end_of_file(tmp_path):
    # 'v4.0.30319' plus terminator padded to 12 bytes ends exactly at the end of the file
    data = build_image()[:METADATA_FILE_OFFSET + ROOT_HEADER_SIZE + 12]
    assert get_runtime_version(write(tmp_path, data)) == 'v4.0.30319'

def test_invalid_metadata_signature(tmp_path):
    data = bytearray(build_image())
    data[METADATA_FILE_OFFSET:METADATA_FILE_OFFSET + 4] = b'BSJA'
    assert get_runtime_version(write(tmp_path, bytes(data))) == ''

def test_small_file(tmp_path):
    assert get_runtime_version(write(tmp_path, b'MZ' + b'\x00' * 62)) == ''

def test_empty_file(tmp_path):
    assert get_runtime_version(write(tmp_path, b'')) == ''

def test_missing_file(tmp_path):
    assert get_runtime_version(tmp_path / 'missing.dll') == ''

def test_directory(tmp_path):
    assert get_runtime_version(tmp_path) == ''

def test_not_an_image(tmp_path):
    assert get_runtime_version(write(tmp_path, b'This is not a PE file. ' * 40, 'readme.txt')) == ''

def test_no_runtime_header(tmp_path):
    assert get_runtime_version(write(tmp_path, build_image(cli_header_rva=0))) == ''

def test_runtime_version_from_cursor():
    assert runtime_version_from_cursor(ByteCursor(build_image(runtime_version='v4.0.30319'))) == 'v4.0.30319'
    assert runtime_version_from_cursor(ByteCursor(b'')) == ''
