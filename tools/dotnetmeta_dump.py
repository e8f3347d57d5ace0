"""
Part of dotnetmeta

Display the dependencies, scatter files, target framework, runtime version and Windows metadata status of .NET
assemblies.
"""

import os
import sys
import argparse
import logging
import traceback

from dotnetmeta import AssemblyMetadata, DirectoryFirstResolver, DotNetMetaError
from dotnetmeta.assemblyinfo import BACKENDS, DEFAULT_BACKEND


def process_file(file_path: str, backend: str, probe_directories, log_level: int) -> None:
    print('---')
    print(f'Processing: {file_path}')
    print('---\n')

    resolver = DirectoryFirstResolver(probe_directories)

    with AssemblyMetadata(file_path, backend=backend, resolver=resolver, log_level=log_level) as assembly:
        runtime_version = assembly.get_runtime_version()
        is_winmd, is_managed_winmd = assembly.get_winmd_status()
        framework = assembly.get_target_framework()

        print('General information')
        print(f'\tRuntime version: {runtime_version or "-"}')
        print(f'\tTarget framework: {framework or "-"}')
        print(f'\tIs Windows metadata: {is_winmd}')
        print(f'\tIs managed Windows metadata: {is_managed_winmd}\n')

        dependencies = assembly.get_dependencies()
        print(f'Referenced assemblies ({len(dependencies)})')
        for reference in dependencies:
            print(f'\t{reference.full_name}')
        print()

        if assembly.provides_files:
            files = assembly.get_files()
            print(f'Files ({len(files)})')
            for file_reference in files:
                print(f'\t{file_reference}')
            print()


def main():
    parser = argparse.ArgumentParser(prog='dotnetmeta_dump.py', description='Show metadata of .NET assemblies.')
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument('-f', '--file', dest='input_files', type=str, nargs='+', help='File path(s) of .NET assemblies.')
    group.add_argument('-d', '--directory', dest='input_dir', type=str,
                       help='Directory path containing .NET assemblies.')
    parser.add_argument('-b', '--backend', dest='backend', choices=sorted(BACKENDS), default=DEFAULT_BACKEND,
                        help='Metadata backend.')
    parser.add_argument('-p', '--probe', dest='probe_directories', action='append', default=[],
                        help='Directory searched for referenced assemblies (inspection backend), can be repeated.')
    parser.add_argument('-v', '--verbose', dest='verbose', action='store_true', help='Show debug messages.')
    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO

    if args.input_files:
        file_paths = args.input_files
    else:
        if not os.path.isdir(args.input_dir):
            print(f'[-] Directory does not exist: {args.input_dir}')
            return 1

        file_paths = [os.path.join(args.input_dir, file_name) for file_name in sorted(os.listdir(args.input_dir))]
        file_paths = [file_path for file_path in file_paths if os.path.isfile(file_path)]

    error_count = 0
    for file_path in file_paths:
        try:
            process_file(file_path, args.backend, args.probe_directories, log_level)
        except DotNetMetaError as e:
            error_count += 1
            print(f'[-] Error processing {file_path} - {e}')
            print('\tException details:', file=sys.stderr)
            traceback.print_exc(file=sys.stderr)

    print(f'\nProcessed {len(file_paths) - error_count} of {len(file_paths)} files')

    return 1 if error_count else 0


if __name__ == '__main__':
    sys.exit(main())
