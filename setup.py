from setuptools import setup, find_packages

from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

setup(
    name='dotnetmeta',
    version='0.1.0',
    description='Library to read dependencies, target framework and runtime version of .NET assemblies',
    long_description=long_description,
    long_description_content_type='text/markdown',
    packages=find_packages(include=['dotnetmeta', 'dotnetmeta.*']),
    package_dir={'dotnetmeta': 'dotnetmeta'},
    install_requires=[
        'pefile',
        'dnfile'
    ],
    extras_require={
        'test': ['pytest']
    },
    python_requires='>=3.7'
)
