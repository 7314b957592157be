# Copyright (c) YugabyteDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except
# in compliance with the License.  You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software distributed under the License
# is distributed on an "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express
# or implied.  See the License for the specific language governing permissions and limitations
# under the License.

import hashlib
import os
import pathlib

from typing import List, Union, Iterator


# Magic numbers at the beginning of object files.
ELF_MAGIC = b'\x7fELF'
MACH_O_MAGICS = (
    b'\xfe\xed\xfa\xce',  # MH_MAGIC
    b'\xce\xfa\xed\xfe',  # MH_CIGAM
    b'\xfe\xed\xfa\xcf',  # MH_MAGIC_64
    b'\xcf\xfa\xed\xfe',  # MH_CIGAM_64
    b'\xca\xfe\xba\xbe',  # FAT_MAGIC (universal binaries)
)


def to_path(path: Union[str, pathlib.Path]) -> pathlib.Path:
    if isinstance(path, pathlib.Path):
        return path
    return pathlib.Path(path)


def mkdir_p(dir_path: Union[str, pathlib.Path]) -> None:
    """
    Similar to the "mkdir -p ..." shell command. Creates the given directory and all enclosing
    directories. No-op if the directory already exists.
    """
    to_path(dir_path).mkdir(parents=True, exist_ok=True)


def path_to_str(path: Union[str, pathlib.Path]) -> str:
    if isinstance(path, str):
        return path
    return str(path)


def read_file(file_path: Union[str, pathlib.Path]) -> str:
    with open(path_to_str(file_path)) as input_file:
        return input_file.read()


def write_file(
        content: Union[str, List[str]], output_file_path: Union[str, pathlib.Path]) -> None:
    if isinstance(content, list):
        content = '\n'.join(content) + '\n'
    with open(path_to_str(output_file_path), 'w') as output_file:
        output_file.write(content)


def compute_file_sha256(file_path: str) -> str:
    """
    Compute the SHA-256 checksum of the given file.
    """
    buf_size = 1048576
    sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        while True:
            data = f.read(buf_size)
            if not data:
                break
            sha256.update(data)
    return sha256.hexdigest()


def clean_path_join(base_path: str, rel_path: str) -> str:
    """
    >>> clean_path_join('foo', 'bar')
    'foo/bar'
    >>> clean_path_join('foo', '.')
    'foo'
    """
    if rel_path == '.':
        return base_path
    return os.path.join(base_path, rel_path)


def is_under_dir(path: str, dir_path: str) -> bool:
    """
    >>> is_under_dir('/a/b/c', '/a/b')
    True
    >>> is_under_dir('/a/bc', '/a/b')
    False
    >>> is_under_dir('/a/b', '/a/b')
    True
    """
    path = os.path.normpath(path)
    dir_path = os.path.normpath(dir_path)
    return path == dir_path or path.startswith(dir_path.rstrip('/') + '/')


def read_magic(file_path: str, num_bytes: int = 4) -> bytes:
    try:
        with open(file_path, 'rb') as f:
            return f.read(num_bytes)
    except OSError:
        return b''


def is_elf_file(file_path: str) -> bool:
    return read_magic(file_path) == ELF_MAGIC


def is_mach_o_file(file_path: str) -> bool:
    return read_magic(file_path) in MACH_O_MAGICS


def walk_regular_files(root_dir: str) -> Iterator[str]:
    """
    Yields the paths of all regular files (not symlinks) under the given directory, in sorted order.
    """
    for dir_path, dir_names, file_names in os.walk(root_dir):
        dir_names.sort()
        for file_name in sorted(file_names):
            file_path = os.path.join(dir_path, file_name)
            if not os.path.islink(file_path) and os.path.isfile(file_path):
                yield file_path
