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
#

import logging
import re

from dataclasses import dataclass, field
from typing import List, Optional

from dbdist.command_util import run_program
from dbdist.common_util import find_executable


g_patchelf_path_initialized: bool = False
g_patchelf_path: Optional[str] = None

READELF_RPATH_RE = re.compile(r'^.*Library (?:rpath|runpath): \[(.*)\]$')
READELF_NEEDED_RE = re.compile(r'^.*\(NEEDED\)\s+Shared library: \[(.*)\]$')

READELF_NOT_ELF_MESSAGES = [
    'Not an ELF file',
    'not a dynamic object',
]


@dataclass
class DynamicSectionInfo:
    """
    The parts of the dynamic section of an ELF file that determine how its shared library
    dependencies are found at runtime.
    """
    needed: List[str] = field(default_factory=list)
    rpath: Optional[str] = None

    def rpath_items(self) -> List[str]:
        if not self.rpath:
            return []
        return [item for item in self.rpath.split(':') if item]


def parse_readelf_dynamic_output(readelf_output: str) -> DynamicSectionInfo:
    info = DynamicSectionInfo()
    for line in readelf_output.split('\n'):
        line = line.rstrip()
        needed_match = READELF_NEEDED_RE.match(line)
        if needed_match:
            info.needed.append(needed_match.group(1))
            continue
        rpath_match = READELF_RPATH_RE.match(line)
        if rpath_match:
            info.rpath = rpath_match.group(1)
    return info


def get_patchelf_path() -> str:
    global g_patchelf_path_initialized, g_patchelf_path

    if not g_patchelf_path_initialized:
        g_patchelf_path = find_executable('patchelf')
        g_patchelf_path_initialized = True
    if g_patchelf_path is None:
        raise IOError("patchelf is required to set RPATH on Linux binaries but was not found")
    return g_patchelf_path


def get_dynamic_section_info(file_path: str) -> DynamicSectionInfo:
    result = run_program(['readelf', '-d', file_path], error_ok=True)
    if result.failure():
        if any(msg in result.stderr for msg in READELF_NOT_ELF_MESSAGES):
            logging.debug("Not a dynamic ELF file: %s", file_path)
            return DynamicSectionInfo()
        raise RuntimeError(result.error_msg)
    return parse_readelf_dynamic_output(result.stdout)


def get_rpath(file_path: str) -> Optional[str]:
    return get_dynamic_section_info(file_path).rpath


def set_rpath(file_path: str, rpath: str) -> None:
    run_program([get_patchelf_path(), '--set-rpath', rpath, file_path])

    # Verify that we have succeeded in setting rpath.
    actual_rpath = get_rpath(file_path)
    if actual_rpath != rpath:
        raise ValueError(
            f"Failed to set rpath on file {file_path} to {rpath}: it is now {actual_rpath}")


def replace_needed(file_path: str, old_name: str, new_name: str) -> None:
    run_program([get_patchelf_path(), '--replace-needed', old_name, new_name, file_path])

    needed = get_dynamic_section_info(file_path).needed
    if old_name in needed or new_name not in needed:
        raise ValueError(
            f"Failed to replace NEEDED entry {old_name} with {new_name} in file {file_path}: "
            f"NEEDED entries are now {needed}")
