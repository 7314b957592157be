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

import logging
import os

from dataclasses import dataclass, field
from typing import List, Optional

from overrides import overrides

from dbdist.command_util import run_program
from dbdist.file_util import is_mach_o_file
from dbdist.library_packager import (
    Dependency,
    DependencyCategory,
    LibraryPackagerBase,
    make_writable,
    restore_mode,
)


MACOS_SYSTEM_LIBRARY_PREFIXES = ('/usr/lib/', '/System/Library/')

LOADER_PATH = '@loader_path'
EXECUTABLE_PATH = '@executable_path'
RPATH_PREFIX = '@rpath/'

RELATIVE_LOAD_PATH_PREFIXES = (LOADER_PATH, EXECUTABLE_PATH)

OTOOL_NOT_OBJECT_FILE_MESSAGES = [
    'is not an object file',
    'The file was not recognized as a valid object file',
]


@dataclass
class MachOLoadInfo:
    """
    The load commands of a Mach-O file that determine how its dependencies are found.
    """
    # LC_ID_DYLIB of a dynamic library. None for executables.
    install_name: Optional[str] = None

    # LC_LOAD_DYLIB and similar entries, in the order otool lists them.
    dependencies: List[str] = field(default_factory=list)

    # LC_RPATH entries.
    rpaths: List[str] = field(default_factory=list)


def parse_otool_rpaths(otool_output: str) -> List[str]:
    """
    Extracts rpaths from the output of otool -l. Sample output:

    Load command 78
             cmd LC_RPATH
         cmdsize 72
            path /opt/homebrew/lib (offset 12)
    """
    rpaths = []
    lines = otool_output.splitlines()
    for idx, line in enumerate(lines):
        if line.strip() == 'cmd LC_RPATH':
            path_line = lines[idx + 2] if idx + 2 < len(lines) else ''
            tokens = path_line.split()
            if not tokens or tokens[0] != 'path':
                raise RuntimeError(
                    "Invalid output from 'otool -l'. Expecting line to start with 'path'. "
                    "Got '%s'" % path_line)
            rpaths.append(tokens[1])
    return rpaths


def parse_otool_install_name(otool_output: str) -> Optional[str]:
    """
    Extracts the install name of a dynamic library from the output of otool -D. The first line is
    the file name, followed by the install name if the file is a dynamic library.
    """
    for line in otool_output.splitlines()[1:]:
        line = line.strip()
        if line and not line.endswith(':'):
            return line
    return None


def parse_otool_dependencies(otool_output: str, install_name: Optional[str]) -> List[str]:
    """
    Extracts dependency paths from the output of otool -L. Example:

    ./lib/libpq.5.dylib:
        /tmp/install/lib/libpq.5.dylib (compatibility version 5.0.0, current version 5.17.0)
        /usr/lib/libSystem.B.dylib (compatibility version 1.0.0, current version 1345.100.2)

    The library's own install name, if listed, is not a dependency.
    """
    dependencies: List[str] = []
    for line in otool_output.splitlines():
        stripped_line = line.strip()
        # Skip the file name header, including per-architecture headers of universal binaries.
        if not stripped_line or stripped_line.endswith(':'):
            continue
        path = stripped_line.split(' (compatibility version')[0].strip()
        if path == install_name or path in dependencies:
            continue
        dependencies.append(path)
    return dependencies


class MacLibraryPackager(LibraryPackagerBase):
    """
    Rewrites the load commands of Mach-O files to @loader_path-relative paths with
    install_name_tool, and re-signs modified files.
    """

    def run_otool(self, parameter: str, file_path: str) -> Optional[str]:
        """
        Run otool to extract information from an object file. Returns the command's output to
        stdout, or None if file_path is not a valid object file. Parameter must include the dash.
        """
        result = run_program(['otool', parameter, file_path], error_ok=True)

        if any(msg in result.stdout or msg in result.stderr
               for msg in OTOOL_NOT_OBJECT_FILE_MESSAGES):
            logging.info("Unable to run 'otool %s %s'. File '%s' is not an object file",
                         parameter, file_path, file_path)
            return None

        if result.failure():
            raise RuntimeError(result.error_msg)

        return result.stdout

    def get_load_info(self, file_path: str) -> MachOLoadInfo:
        install_name_output = self.run_otool('-D', file_path)
        if install_name_output is None:
            return MachOLoadInfo()
        install_name = parse_otool_install_name(install_name_output)
        return MachOLoadInfo(
            install_name=install_name,
            dependencies=parse_otool_dependencies(
                self.run_otool('-L', file_path) or '', install_name),
            rpaths=parse_otool_rpaths(self.run_otool('-l', file_path) or ''))

    def change_dependency(self, file_path: str, old_path: str, new_path: str) -> None:
        run_program(['install_name_tool', '-change', old_path, new_path, file_path])
        logging.debug('install_name_tool -change %s %s %s', old_path, new_path, file_path)

    def change_install_name(self, file_path: str, new_install_name: str) -> None:
        run_program(['install_name_tool', '-id', new_install_name, file_path])
        logging.debug('install_name_tool -id %s %s', new_install_name, file_path)

    def delete_rpath(self, file_path: str, rpath: str) -> None:
        run_program(['install_name_tool', '-delete_rpath', rpath, file_path])
        logging.debug('Successfully removed rpath %s from %s', rpath, file_path)

    def ad_hoc_sign(self, file_path: str) -> None:
        # Modifying load commands invalidates the code signature, and arm64 binaries with an
        # invalid signature are killed at launch.
        run_program(['codesign', '--force', '--sign', '-', file_path])
        logging.debug('Re-signed %s', file_path)

    @overrides
    def is_object_file(self, file_path: str) -> bool:
        return is_mach_o_file(file_path)

    @overrides
    def is_system_library_path(self, path: str) -> bool:
        return path.startswith(MACOS_SYSTEM_LIBRARY_PREFIXES)

    @overrides
    def categorize_missing_dependency(self, dependency: Dependency) -> DependencyCategory:
        if self.is_system_library_path(dependency.name):
            # System libraries live in the dyld shared cache and may not exist on disk.
            return DependencyCategory.SYSTEM
        raise RuntimeError("Library {} needed by {} does not exist".format(
            dependency.name, dependency.origin))

    def expand_relative_path(self, path: str, file_path: str) -> str:
        file_dir = os.path.dirname(os.path.abspath(file_path))
        for prefix in RELATIVE_LOAD_PATH_PREFIXES:
            if path.startswith(prefix):
                return os.path.normpath(file_dir + path[len(prefix):])
        return path

    def resolve_dependency_path(
            self, path: str, file_path: str, rpaths: List[str]) -> Optional[str]:
        if path.startswith(RPATH_PREFIX):
            name = path[len(RPATH_PREFIX):]
            # Find the absolute path by prepending all the rpaths extracted from the file.
            for rpath in rpaths + [self.lib_dir]:
                candidate_path = os.path.join(self.expand_relative_path(rpath, file_path), name)
                if os.path.isfile(candidate_path):
                    return os.path.abspath(candidate_path)
            return None
        candidate_path = self.expand_relative_path(path, file_path)
        if os.path.isfile(candidate_path):
            return os.path.abspath(candidate_path)
        return None

    @overrides
    def find_dependencies(self, file_path: str) -> List[Dependency]:
        load_info = self.get_load_info(file_path)
        dependencies = []
        for path in load_info.dependencies:
            if self.is_system_library_path(path):
                target: Optional[str] = path
            else:
                target = self.resolve_dependency_path(path, file_path, load_info.rpaths)
            dependencies.append(Dependency(path, target, file_path))
        return dependencies

    def get_loader_relative_path(self, path: str, file_path: str) -> str:
        """
        >>> packager = MacLibraryPackager.__new__(MacLibraryPackager)
        >>> packager.get_loader_relative_path('/b/lib/libpq.5.dylib', '/b/bin/psql')
        '@loader_path/../lib/libpq.5.dylib'
        """
        return os.path.join(
            LOADER_PATH, os.path.relpath(path, os.path.dirname(os.path.abspath(file_path))))

    @overrides
    def rewrite_load_paths(self, file_path: str, dependencies: List[Dependency]) -> bool:
        load_info = self.get_load_info(file_path)
        changes = []
        for dependency in dependencies:
            if dependency.bundle_path is None:
                continue
            new_path = self.get_loader_relative_path(dependency.bundle_path, file_path)
            if dependency.name != new_path:
                changes.append((dependency.name, new_path))

        new_install_name: Optional[str] = None
        if load_info.install_name is not None:
            candidate_install_name = RPATH_PREFIX + os.path.basename(file_path)
            if load_info.install_name != candidate_install_name:
                new_install_name = candidate_install_name

        rpaths_to_delete = [
            rpath for rpath in load_info.rpaths
            if not rpath.startswith(RELATIVE_LOAD_PATH_PREFIXES)
        ]

        if not changes and new_install_name is None and not rpaths_to_delete:
            return False

        original_mode = make_writable(file_path)
        try:
            for rpath in rpaths_to_delete:
                self.delete_rpath(file_path, rpath)
            for old_path, new_path in changes:
                self.change_dependency(file_path, old_path, new_path)
            if new_install_name is not None:
                self.change_install_name(file_path, new_install_name)
            self.ad_hoc_sign(file_path)
        finally:
            restore_mode(file_path, original_mode)
        return True

    @overrides
    def find_non_portable_entries(self, file_path: str) -> List[str]:
        load_info = self.get_load_info(file_path)
        entries = list(load_info.dependencies) + list(load_info.rpaths)
        if load_info.install_name is not None:
            entries.append(load_info.install_name)
        return [
            entry for entry in entries
            if entry.startswith('/') and not self.is_system_library_path(entry)
        ]
