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

"""
Makes a directory of database binaries relocatable. Starting from every executable and shared
library in the bundle, walks the dependency graph of shared libraries, copies the libraries that
would otherwise be missing on another machine into the bundle's lib directory, and rewrites load
paths so that they are expressed relative to the file that references them.
"""

import enum
import logging
import os
import shutil
import stat
import time

from collections import deque
from dataclasses import dataclass, field
from functools import total_ordering
from typing import Any, Deque, Dict, List, Optional, Set, Tuple, cast

from overrides import EnforceOverrides, overrides

from dbdist import rpath
from dbdist.build_target import Platform
from dbdist.common_util import sorted_grouped_by
from dbdist.errors import NonPortablePathError
from dbdist.file_util import clean_path_join, is_elf_file, is_under_dir, walk_regular_files


LINUX_SYSTEM_LIBRARY_DIRS = ['/lib', '/lib64', '/usr/lib', '/usr/lib64']

# Directories searched for libraries that are not found through RPATH/RUNPATH, in the order the
# dynamic linker would typically search them.
LINUX_DEFAULT_LIBRARY_SEARCH_DIRS = [
    '/lib/x86_64-linux-gnu',
    '/usr/lib/x86_64-linux-gnu',
    '/lib/aarch64-linux-gnu',
    '/usr/lib/aarch64-linux-gnu',
    '/lib64',
    '/usr/lib64',
    '/lib',
    '/usr/lib',
    '/usr/local/lib',
]

ORIGIN_TOKENS = ('$ORIGIN', '${ORIGIN}')


@total_ordering
class DependencyCategory(enum.Enum):
    # Libraries residing in system-wide library directories. We do not copy these.
    SYSTEM = 'system'

    # Libraries that already reside in the bundle.
    BUNDLED = 'bundled'

    # Libraries in the build (installation) tree that have a counterpart in the bundle.
    BUILD = 'build'

    # Anything else, e.g. libraries installed by Homebrew or into /usr/local. These are copied into
    # the bundle.
    EXTERNAL = 'external'

    def __lt__(self, other: Any) -> bool:
        if not isinstance(other, DependencyCategory):
            return False
        return self.value < cast(DependencyCategory, other).value


@total_ordering
class Dependency:
    """
    Describes a dependency of an executable or a shared library on another shared library.
    """

    # The name of the library as requested by the original executable/shared library, e.g.
    # libpq.so.5 or @rpath/libssl.3.dylib.
    name: str

    # Path that the dependency resolves to on this machine, or None if it cannot be found.
    target: Optional[str]

    # The file that has this dependency.
    origin: str

    category: Optional[DependencyCategory]

    # Path of the library inside the bundle, once it is known.
    bundle_path: Optional[str]

    def __init__(self, name: str, target: Optional[str], origin: str) -> None:
        self.name = name
        self.target = target
        self.origin = origin
        self.category = None
        self.bundle_path = None

    def __hash__(self) -> int:
        return hash(self.name) ^ hash(self.target)

    def _comparison_key(self) -> Tuple[str, str]:
        return (self.name, self.target or '')

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Dependency):
            return False
        return self._comparison_key() == other._comparison_key()

    def __lt__(self, other: Any) -> bool:
        return self._comparison_key() < other._comparison_key()

    def __str__(self) -> str:
        return "Dependency(name='{}', target='{}', origin='{}', category={})".format(
                self.name, self.target, self.origin,
                self.category.value if self.category else None)

    def __repr__(self) -> str:
        return str(self)


@dataclass
class LibraryPackagingResult:
    # Object files whose dependencies were processed.
    files_processed: List[str] = field(default_factory=list)

    # (source path, destination path) of every library copied into the bundle.
    libraries_copied: List[Tuple[str, str]] = field(default_factory=list)

    # Symlinks created in the bundle for libraries requested under a different name.
    symlinks_created: List[str] = field(default_factory=list)

    # Names of system libraries the bundle relies on.
    system_dependencies: Set[str] = field(default_factory=set)

    # Files whose load paths were rewritten.
    files_modified: List[str] = field(default_factory=list)

    total_time_sec: float = 0.0


def symlink(source: str, link_path: str) -> bool:
    """
    Create a symbolic link at `link_path` pointing to `source`. Returns True if the link was
    created, False if an identical link already exists.
    """
    if os.path.islink(link_path):
        if os.readlink(link_path) == source:
            return False
        raise RuntimeError(
                "Trying to create symlink '{}' -> '{}' but it already points to '{}'".format(
                    link_path, source, os.readlink(link_path)))
    if os.path.exists(link_path):
        raise RuntimeError(
                "Trying to create symlink '{}' -> '{}' but a file with that name exists".format(
                    link_path, source))
    os.symlink(source, link_path)
    return True


def make_writable(file_path: str) -> int:
    """
    Makes the given file writable by its owner. Returns the original mode.
    """
    original_mode = os.stat(file_path).st_mode
    if not original_mode & stat.S_IWUSR:
        os.chmod(file_path, original_mode | stat.S_IWUSR)
    return original_mode


def restore_mode(file_path: str, original_mode: int) -> None:
    if os.stat(file_path).st_mode != original_mode:
        os.chmod(file_path, stat.S_IMODE(original_mode))


class LibraryPackagerBase(EnforceOverrides):
    """
    A utility for starting with the object files in a bundle directory, and walking the dependency
    tree of libraries to find all libraries that need to be packaged with the product. Subclasses
    know how to read and rewrite the load paths of a particular object file format.
    """

    # Directory being made relocatable. It is modified in place.
    bundle_dir: str

    # Directory the binaries were originally installed into, if the bundle is a copy of it.
    build_dir: Optional[str]

    # Libraries copied into the bundle are placed here.
    lib_dir: str

    # Maps the real path of every library copied into the bundle to its path in the bundle.
    copied_by_realpath: Dict[str, str]

    result: LibraryPackagingResult

    def __init__(self, bundle_dir: str, build_dir: Optional[str] = None) -> None:
        bundle_dir = os.path.realpath(bundle_dir)
        if not os.path.isdir(bundle_dir):
            raise IOError("Bundle directory '{}' does not exist".format(bundle_dir))
        self.bundle_dir = bundle_dir
        self.build_dir = os.path.realpath(build_dir) if build_dir else None
        self.lib_dir = os.path.join(bundle_dir, 'lib')
        self.copied_by_realpath = {}
        self.result = LibraryPackagingResult()

    def is_object_file(self, file_path: str) -> bool:
        raise NotImplementedError()

    def is_system_library_path(self, path: str) -> bool:
        raise NotImplementedError()

    def find_dependencies(self, file_path: str) -> List[Dependency]:
        """
        Returns the direct shared library dependencies of the given object file, resolved to paths
        on this machine where possible.
        """
        raise NotImplementedError()

    def rewrite_load_paths(self, file_path: str, dependencies: List[Dependency]) -> bool:
        """
        Rewrites the load paths of the given file so that its non-system dependencies are found
        relative to the file's location. Returns True if the file was modified.
        """
        raise NotImplementedError()

    def find_non_portable_entries(self, file_path: str) -> List[str]:
        """
        Returns the load path entries of the given file that reference the build machine's
        filesystem.
        """
        raise NotImplementedError()

    def categorize_missing_dependency(self, dependency: Dependency) -> DependencyCategory:
        raise NotImplementedError()

    def find_object_files(self) -> List[str]:
        return [
            file_path for file_path in walk_regular_files(self.bundle_dir)
            if self.is_object_file(file_path)
        ]

    def get_build_counterpart(self, path: str) -> Optional[str]:
        """
        Returns the path in the bundle corresponding to the given path in the build directory, if
        such a file exists.
        """
        if self.build_dir is None or not is_under_dir(path, self.build_dir):
            return None
        counterpart = clean_path_join(self.bundle_dir, os.path.relpath(path, self.build_dir))
        if os.path.exists(counterpart):
            return counterpart
        return None

    def categorize(self, dependency: Dependency) -> DependencyCategory:
        if dependency.category is not None:
            return dependency.category

        target = dependency.target
        if target is None:
            category = self.categorize_missing_dependency(dependency)
        elif self.is_system_library_path(target):
            category = DependencyCategory.SYSTEM
        elif is_under_dir(os.path.realpath(target), self.bundle_dir):
            category = DependencyCategory.BUNDLED
        elif self.get_build_counterpart(target) is not None or (
                self.get_build_counterpart(os.path.realpath(target)) is not None):
            category = DependencyCategory.BUILD
        else:
            category = DependencyCategory.EXTERNAL
        dependency.category = category
        return category

    def bundle_external_library(self, dependency: Dependency) -> Tuple[str, bool]:
        """
        Copies the given external library into the bundle's lib directory, unless a library with
        the same real path has already been copied. Returns the path the dependency should be loaded
        from, and whether a new copy was made.
        """
        assert dependency.target is not None
        real_path = os.path.realpath(dependency.target)
        is_new_copy = False
        dest_path = self.copied_by_realpath.get(real_path)
        if dest_path is None:
            dest_path = os.path.join(self.lib_dir, os.path.basename(real_path))
            if os.path.lexists(dest_path):
                raise RuntimeError(
                    "Cannot copy library {} into the bundle: {} already exists".format(
                        real_path, dest_path))
            os.makedirs(self.lib_dir, exist_ok=True)
            logging.info("Bundling external library %s as %s", real_path, dest_path)
            shutil.copy2(real_path, dest_path)
            make_writable(dest_path)
            self.copied_by_realpath[real_path] = dest_path
            self.result.libraries_copied.append((real_path, dest_path))
            is_new_copy = True

        requested_name = os.path.basename(dependency.name)
        if requested_name == os.path.basename(dest_path):
            return dest_path, is_new_copy

        # The library is requested under a different name than its real file name, e.g.
        # libssl.so.3 -> libssl.so.3.0.13.
        link_path = os.path.join(os.path.dirname(dest_path), requested_name)
        if symlink(os.path.basename(dest_path), link_path):
            logging.debug("Created symlink %s -> %s", link_path, os.path.basename(dest_path))
            self.result.symlinks_created.append(link_path)
        return link_path, is_new_copy

    def resolve_bundle_path(self, dependency: Dependency) -> Tuple[Optional[str], bool]:
        category = self.categorize(dependency)
        if category == DependencyCategory.SYSTEM:
            return None, False
        assert dependency.target is not None
        if category == DependencyCategory.BUNDLED:
            return dependency.target, False
        if category == DependencyCategory.BUILD:
            counterpart = self.get_build_counterpart(dependency.target)
            if counterpart is None:
                counterpart = self.get_build_counterpart(os.path.realpath(dependency.target))
            assert counterpart is not None
            return counterpart, False
        return self.bundle_external_library(dependency)

    def package_binaries(self) -> LibraryPackagingResult:
        """
        Walks the dependency graph starting from every object file in the bundle, bundles the
        libraries that are needed, and rewrites load paths.
        """
        start_time_sec = time.time()
        seed_files = self.find_object_files()
        logging.info("Found %d object files in %s", len(seed_files), self.bundle_dir)

        queue: Deque[str] = deque(seed_files)
        processed: Set[str] = set()
        all_dependencies: List[Dependency] = []

        while queue:
            file_path = queue.popleft()
            real_path = os.path.realpath(file_path)
            if real_path in processed:
                continue
            processed.add(real_path)
            self.result.files_processed.append(file_path)

            dependencies = self.find_dependencies(file_path)
            for dependency in dependencies:
                bundle_path, is_new_copy = self.resolve_bundle_path(dependency)
                dependency.bundle_path = bundle_path
                if dependency.category == DependencyCategory.SYSTEM:
                    self.result.system_dependencies.add(os.path.basename(dependency.name))
                if is_new_copy and bundle_path is not None:
                    queue.append(os.path.realpath(bundle_path))
            all_dependencies.extend(dependencies)

            if self.rewrite_load_paths(file_path, dependencies):
                self.result.files_modified.append(file_path)

        for category, deps_in_category in sorted_grouped_by(
                all_dependencies, lambda dep: cast(DependencyCategory, dep.category)):
            names = sorted(set(os.path.basename(dep.name) for dep in deps_in_category))
            logging.debug("Dependencies of category %s: %s", category.value, ', '.join(names))

        self.result.total_time_sec = time.time() - start_time_sec
        logging.info(
            "Processed %d object files in %.1f sec: copied %d libraries, created %d symlinks, "
            "modified %d files, system libraries: %s",
            len(self.result.files_processed),
            self.result.total_time_sec,
            len(self.result.libraries_copied),
            len(self.result.symlinks_created),
            len(self.result.files_modified),
            ', '.join(sorted(self.result.system_dependencies)) or '(none)')
        return self.result

    def find_non_portable_paths(self) -> List[Tuple[str, str]]:
        """
        Re-inspects every object file in the bundle and returns (file, entry) pairs for load path
        entries that reference the build machine's filesystem.
        """
        non_portable_paths: List[Tuple[str, str]] = []
        for file_path in self.find_object_files():
            for entry in self.find_non_portable_entries(file_path):
                non_portable_paths.append(
                    (os.path.relpath(file_path, self.bundle_dir), entry))
        return non_portable_paths

    def verify_portability(self) -> None:
        non_portable_paths = self.find_non_portable_paths()
        if non_portable_paths:
            raise NonPortablePathError(
                "Found %d non-portable load paths in %s" % (
                    len(non_portable_paths), self.bundle_dir),
                non_portable_paths=non_portable_paths)
        logging.info("Verified that all load paths in %s are portable", self.bundle_dir)


def is_origin_relative(path: str) -> bool:
    """
    >>> is_origin_relative('$ORIGIN/../lib')
    True
    >>> is_origin_relative('/usr/local/lib')
    False
    """
    return path.startswith(ORIGIN_TOKENS)


def expand_origin(path: str, origin_dir: str) -> str:
    """
    >>> expand_origin('$ORIGIN/../lib', '/a/bin')
    '/a/lib'
    """
    for token in ORIGIN_TOKENS:
        if path.startswith(token):
            return os.path.normpath(origin_dir + path[len(token):])
    return path


class LinuxLibraryPackager(LibraryPackagerBase):
    """
    Sets RUNPATH of ELF files to $ORIGIN-relative directories using patchelf.
    """

    def get_dynamic_section_info(self, file_path: str) -> rpath.DynamicSectionInfo:
        return rpath.get_dynamic_section_info(file_path)

    def set_rpath(self, file_path: str, new_rpath: str) -> None:
        rpath.set_rpath(file_path, new_rpath)

    def replace_needed(self, file_path: str, old_name: str, new_name: str) -> None:
        rpath.replace_needed(file_path, old_name, new_name)

    @overrides
    def is_object_file(self, file_path: str) -> bool:
        return is_elf_file(file_path)

    @overrides
    def is_system_library_path(self, path: str) -> bool:
        return any(is_under_dir(path, system_dir) for system_dir in LINUX_SYSTEM_LIBRARY_DIRS)

    @overrides
    def categorize_missing_dependency(self, dependency: Dependency) -> DependencyCategory:
        # Cross-compiled binaries depend on libraries of the target architecture that are not
        # installed on the build machine. These are the target system's own libraries.
        logging.debug("Library %s needed by %s not found, assuming it is a system library",
                      dependency.name, dependency.origin)
        return DependencyCategory.SYSTEM

    def get_library_search_dirs(
            self, file_path: str, info: rpath.DynamicSectionInfo) -> List[str]:
        origin_dir = os.path.dirname(os.path.abspath(file_path))
        search_dirs = [expand_origin(item, origin_dir) for item in info.rpath_items()]
        search_dirs.append(self.lib_dir)
        if self.build_dir is not None:
            search_dirs.append(os.path.join(self.build_dir, 'lib'))
        search_dirs.extend(LINUX_DEFAULT_LIBRARY_SEARCH_DIRS)
        return search_dirs

    @overrides
    def find_dependencies(self, file_path: str) -> List[Dependency]:
        info = self.get_dynamic_section_info(file_path)
        search_dirs = self.get_library_search_dirs(file_path, info)
        dependencies: List[Dependency] = []
        for lib_name in info.needed:
            target: Optional[str] = None
            if '/' in lib_name:
                if os.path.exists(lib_name):
                    target = os.path.abspath(lib_name)
            else:
                for search_dir in search_dirs:
                    candidate_path = os.path.join(search_dir, lib_name)
                    if os.path.exists(candidate_path):
                        target = os.path.abspath(candidate_path)
                        break
            dependencies.append(Dependency(lib_name, target, file_path))
        return dependencies

    def compute_new_rpath(self, file_path: str, dependencies: List[Dependency]) -> str:
        file_dir = os.path.dirname(os.path.abspath(file_path))
        rpath_dirs = [self.lib_dir] + [
            os.path.dirname(dependency.bundle_path)
            for dependency in dependencies
            if dependency.bundle_path is not None
        ]
        items: List[str] = []
        for rpath_dir in rpath_dirs:
            item = clean_path_join('$ORIGIN', os.path.relpath(rpath_dir, file_dir))
            if item not in items:
                items.append(item)
        return ':'.join(items)

    @overrides
    def rewrite_load_paths(self, file_path: str, dependencies: List[Dependency]) -> bool:
        info = self.get_dynamic_section_info(file_path)
        if not info.needed and info.rpath is None:
            logging.debug("Not setting RPATH on file without dynamic dependencies: %s", file_path)
            return False

        # NEEDED entries with a path in them are not looked up through RUNPATH. They are replaced
        # with the file name of the bundled library.
        needed_replacements = [
            (dependency.name, os.path.basename(dependency.bundle_path))
            for dependency in dependencies
            if '/' in dependency.name and dependency.bundle_path is not None
        ]
        new_rpath = self.compute_new_rpath(file_path, dependencies)
        if not needed_replacements and info.rpath == new_rpath:
            return False

        original_mode = make_writable(file_path)
        try:
            for old_name, new_name in needed_replacements:
                logging.debug("Replacing NEEDED entry %s with %s in %s",
                              old_name, new_name, file_path)
                self.replace_needed(file_path, old_name, new_name)
            if info.rpath != new_rpath:
                logging.debug("Setting RPATH on file %s to %s (was: %s)",
                              file_path, new_rpath, info.rpath)
                self.set_rpath(file_path, new_rpath)
        finally:
            restore_mode(file_path, original_mode)
        return True

    @overrides
    def find_non_portable_entries(self, file_path: str) -> List[str]:
        info = self.get_dynamic_section_info(file_path)
        entries = info.rpath_items() + [name for name in info.needed if '/' in name]
        return [
            entry for entry in entries
            if not is_origin_relative(entry) and not self.is_system_library_path(entry)
        ]


def create_library_packager(
        target_platform: Platform,
        bundle_dir: str,
        build_dir: Optional[str] = None) -> LibraryPackagerBase:
    if target_platform == Platform.MACOS:
        from dbdist.mac_library_packager import MacLibraryPackager
        return MacLibraryPackager(bundle_dir, build_dir)
    return LinuxLibraryPackager(bundle_dir, build_dir)
