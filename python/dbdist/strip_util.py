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

"""
Removes debug symbols from the ELF files of a bundle.
"""

import logging
import os
import time

from typing import List

from dbdist.build_postgres import get_gnu_triple
from dbdist.build_target import Arch, BuildTarget, Platform
from dbdist.command_util import run_program
from dbdist.errors import StripError
from dbdist.file_util import is_elf_file, walk_regular_files
from dbdist.library_packager import make_writable, restore_mode


def get_strip_tool(target: BuildTarget, host_arch: Arch) -> str:
    """
    Returns the strip executable that understands object files of the target architecture.
    """
    if target.arch == host_arch:
        return 'strip'
    return '%s-strip' % get_gnu_triple(target.platform, target.arch)


def strip_debug_symbols(bundle_dir: str, target: BuildTarget, host_arch: Arch) -> List[str]:
    """
    Runs strip --strip-debug on every ELF file in the bundle. Must run after the bundle's load paths
    have been verified. Returns the list of stripped files.
    """
    if target.platform != Platform.LINUX:
        logging.info("Not stripping debug symbols for %s binaries", target.platform.value)
        return []

    strip_tool = get_strip_tool(target, host_arch)
    start_time_sec = time.time()
    size_before = 0
    size_after = 0
    stripped_files = []
    for file_path in walk_regular_files(bundle_dir):
        if not is_elf_file(file_path):
            continue
        size_before += os.path.getsize(file_path)
        original_mode = make_writable(file_path)
        try:
            result = run_program([strip_tool, '--strip-debug', file_path], error_ok=True)
        finally:
            restore_mode(file_path, original_mode)
        if result.failure():
            raise StripError(
                "Failed to strip debug symbols from %s using %s" % (file_path, strip_tool),
                exit_code=result.returncode,
                log_tail=result.combined_output())
        size_after += os.path.getsize(file_path)
        stripped_files.append(file_path)

    logging.info(
        "Stripped debug symbols from %d files in %s in %.1f sec, total size %d -> %d bytes",
        len(stripped_files), bundle_dir, time.time() - start_time_sec, size_before, size_after)
    return stripped_files
