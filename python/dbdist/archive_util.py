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
import tarfile
import time

from typing import List

from dbdist.errors import ArchiveError
from dbdist.file_util import mkdir_p


def list_bundle_entries(bundle_dir: str) -> List[str]:
    """
    Returns the paths of all files, directories and symlinks under bundle_dir relative to it, in
    sorted order. Symlinks to directories are listed but not descended into.
    """
    entries = []
    for dir_path, dir_names, file_names in os.walk(bundle_dir):
        dir_names.sort()
        for name in sorted(dir_names + file_names):
            entries.append(os.path.relpath(os.path.join(dir_path, name), bundle_dir))
    return sorted(entries)


def create_tarball(bundle_dir: str, output_path: str) -> str:
    """
    Creates a gzip-compressed tarball of the contents of bundle_dir. Member names are relative to
    the bundle root. Permission bits and symlinks are preserved; symlinks are not followed.
    """
    if not os.path.isdir(bundle_dir):
        raise ArchiveError("Bundle directory does not exist: %s" % bundle_dir)

    start_time_sec = time.time()
    mkdir_p(os.path.dirname(os.path.abspath(output_path)))
    entries = list_bundle_entries(bundle_dir)
    logging.info("Creating archive %s with %d entries from %s", output_path, len(entries),
                 bundle_dir)
    with tarfile.open(output_path, 'w:gz', dereference=False) as tar:
        for entry in entries:
            tar.add(os.path.join(bundle_dir, entry), arcname=entry, recursive=False)

    logging.info("Created archive %s (%d bytes) in %.1f sec", output_path,
                 os.path.getsize(output_path), time.time() - start_time_sec)
    return output_path


def list_tarball_members(archive_path: str) -> List[str]:
    with tarfile.open(archive_path, 'r:*') as tar:
        return [member.name for member in tar.getmembers()]
