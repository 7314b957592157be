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

# Tools for loading the build_matrix.yml file listing pre-built vendor archives to repackage.

import logging
import os
import pprint

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from dbdist.build_target import Arch, BuildTarget, Database, Platform
from dbdist.common_util import DBDIST_SRC_ROOT, load_yaml_file
from dbdist.errors import ConfigError


BUILD_MATRIX_REL_PATH = os.path.join('build-support', 'build_matrix.yml')

# The top-level key under which matrix rows are stored.
ENTRIES_KEY = 'entries'

REQUIRED_KEYS = ['database', 'version', 'platform', 'arch', 'url']
OPTIONAL_KEYS = ['checksum_url', 'relocate']

VERSION_PLACEHOLDER = '{version}'


@dataclass(frozen=True)
class MatrixEntry:
    target: BuildTarget
    url: str
    checksum_url: Optional[str] = None
    relocate: bool = False

    def resolved_url(self) -> str:
        return self.url.replace(VERSION_PLACEHOLDER, self.target.version)

    def resolved_checksum_url(self) -> Optional[str]:
        if self.checksum_url is None:
            return None
        return self.checksum_url.replace(VERSION_PLACEHOLDER, self.target.version)

    def __str__(self) -> str:
        return str(self.target)


def get_build_matrix_file_path() -> str:
    return os.path.join(DBDIST_SRC_ROOT, BUILD_MATRIX_REL_PATH)


def parse_matrix_entry(row: Any, row_description: str, errors: List[str]) -> Optional[MatrixEntry]:
    """
    Parses one matrix row. Problems are appended to errors instead of being raised, so that all
    problems in the file can be reported at once.
    """
    if not isinstance(row, dict):
        errors.append("%s: expected a mapping, got: %s" % (row_description, pprint.pformat(row)))
        return None

    num_errors_before = len(errors)
    unknown_keys = sorted(set(row.keys()) - set(REQUIRED_KEYS + OPTIONAL_KEYS))
    if unknown_keys:
        errors.append("%s: unknown keys: %s" % (row_description, ', '.join(unknown_keys)))

    for key in REQUIRED_KEYS:
        value = row.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append("%s: missing required key '%s'" % (row_description, key))

    def parse_enum(key: str, enum_class: Any) -> Any:
        value = row.get(key)
        if value is None:
            return None
        try:
            return enum_class(str(value))
        except ValueError:
            errors.append("%s: unknown %s '%s', expected one of: %s" % (
                row_description, key, value, ', '.join(item.value for item in enum_class)))
            return None

    database = parse_enum('database', Database)
    platform = parse_enum('platform', Platform)
    arch = parse_enum('arch', Arch)

    relocate = row.get('relocate', False)
    if not isinstance(relocate, bool):
        errors.append("%s: 'relocate' must be true or false, got: %s" % (
            row_description, relocate))

    for url_key in ['url', 'checksum_url']:
        url = row.get(url_key)
        if url is not None and not (isinstance(url, str) and url.startswith(('https://',
                                                                              'http://'))):
            errors.append("%s: '%s' must be an HTTP(S) URL, got: %s" % (
                row_description, url_key, url))

    version = row.get('version')
    if version is not None and not isinstance(version, str):
        # Unquoted YAML numbers lose information, e.g. 17.10 would become 17.1.
        errors.append("%s: 'version' must be a quoted string, got: %s" % (
            row_description, version))
        version = None

    target: Optional[BuildTarget] = None
    if version is not None and database and platform and arch:
        try:
            target = BuildTarget(
                database=database, version=str(version), platform=platform, arch=arch)
        except ValueError as ex:
            errors.append("%s: %s" % (row_description, ex))

    if len(errors) > num_errors_before or target is None:
        return None

    return MatrixEntry(
        target=target,
        url=row['url'],
        checksum_url=row.get('checksum_url'),
        relocate=relocate)


def parse_build_matrix(data: Any, source_description: str) -> List[MatrixEntry]:
    if not isinstance(data, dict) or not isinstance(data.get(ENTRIES_KEY), list):
        raise ConfigError(
            "Build matrix %s must be a mapping with a list under the '%s' key" % (
                source_description, ENTRIES_KEY))
    unknown_top_level_keys = sorted(set(data.keys()) - {ENTRIES_KEY})

    errors: List[str] = []
    if unknown_top_level_keys:
        errors.append("unknown top-level keys: %s" % ', '.join(unknown_top_level_keys))

    entries: List[MatrixEntry] = []
    entries_by_key: Dict[str, int] = {}
    for row_index, row in enumerate(data[ENTRIES_KEY]):
        row_description = "entry #%d" % (row_index + 1)
        entry = parse_matrix_entry(row, row_description, errors)
        if entry is None:
            continue
        storage_key = entry.target.storage_key()
        if storage_key in entries_by_key:
            errors.append("%s: duplicate storage key %s (same as entry #%d)" % (
                row_description, storage_key, entries_by_key[storage_key]))
            continue
        entries_by_key[storage_key] = row_index + 1
        entries.append(entry)

    if errors:
        raise ConfigError("Invalid build matrix %s:\n%s" % (
            source_description, '\n'.join('    ' + error for error in errors)))
    return entries


def load_build_matrix(matrix_file_path: Optional[str] = None) -> List[MatrixEntry]:
    if matrix_file_path is None:
        matrix_file_path = get_build_matrix_file_path()
    if not os.path.isfile(matrix_file_path):
        raise ConfigError("Build matrix file does not exist: %s" % matrix_file_path)
    try:
        data = load_yaml_file(matrix_file_path)
    except Exception as ex:
        raise ConfigError("Failed to parse build matrix file %s: %s" % (
            matrix_file_path, ex)) from ex
    entries = parse_build_matrix(data, matrix_file_path)
    logging.info("Loaded %d build matrix entries from %s", len(entries), matrix_file_path)
    return entries


def filter_matrix_entries(
        entries: List[MatrixEntry],
        databases: Optional[Set[Database]],
        platforms: Optional[Set[Platform]] = None) -> List[MatrixEntry]:
    return [
        entry for entry in entries
        if (not databases or entry.target.database in databases) and
        (not platforms or entry.target.platform in platforms)
    ]
