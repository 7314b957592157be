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
Downloads and extracts source and binary archives, verifying their checksums.
"""

import logging
import os
import posixpath
import re
import stat
import tarfile
import time
import zipfile

from typing import Any, List, Optional
from urllib.parse import urlparse

import requests

from dbdist.common_util import create_temp_dir
from dbdist.errors import FetchError
from dbdist.file_util import compute_file_sha256, mkdir_p, read_file


CHECKSUM_EXTENSION = '.sha256'
SUPPORTED_ARCHIVE_EXTENSIONS = ['.tar.gz', '.tgz', '.tar.xz', '.zip']

DOWNLOAD_CHUNK_SIZE = 1024 * 1024

# Connect and read timeouts.
DOWNLOAD_TIMEOUT_SEC = (30, 300)

POSTGRES_SOURCE_URL_TEMPLATE = \
    'https://ftp.postgresql.org/pub/source/v{version}/postgresql-{version}.tar.gz'

SHA256_RE = re.compile(r'^[0-9a-f]{64}$')


def get_postgres_source_url(version: str) -> str:
    """
    >>> get_postgres_source_url('17.5')
    'https://ftp.postgresql.org/pub/source/v17.5/postgresql-17.5.tar.gz'
    """
    return POSTGRES_SOURCE_URL_TEMPLATE.format(version=version)


def get_archive_name_from_url(url: str) -> str:
    """
    >>> get_archive_name_from_url('https://example.com/a/b/redis-7.4.0.tar.gz?raw=1')
    'redis-7.4.0.tar.gz'
    """
    return os.path.basename(urlparse(url).path)


def get_archive_extension(archive_name: str) -> Optional[str]:
    """
    >>> get_archive_extension('mongodb-macos-arm64-8.0.4.tgz')
    '.tgz'
    >>> get_archive_extension('postgresql-17.5.tar.gz')
    '.tar.gz'
    >>> get_archive_extension('foo.rpm') is None
    True
    """
    for extension in SUPPORTED_ARCHIVE_EXTENSIONS:
        if archive_name.endswith(extension):
            return extension
    return None


def download_url(url: str, dest_path: str, session: Optional[Any] = None) -> None:
    """
    Streams the body of the given URL into dest_path. Raises FetchError on connection errors,
    timeouts, and non-2xx HTTP statuses. Does not retry.
    """
    http = session if session is not None else requests
    start_time_sec = time.time()
    logging.info("Downloading %s to %s", url, dest_path)
    dest_dir = os.path.dirname(dest_path)
    if not os.path.isdir(dest_dir):
        raise IOError("Destination directory %s does not exist" % dest_dir)

    try:
        response = http.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT_SEC)
    except requests.exceptions.RequestException as ex:
        raise FetchError("Failed to download %s: %s" % (url, ex), url=url) from ex

    num_bytes = 0
    try:
        if not 200 <= response.status_code < 300:
            raise FetchError(
                "Failed to download %s: HTTP status %d" % (url, response.status_code),
                url=url,
                status=response.status_code)
        with open(dest_path, 'wb') as output_file:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if chunk:
                    output_file.write(chunk)
                    num_bytes += len(chunk)
    except requests.exceptions.RequestException as ex:
        raise FetchError("Error while downloading %s: %s" % (url, ex), url=url) from ex
    finally:
        response.close()

    elapsed_sec = time.time() - start_time_sec
    logging.info("Downloaded %s (%d bytes) to %s in %.1f sec", url, num_bytes, dest_path,
                 elapsed_sec)


def verify_sha256sum(checksum_file_path: str, data_file_path: str) -> None:
    """
    Compares the first token of a .sha256 file with the SHA-256 checksum of the data file. Raises
    FetchError on mismatch.
    """
    # Guard against someone passing in the actual data file instead of the checksum file.
    checksum_file_size = os.stat(checksum_file_path).st_size
    if checksum_file_size > 4096:
        raise FetchError("Checksum file size is too big: %d bytes (file path: %s)" % (
            checksum_file_size, checksum_file_path))

    tokens = read_file(checksum_file_path).strip().split()
    expected_checksum = tokens[0].lower() if tokens else ''
    if not SHA256_RE.match(expected_checksum):
        raise FetchError("Invalid SHA256 checksum in %s: '%s', expected 64 hex characters" % (
            checksum_file_path, expected_checksum))

    actual_checksum = compute_file_sha256(data_file_path)
    if actual_checksum != expected_checksum:
        raise FetchError("Invalid checksum for file %s: got %s, expected %s" % (
            data_file_path, actual_checksum, expected_checksum))
    logging.info("Verified SHA256 checksum of %s: %s", data_file_path, actual_checksum)


def check_member_name(member_name: str, archive_path: str) -> None:
    """
    Rejects archive members that would be extracted outside of the destination directory.
    """
    normalized_name = member_name.replace('\\', '/')
    if normalized_name.startswith('/') or '..' in normalized_name.split('/'):
        raise FetchError("Archive %s contains an unsafe member path: %s" % (
            archive_path, member_name))


def check_symlink_target(member_name: str, link_target: str, archive_path: str) -> None:
    """
    Rejects symlinks that point outside of the archive. Relative targets are resolved against the
    directory of the link.

    >>> check_symlink_target('mongodb/bin/mongod-link', 'mongod', 'mongodb.tgz')
    >>> check_symlink_target('mongodb/bin/libfoo.so', '../lib/libfoo.so', 'mongodb.tgz')
    """
    normalized_target = link_target.replace('\\', '/')
    resolved_target = posixpath.normpath(
        posixpath.join(posixpath.dirname(member_name.replace('\\', '/')), normalized_target))
    if normalized_target.startswith('/') or resolved_target.split('/')[0] == '..':
        raise FetchError("Archive %s contains a symlink pointing outside of it: %s -> %s" % (
            archive_path, member_name, link_target))


def extract_tarball(archive_path: str, dest_dir: str) -> None:
    with tarfile.open(archive_path) as tar:
        members = tar.getmembers()
        for member in members:
            check_member_name(member.name, archive_path)
            if member.islnk():
                # Hard link targets are relative to the archive root.
                check_member_name(member.linkname, archive_path)
            elif member.issym():
                check_symlink_target(member.name, member.linkname, archive_path)
        if hasattr(tarfile, 'tar_filter'):
            tar.extractall(dest_dir, members=members, filter='tar')
        else:
            tar.extractall(dest_dir, members=members)


def extract_zip(archive_path: str, dest_dir: str) -> None:
    with zipfile.ZipFile(archive_path) as zip_file:
        infos = zip_file.infolist()
        for info in infos:
            check_member_name(info.filename, archive_path)
            if stat.S_ISLNK(info.external_attr >> 16):
                check_symlink_target(
                    info.filename, zip_file.read(info).decode('utf-8'), archive_path)
        for info in infos:
            # The upper 16 bits of external_attr hold the Unix mode of the member, if any.
            mode = info.external_attr >> 16
            member_path = os.path.join(dest_dir, info.filename)
            if stat.S_ISLNK(mode):
                link_target = zip_file.read(info).decode('utf-8')
                mkdir_p(os.path.dirname(member_path))
                os.symlink(link_target, member_path)
                continue
            extracted_path = zip_file.extract(info, dest_dir)
            if mode and not info.is_dir():
                os.chmod(extracted_path, stat.S_IMODE(mode))


def extract_archive(archive_path: str, dest_dir: str) -> str:
    """
    Extracts the given archive into dest_dir. Returns the single top-level directory of the
    archive, or dest_dir itself if the archive has several top-level entries.
    """
    extension = get_archive_extension(os.path.basename(archive_path))
    if extension is None:
        raise FetchError("Unsupported archive type: %s, expected one of: %s" % (
            archive_path, ', '.join(SUPPORTED_ARCHIVE_EXTENSIONS)))

    start_time_sec = time.time()
    logging.info("Extracting %s in %s", archive_path, dest_dir)
    mkdir_p(dest_dir)
    try:
        if extension == '.zip':
            extract_zip(archive_path, dest_dir)
        else:
            extract_tarball(archive_path, dest_dir)
    except (tarfile.TarError, zipfile.BadZipFile) as ex:
        raise FetchError("Failed to extract archive %s: %s" % (archive_path, ex)) from ex

    top_level_entries = sorted(os.listdir(dest_dir))
    logging.info("Extracted %s in %.1f sec", archive_path, time.time() - start_time_sec)
    if len(top_level_entries) == 1:
        single_entry_path = os.path.join(dest_dir, top_level_entries[0])
        if os.path.isdir(single_entry_path) and not os.path.islink(single_entry_path):
            return single_entry_path
    return dest_dir


def download_and_extract(
        url: str,
        dest_dir_parent: str,
        expected_version: str,
        checksum_url: Optional[str] = None,
        session: Optional[Any] = None) -> str:
    """
    Downloads the archive at the given URL into a temporary directory under dest_dir_parent,
    verifies its checksum if a checksum URL is given, and extracts it. Returns the path of the
    extracted directory.

    :param expected_version: the version that must appear in the name of the extracted top-level
        directory or of the archive.
    """
    archive_name = get_archive_name_from_url(url)
    if get_archive_extension(archive_name) is None:
        raise FetchError("Archive download URL is expected to end with one of %s, got: %s" % (
            ', '.join(SUPPORTED_ARCHIVE_EXTENSIONS), url), url=url)

    download_dir = create_temp_dir(prefix='download.', parent_dir=dest_dir_parent)
    archive_path = os.path.join(download_dir, archive_name)
    download_url(url, archive_path, session=session)

    if checksum_url:
        checksum_path = archive_path + CHECKSUM_EXTENSION
        download_url(checksum_url, checksum_path, session=session)
        verify_sha256sum(checksum_path, archive_path)
    else:
        logging.info("No checksum URL for %s, skipping checksum verification", url)

    extract_dir = create_temp_dir(prefix='extract.', parent_dir=dest_dir_parent)
    extracted_dir = extract_archive(archive_path, extract_dir)

    extracted_names: List[str] = [os.path.basename(extracted_dir), archive_name]
    if not any(expected_version in name for name in extracted_names):
        raise FetchError(
            "Expected version %s was not found in the extracted directory name or in the archive "
            "name: %s" % (expected_version, ', '.join(extracted_names)), url=url)
    return extracted_dir


def verify_postgres_source_version(src_dir: str, version: str) -> None:
    """
    Checks that the PostgreSQL configure script in src_dir declares the given version.
    """
    configure_path = os.path.join(src_dir, 'configure')
    if not os.path.isfile(configure_path):
        raise FetchError("PostgreSQL source directory %s does not contain a configure script" %
                         src_dir)
    expected_line = "PACKAGE_VERSION='%s'" % version
    if expected_line not in read_file(configure_path):
        raise FetchError("PostgreSQL source in %s is not version %s: %s not found in %s" % (
            src_dir, version, expected_line, configure_path))


def download_postgres_source(
        version: str, dest_dir_parent: str, session: Optional[Any] = None) -> str:
    url = get_postgres_source_url(version)
    src_dir = download_and_extract(
        url=url,
        dest_dir_parent=dest_dir_parent,
        expected_version=version,
        checksum_url=url + CHECKSUM_EXTENSION,
        session=session)
    verify_postgres_source_version(src_dir, version)
    return src_dir
