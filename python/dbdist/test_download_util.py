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
import io
import os
import pathlib
import stat
import tarfile
import zipfile

from typing import Any, Dict, Iterator, List, Tuple

import pytest
import requests

from dbdist import download_util
from dbdist.errors import FetchError
from dbdist.file_util import mkdir_p, write_file


ARCHIVE_URL = 'https://downloads.example.com/mongodb-linux-x86_64-8.0.4.tgz'


class FakeResponse:
    def __init__(self, status_code: int, content: bytes) -> None:
        self.status_code = status_code
        self.content = content
        self.closed = False

    def iter_content(self, chunk_size: int) -> Iterator[bytes]:
        for offset in range(0, len(self.content), chunk_size):
            yield self.content[offset:offset + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """
    Serves canned responses by URL. Unknown URLs fail as if the host could not be reached.
    """
    def __init__(self, responses: Dict[str, Tuple[int, bytes]]) -> None:
        self.responses = responses
        self.requested_urls: List[str] = []

    def get(self, url: str, stream: bool = False, timeout: Any = None) -> FakeResponse:
        assert stream
        assert timeout is not None
        self.requested_urls.append(url)
        if url not in self.responses:
            raise requests.exceptions.ConnectionError("Failed to resolve host for %s" % url)
        status_code, content = self.responses[url]
        return FakeResponse(status_code, content)


def create_test_tarball(tmp_path: pathlib.Path, top_level_dir: str) -> bytes:
    src_dir = tmp_path / 'tarball_src' / top_level_dir
    mkdir_p(src_dir / 'bin')
    write_file('#!/bin/sh\necho mongod\n', src_dir / 'bin' / 'mongod')
    os.chmod(src_dir / 'bin' / 'mongod', 0o755)
    write_file('Server Side Public License\n', src_dir / 'LICENSE-Community.txt')
    os.symlink('mongod', src_dir / 'bin' / 'mongod-link')

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w:gz') as tar:
        tar.add(str(src_dir), arcname=top_level_dir)
    return buffer.getvalue()


def sha256_line(content: bytes, file_name: str) -> bytes:
    return ('%s  %s\n' % (hashlib.sha256(content).hexdigest(), file_name)).encode('utf-8')


def test_download_and_extract_with_checksum(tmp_path: pathlib.Path) -> None:
    archive_bytes = create_test_tarball(tmp_path, 'mongodb-linux-x86_64-8.0.4')
    session = FakeSession({
        ARCHIVE_URL: (200, archive_bytes),
        ARCHIVE_URL + '.sha256': (200, sha256_line(archive_bytes, 'mongodb.tgz')),
    })
    work_dir = tmp_path / 'work'
    mkdir_p(work_dir)

    extracted_dir = download_util.download_and_extract(
        url=ARCHIVE_URL,
        dest_dir_parent=str(work_dir),
        expected_version='8.0.4',
        checksum_url=ARCHIVE_URL + '.sha256',
        session=session)

    assert os.path.basename(extracted_dir) == 'mongodb-linux-x86_64-8.0.4'
    mongod_path = os.path.join(extracted_dir, 'bin', 'mongod')
    assert os.stat(mongod_path).st_mode & stat.S_IXUSR
    assert os.readlink(os.path.join(extracted_dir, 'bin', 'mongod-link')) == 'mongod'
    assert session.requested_urls == [ARCHIVE_URL, ARCHIVE_URL + '.sha256']


def test_checksum_mismatch(tmp_path: pathlib.Path) -> None:
    archive_bytes = create_test_tarball(tmp_path, 'mongodb-linux-x86_64-8.0.4')
    session = FakeSession({
        ARCHIVE_URL: (200, archive_bytes),
        ARCHIVE_URL + '.sha256': (200, sha256_line(b'something else', 'mongodb.tgz')),
    })
    with pytest.raises(FetchError, match='Invalid checksum'):
        download_util.download_and_extract(
            url=ARCHIVE_URL,
            dest_dir_parent=str(tmp_path),
            expected_version='8.0.4',
            checksum_url=ARCHIVE_URL + '.sha256',
            session=session)


def test_malformed_checksum_file(tmp_path: pathlib.Path) -> None:
    data_path = tmp_path / 'data.tgz'
    data_path.write_bytes(b'data')
    checksum_path = tmp_path / 'data.tgz.sha256'
    write_file('<html>Not Found</html>\n', checksum_path)
    with pytest.raises(FetchError, match='Invalid SHA256 checksum'):
        download_util.verify_sha256sum(str(checksum_path), str(data_path))


def test_http_error_status(tmp_path: pathlib.Path) -> None:
    session = FakeSession({ARCHIVE_URL: (404, b'Not Found')})
    with pytest.raises(FetchError) as exc_info:
        download_util.download_url(ARCHIVE_URL, str(tmp_path / 'archive.tgz'), session=session)
    assert exc_info.value.status == 404
    assert exc_info.value.url == ARCHIVE_URL
    assert exc_info.value.step == 'fetch'


def test_connection_error(tmp_path: pathlib.Path) -> None:
    with pytest.raises(FetchError, match='Failed to resolve host') as exc_info:
        download_util.download_url(
            ARCHIVE_URL, str(tmp_path / 'archive.tgz'), session=FakeSession({}))
    assert exc_info.value.status is None


def test_version_not_found_in_names(tmp_path: pathlib.Path) -> None:
    archive_bytes = create_test_tarball(tmp_path, 'mongodb-linux-x86_64-8.0.4')
    session = FakeSession({ARCHIVE_URL: (200, archive_bytes)})
    with pytest.raises(FetchError, match='Expected version 8.0.5 was not found'):
        download_util.download_and_extract(
            url=ARCHIVE_URL,
            dest_dir_parent=str(tmp_path),
            expected_version='8.0.5',
            session=session)


def test_unsupported_archive_type(tmp_path: pathlib.Path) -> None:
    session = FakeSession({})
    with pytest.raises(FetchError, match='expected to end with'):
        download_util.download_and_extract(
            url='https://downloads.example.com/mongodb-8.0.4.rpm',
            dest_dir_parent=str(tmp_path),
            expected_version='8.0.4',
            session=session)
    assert session.requested_urls == []


def test_unsafe_member_rejected(tmp_path: pathlib.Path) -> None:
    archive_path = tmp_path / 'evil-1.0.tar.gz'
    with tarfile.open(str(archive_path), mode='w:gz') as tar:
        content = b'overwritten'
        info = tarfile.TarInfo('evil-1.0/../../outside.txt')
        info.size = len(content)
        tar.addfile(info, io.BytesIO(content))

    dest_dir = tmp_path / 'dest'
    with pytest.raises(FetchError, match='unsafe member path'):
        download_util.extract_archive(str(archive_path), str(dest_dir))
    assert not (tmp_path / 'outside.txt').exists()


@pytest.mark.parametrize('link_target', ['/etc/passwd', '../../../outside.txt', 'lib/../../../..'])
def test_symlink_outside_of_archive_rejected(
        tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch, link_target: str) -> None:
    # As on interpreters without tarfile extraction filters.
    monkeypatch.delattr(tarfile, 'tar_filter', raising=False)
    archive_path = tmp_path / 'evil-1.0.tar.gz'
    with tarfile.open(str(archive_path), mode='w:gz') as tar:
        info = tarfile.TarInfo('evil-1.0/bin/escape')
        info.type = tarfile.SYMTYPE
        info.linkname = link_target
        tar.addfile(info)

    dest_dir = tmp_path / 'dest'
    with pytest.raises(FetchError, match='symlink pointing outside'):
        download_util.extract_archive(str(archive_path), str(dest_dir))
    assert not os.path.lexists(dest_dir / 'evil-1.0' / 'bin' / 'escape')


def test_relative_symlink_inside_archive_allowed(tmp_path: pathlib.Path) -> None:
    archive_path = tmp_path / 'redis-7.4.0.tar.gz'
    with tarfile.open(str(archive_path), mode='w:gz') as tar:
        content = b'\x7fELF'
        lib_info = tarfile.TarInfo('redis-7.4.0/lib/libssl.so.3')
        lib_info.size = len(content)
        tar.addfile(lib_info, io.BytesIO(content))
        link_info = tarfile.TarInfo('redis-7.4.0/bin/libssl.so.3')
        link_info.type = tarfile.SYMTYPE
        link_info.linkname = '../lib/libssl.so.3'
        tar.addfile(link_info)

    extracted_dir = download_util.extract_archive(str(archive_path), str(tmp_path / 'dest'))
    assert os.readlink(os.path.join(extracted_dir, 'bin', 'libssl.so.3')) == '../lib/libssl.so.3'


def test_zip_symlink_outside_of_archive_rejected(tmp_path: pathlib.Path) -> None:
    archive_path = tmp_path / 'redis-stack-server-7.4.0-v3.monterey.arm64.zip'
    with zipfile.ZipFile(str(archive_path), 'w') as zip_file:
        link_info = zipfile.ZipInfo('redis-stack-server-7.4.0-v3/bin/redis-server')
        link_info.external_attr = (stat.S_IFLNK | 0o777) << 16
        zip_file.writestr(link_info, '/usr/local/bin/redis-server')

    dest_dir = tmp_path / 'dest'
    with pytest.raises(FetchError, match='symlink pointing outside'):
        download_util.extract_archive(str(archive_path), str(dest_dir))
    assert not os.path.lexists(dest_dir / 'redis-stack-server-7.4.0-v3' / 'bin' / 'redis-server')


def test_extract_zip_preserves_modes_and_symlinks(tmp_path: pathlib.Path) -> None:
    archive_path = tmp_path / 'redis-stack-server-7.4.0-v3.monterey.arm64.zip'
    with zipfile.ZipFile(str(archive_path), 'w') as zip_file:
        server_info = zipfile.ZipInfo('redis-stack-server-7.4.0-v3/bin/redis-server')
        server_info.external_attr = (stat.S_IFREG | 0o755) << 16
        zip_file.writestr(server_info, '#!/bin/sh\n')

        license_info = zipfile.ZipInfo('redis-stack-server-7.4.0-v3/share/LICENSE')
        license_info.external_attr = (stat.S_IFREG | 0o644) << 16
        zip_file.writestr(license_info, 'license\n')

        link_info = zipfile.ZipInfo('redis-stack-server-7.4.0-v3/bin/redis-check-rdb')
        link_info.external_attr = (stat.S_IFLNK | 0o777) << 16
        zip_file.writestr(link_info, 'redis-server')

    extracted_dir = download_util.extract_archive(str(archive_path), str(tmp_path / 'dest'))
    assert os.path.basename(extracted_dir) == 'redis-stack-server-7.4.0-v3'
    server_path = os.path.join(extracted_dir, 'bin', 'redis-server')
    assert stat.S_IMODE(os.stat(server_path).st_mode) == 0o755
    assert stat.S_IMODE(os.stat(os.path.join(extracted_dir, 'share', 'LICENSE')).st_mode) == 0o644
    assert os.readlink(os.path.join(extracted_dir, 'bin', 'redis-check-rdb')) == 'redis-server'


def test_several_top_level_entries(tmp_path: pathlib.Path) -> None:
    archive_path = tmp_path / 'flat-1.0.tar.gz'
    with tarfile.open(str(archive_path), mode='w:gz') as tar:
        for name in ['bin', 'lib']:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
    dest_dir = str(tmp_path / 'dest')
    assert download_util.extract_archive(str(archive_path), dest_dir) == dest_dir


def test_verify_postgres_source_version(tmp_path: pathlib.Path) -> None:
    write_file([
        "PACKAGE_NAME='PostgreSQL'",
        "PACKAGE_VERSION='17.5'",
    ], tmp_path / 'configure')
    download_util.verify_postgres_source_version(str(tmp_path), '17.5')
    with pytest.raises(FetchError, match="PACKAGE_VERSION='17.4'"):
        download_util.verify_postgres_source_version(str(tmp_path), '17.4')
    with pytest.raises(FetchError, match='does not contain a configure script'):
        download_util.verify_postgres_source_version(str(tmp_path / 'missing'), '17.5')
