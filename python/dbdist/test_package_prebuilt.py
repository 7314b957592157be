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

import io
import os
import pathlib
import tarfile

from typing import Any, Dict, List, Tuple

import pytest

from dbdist import download_util, package_prebuilt
from dbdist.build_matrix import get_build_matrix_file_path
from dbdist.build_target import Platform
from dbdist.file_util import read_file, write_file


MONGODB_LINUX_URL = 'https://downloads.example.com/mongodb-linux-x86_64-ubuntu2204-8.0.4.tgz'
MONGODB_MACOS_URL = 'https://downloads.example.com/mongodb-macos-arm64-8.0.4.tgz'
REDIS_LINUX_URL = 'https://downloads.example.com/redis-stack-server-7.4.0-v3.jammy.arm64.tar.gz'


def create_tarball_bytes(top_level_dir: str, file_names: List[str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w:gz') as tar:
        for file_name in file_names:
            content = ('%s\n' % file_name).encode('utf-8')
            info = tarfile.TarInfo('%s/%s' % (top_level_dir, file_name))
            info.size = len(content)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


class FakeResponse:
    def __init__(self, status_code: int, content: bytes) -> None:
        self.status_code = status_code
        self.content = content

    def iter_content(self, chunk_size: int) -> Any:
        yield self.content

    def close(self) -> None:
        pass


class FakeDownloadServer:
    def __init__(self, responses: Dict[str, Tuple[int, bytes]]) -> None:
        self.responses = responses
        self.requested_urls: List[str] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.requested_urls.append(url)
        status_code, content = self.responses.get(url, (404, b'Not Found'))
        return FakeResponse(status_code, content)


@pytest.fixture
def download_server(monkeypatch: pytest.MonkeyPatch) -> FakeDownloadServer:
    server = FakeDownloadServer({
        MONGODB_LINUX_URL: (200, create_tarball_bytes(
            'mongodb-linux-x86_64-ubuntu2204-8.0.4', ['bin/mongod', 'bin/mongos'])),
        REDIS_LINUX_URL: (200, create_tarball_bytes(
            'redis-stack-server-7.4.0-v3', ['bin/redis-server', 'bin/redis-cli'])),
    })
    monkeypatch.setattr(download_util.requests, 'get', server.get)
    return server


def write_matrix(matrix_path: pathlib.Path) -> str:
    write_file([
        'entries:',
        '  - database: mongodb',
        '    version: "8.0.4"',
        '    platform: linux',
        '    arch: x86_64',
        '    url: https://downloads.example.com/mongodb-linux-x86_64-ubuntu2204-{version}.tgz',
        '  - database: mongodb',
        '    version: "8.0.4"',
        '    platform: macos',
        '    arch: arm64',
        '    url: https://downloads.example.com/mongodb-macos-arm64-{version}.tgz',
        '  - database: redis',
        '    version: "7.4.0-v3"',
        '    platform: linux',
        '    arch: arm64',
        '    url: https://downloads.example.com/redis-stack-server-{version}.jammy.arm64.tar.gz',
    ], matrix_path)
    return str(matrix_path)


def test_one_failed_entry_does_not_stop_others(
        tmp_path: pathlib.Path,
        download_server: FakeDownloadServer,
        storage_env: Dict[str, str],
        fake_s3_client: Any) -> None:
    matrix_path = write_matrix(tmp_path / 'build_matrix.yml')
    summary_path = tmp_path / 'summary.txt'
    with pytest.raises(SystemExit) as exc_info:
        package_prebuilt.main([
            '--matrix_file', matrix_path,
            '--work_dir', str(tmp_path / 'work'),
            '--summary_file', str(summary_path),
        ])
    assert exc_info.value.code == 1

    assert sorted(download_server.requested_urls) == sorted([
        MONGODB_LINUX_URL, MONGODB_MACOS_URL, REDIS_LINUX_URL])
    assert sorted(fake_s3_client.objects) == [
        'db-binaries/mongodb/8/linux/x86_64.tar.gz',
        'db-binaries/redis/7/linux/arm64.tar.gz',
    ]

    summary = read_file(summary_path)
    assert 'Tasks succeeded: 2 of 3' in summary
    assert 'Tasks failed: 1 of 3' in summary
    assert 'FAILED  mongodb 8.0.4 (macos/arm64): fetch step:' in summary
    assert 'HTTP status 404' in summary
    assert 'OK      redis 7.4.0-v3 (linux/arm64): s3://db-binaries/redis/7/linux/arm64.tar.gz' \
        in summary

    # Per-entry work directories are deleted.
    assert os.listdir(tmp_path / 'work') == []


def test_uploaded_archive_strips_top_level_dir(
        tmp_path: pathlib.Path,
        download_server: FakeDownloadServer,
        storage_env: Dict[str, str],
        fake_s3_client: Any) -> None:
    matrix_path = write_matrix(tmp_path / 'build_matrix.yml')
    package_prebuilt.main([
        '--matrix_file', matrix_path, '--only', 'redis', '--parallelism', '2'])

    assert download_server.requested_urls == [REDIS_LINUX_URL]
    archive_bytes = fake_s3_client.objects['db-binaries/redis/7/linux/arm64.tar.gz']
    with tarfile.open(fileobj=io.BytesIO(archive_bytes)) as tar:
        assert sorted(tar.getnames()) == ['bin', 'bin/redis-cli', 'bin/redis-server']


def test_invalid_matrix_fails_before_downloading(
        tmp_path: pathlib.Path,
        download_server: FakeDownloadServer,
        storage_env: Dict[str, str],
        fake_s3_client: Any) -> None:
    matrix_path = tmp_path / 'build_matrix.yml'
    write_file([
        'entries:',
        '  - database: mongodb',
        '    version: "8.0.4"',
        '    platform: windows',
        '    arch: x86_64',
        '    url: https://downloads.example.com/mongodb-windows-x86_64-{version}.zip',
    ], matrix_path)
    with pytest.raises(SystemExit) as exc_info:
        package_prebuilt.main(['--matrix_file', str(matrix_path)])
    assert exc_info.value.code == 1
    assert download_server.requested_urls == []


def test_missing_credentials_fail_before_downloading(
        tmp_path: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
        download_server: FakeDownloadServer,
        storage_env: Dict[str, str],
        fake_s3_client: Any) -> None:
    monkeypatch.setenv('DBDIST_S3_BUCKET', '')
    with pytest.raises(SystemExit) as exc_info:
        package_prebuilt.main(['--matrix_file', write_matrix(tmp_path / 'build_matrix.yml')])
    assert exc_info.value.code == 1
    assert download_server.requested_urls == []
    assert fake_s3_client.objects == {}


def test_skip_upload_with_output_dir(
        tmp_path: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
        download_server: FakeDownloadServer,
        fake_s3_client: Any) -> None:
    monkeypatch.delenv('DBDIST_S3_ACCESS_KEY_ID', raising=False)
    monkeypatch.delenv('DBDIST_CREDENTIALS_FILE', raising=False)
    output_dir = tmp_path / 'output'
    # The macOS entry still fails with a 404.
    with pytest.raises(SystemExit) as exc_info:
        package_prebuilt.main([
            '--matrix_file', write_matrix(tmp_path / 'build_matrix.yml'),
            '--only', 'mongodb',
            '--skip_upload',
            '--output_dir', str(output_dir),
        ])
    assert exc_info.value.code == 1
    assert fake_s3_client.objects == {}
    archive_rel_paths = [
        str(path.relative_to(output_dir)) for path in output_dir.rglob('*.tar.gz')]
    assert archive_rel_paths == [os.path.join('mongodb', '8', 'linux', 'x86_64.tar.gz')]


def write_relocating_matrix(matrix_path: pathlib.Path) -> str:
    write_file([
        'entries:',
        '  - database: redis',
        '    version: "7.4.0-v3"',
        '    platform: macos',
        '    arch: arm64',
        '    url: https://downloads.example.com/redis-stack-server-{version}.monterey.arm64.zip',
        '    relocate: true',
        '  - database: redis',
        '    version: "7.4.0-v3"',
        '    platform: linux',
        '    arch: arm64',
        '    url: https://downloads.example.com/redis-stack-server-{version}.jammy.arm64.tar.gz',
    ], matrix_path)
    return str(matrix_path)


def test_relocating_other_platform_fails_before_downloading(
        tmp_path: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
        download_server: FakeDownloadServer,
        storage_env: Dict[str, str],
        fake_s3_client: Any) -> None:
    monkeypatch.setattr(package_prebuilt, 'get_host_platform', lambda: Platform.LINUX)
    for matrix_file in [
            write_relocating_matrix(tmp_path / 'build_matrix.yml'),
            get_build_matrix_file_path()]:
        with pytest.raises(SystemExit) as exc_info:
            package_prebuilt.main(['--matrix_file', matrix_file])
        assert exc_info.value.code == 2
    assert download_server.requested_urls == []
    assert fake_s3_client.objects == {}


def test_platform_filter_selects_entries_for_host(
        tmp_path: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
        download_server: FakeDownloadServer,
        storage_env: Dict[str, str],
        fake_s3_client: Any) -> None:
    monkeypatch.setattr(package_prebuilt, 'get_host_platform', lambda: Platform.LINUX)
    package_prebuilt.main([
        '--matrix_file', write_relocating_matrix(tmp_path / 'build_matrix.yml'),
        '--platform', 'linux',
    ])
    assert download_server.requested_urls == [REDIS_LINUX_URL]
    assert sorted(fake_s3_client.objects) == ['db-binaries/redis/7/linux/arm64.tar.gz']


def test_matrix_file_required_outside_of_source_checkout(
        tmp_path: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
        download_server: FakeDownloadServer,
        storage_env: Dict[str, str]) -> None:
    monkeypatch.setattr(
        package_prebuilt, 'get_build_matrix_file_path',
        lambda: str(tmp_path / 'site-packages' / 'build-support' / 'build_matrix.yml'))
    with pytest.raises(SystemExit) as exc_info:
        package_prebuilt.main([])
    assert exc_info.value.code == 2
    assert download_server.requested_urls == []
