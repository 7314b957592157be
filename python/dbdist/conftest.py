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
Shared test fixtures for the packaging tools.
"""

import threading

from typing import Any, Dict, List

import pytest

from dbdist import artifact_upload


STORAGE_ENV = {
    'DBDIST_S3_ACCESS_KEY_ID': 'AKIDEXAMPLE',
    'DBDIST_S3_SECRET_ACCESS_KEY': 'very-secret',
    'DBDIST_S3_BUCKET': 'db-binaries',
    'DBDIST_S3_ENDPOINT_URL': 'https://s3.example.com',
}


class FakeS3Client:
    """
    Records uploaded objects in memory. Shared by all pipelines of a test, possibly running in
    several threads.
    """
    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.put_object_calls: List[Dict[str, Any]] = []
        self.lock = threading.Lock()

    def put_object(self, Bucket: str, Key: str, Body: Any, ContentType: str) -> Dict[str, Any]:
        data = Body.read()
        with self.lock:
            self.objects['%s/%s' % (Bucket, Key)] = data
            self.put_object_calls.append(dict(Bucket=Bucket, Key=Key, ContentType=ContentType))
        return {'ETag': '"%d"' % len(data)}


@pytest.fixture
def storage_env(monkeypatch: pytest.MonkeyPatch) -> Dict[str, str]:
    """Object storage credentials in the environment, and no credentials file."""
    monkeypatch.delenv('DBDIST_CREDENTIALS_FILE', raising=False)
    monkeypatch.delenv('DBDIST_S3_REGION', raising=False)
    for name, value in STORAGE_ENV.items():
        monkeypatch.setenv(name, value)
    return dict(STORAGE_ENV)


@pytest.fixture
def fake_s3_client(monkeypatch: pytest.MonkeyPatch) -> FakeS3Client:
    """Replaces the S3 client used by the pipelines."""
    client = FakeS3Client()
    monkeypatch.setattr(artifact_upload, 'create_s3_client', lambda config: client)
    return client
