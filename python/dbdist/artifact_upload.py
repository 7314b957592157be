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
Uploads archives to S3-compatible object storage.
"""

import dataclasses
import logging
import os
import time

from typing import Any, Optional

import boto3
import botocore.config
import botocore.exceptions

from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig

from dbdist.errors import UploadError
from dbdist.storage_config import StorageConfig


# Archives larger than this are uploaded in parts.
MULTIPART_THRESHOLD_BYTES = 64 * 1024 * 1024

# botocore's own retries are the only retries performed for uploads.
MAX_CLIENT_ATTEMPTS = 5

DEFAULT_REGION = 'us-east-1'

ARCHIVE_CONTENT_TYPE = 'application/gzip'


@dataclasses.dataclass
class UploadResult:
    """
    Result of uploading one archive.
    """
    bucket: str
    key: str
    size: int

    # Total time taken by the upload.
    elapsed_sec: float = 0.0

    etag: Optional[str] = None

    def __str__(self) -> str:
        return "s3://%s/%s (%d bytes, %.1f sec)" % (
            self.bucket, self.key, self.size, self.elapsed_sec)


def create_s3_client(config: StorageConfig) -> Any:
    session = boto3.session.Session(
        aws_access_key_id=config.access_key_id,
        aws_secret_access_key=config.secret_access_key,
        region_name=config.region or DEFAULT_REGION)
    return session.client(
        's3',
        endpoint_url=config.endpoint_url,
        config=botocore.config.Config(
            retries={'max_attempts': MAX_CLIENT_ATTEMPTS, 'mode': 'standard'}))


def upload_archive(
        client: Any,
        config: StorageConfig,
        archive_path: str,
        storage_key: str,
        multipart_threshold: int = MULTIPART_THRESHOLD_BYTES) -> UploadResult:
    """
    Uploads the archive at the given path to the configured bucket under storage_key, overwriting
    any existing object.
    """
    if not os.path.isfile(archive_path):
        raise UploadError("Archive to upload does not exist: %s" % archive_path)

    size = os.path.getsize(archive_path)
    start_time_sec = time.time()
    logging.info("Uploading %s (%d bytes) to s3://%s/%s", archive_path, size, config.bucket,
                 storage_key)
    etag: Optional[str] = None
    try:
        if size <= multipart_threshold:
            with open(archive_path, 'rb') as archive_file:
                response = client.put_object(
                    Bucket=config.bucket,
                    Key=storage_key,
                    Body=archive_file,
                    ContentType=ARCHIVE_CONTENT_TYPE)
            etag = response.get('ETag')
        else:
            client.upload_file(
                archive_path,
                config.bucket,
                storage_key,
                ExtraArgs={'ContentType': ARCHIVE_CONTENT_TYPE},
                Config=TransferConfig(multipart_threshold=multipart_threshold))
    except botocore.exceptions.ClientError as ex:
        error = ex.response.get('Error', {})
        status = ex.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        raise UploadError(
            "Failed to upload %s to s3://%s/%s: %s" % (
                archive_path, config.bucket, storage_key, error.get('Message') or ex),
            status=status,
            error_code=error.get('Code')) from ex
    except (botocore.exceptions.BotoCoreError, S3UploadFailedError) as ex:
        raise UploadError("Failed to upload %s to s3://%s/%s: %s" % (
            archive_path, config.bucket, storage_key, ex)) from ex

    result = UploadResult(
        bucket=config.bucket,
        key=storage_key,
        size=size,
        elapsed_sec=time.time() - start_time_sec,
        etag=etag)
    logging.info("Uploaded %s", result)
    return result
