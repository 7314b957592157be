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
Credentials and location of the S3-compatible object storage that archives are uploaded to.
"""

import logging
import os

from dataclasses import dataclass, fields
from typing import Any, Dict, List, Mapping, Optional

from dbdist.common_util import load_yaml_file
from dbdist.errors import ConfigError


ENV_VAR_PREFIX = 'DBDIST_S3_'

REQUIRED_FIELDS = ['access_key_id', 'secret_access_key', 'bucket', 'endpoint_url']
OPTIONAL_FIELDS = ['region']


@dataclass(frozen=True)
class StorageConfig:
    access_key_id: str
    secret_access_key: str
    bucket: str
    endpoint_url: str
    region: Optional[str] = None

    def __repr__(self) -> str:
        # Never print the secret key in logs.
        return 'StorageConfig(bucket=%r, endpoint_url=%r, region=%r)' % (
            self.bucket, self.endpoint_url, self.region)

    __str__ = __repr__


def get_env_var_name(field_name: str) -> str:
    """
    >>> get_env_var_name('access_key_id')
    'DBDIST_S3_ACCESS_KEY_ID'
    """
    return ENV_VAR_PREFIX + field_name.upper()


def storage_config_from_dict(values: Mapping[str, Any], source_description: str) -> StorageConfig:
    known_fields = {f.name for f in fields(StorageConfig)}
    unknown_fields = sorted(set(values.keys()) - known_fields)
    if unknown_fields:
        raise ConfigError("Unknown storage configuration fields in %s: %s" % (
            source_description, ', '.join(unknown_fields)))

    missing_fields: List[str] = []
    kwargs: Dict[str, Any] = {}
    for field_name in REQUIRED_FIELDS + OPTIONAL_FIELDS:
        value = values.get(field_name)
        if value is not None and not isinstance(value, str):
            raise ConfigError("Storage configuration field %s in %s must be a string, got: %s" % (
                field_name, source_description, type(value).__name__))
        if value is not None:
            value = value.strip()
        if not value:
            if field_name in REQUIRED_FIELDS:
                missing_fields.append(field_name)
            continue
        kwargs[field_name] = value

    if missing_fields:
        raise ConfigError("Missing or empty storage configuration fields in %s: %s" % (
            source_description, ', '.join(missing_fields)))
    return StorageConfig(**kwargs)


def load_storage_config_from_file(file_path: str) -> StorageConfig:
    if not os.path.isfile(file_path):
        raise ConfigError("Credentials file does not exist: %s" % file_path)
    # JSON is a subset of YAML, so the same loader handles both formats.
    try:
        values = load_yaml_file(file_path)
    except Exception as ex:
        raise ConfigError("Failed to parse credentials file %s: %s" % (file_path, ex)) from ex
    if not isinstance(values, dict):
        raise ConfigError("Credentials file %s must contain a mapping, got: %s" % (
            file_path, type(values).__name__))
    return storage_config_from_dict(values, 'credentials file %s' % file_path)


def load_storage_config_from_env(env: Optional[Mapping[str, str]] = None) -> StorageConfig:
    if env is None:
        env = os.environ
    values = {}
    for field_name in REQUIRED_FIELDS + OPTIONAL_FIELDS:
        value = env.get(get_env_var_name(field_name))
        if value is not None:
            values[field_name] = value
    try:
        return storage_config_from_dict(values, 'environment variables')
    except ConfigError as ex:
        raise ConfigError("%s. Set the %s* environment variables or specify a credentials "
                          "file." % (ex, ENV_VAR_PREFIX)) from ex


def load_storage_config(
        credentials_file: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None) -> StorageConfig:
    """
    Loads the storage configuration from the given credentials file, or from the environment if
    no file is given. Raises ConfigError if any required field is missing or empty.
    """
    if credentials_file:
        config = load_storage_config_from_file(credentials_file)
        logging.info("Loaded storage configuration from %s: %s", credentials_file, config)
    else:
        config = load_storage_config_from_env(env)
        logging.info("Loaded storage configuration from environment variables: %s", config)
    return config
