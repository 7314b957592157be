#!/usr/bin/env python3

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
Builds PostgreSQL from source for the given architecture, makes the installation relocatable,
archives it and uploads the archive to object storage.
"""

import logging

from typing import List, Optional

from overrides import overrides

from dbdist.arg_util import arch_arg_type, platform_arg_type, version_arg_type
from dbdist.build_target import (
    Arch,
    BuildTarget,
    Database,
    Platform,
    get_host_arch,
    get_host_platform,
)
from dbdist.errors import UsageError
from dbdist.packaging_pipeline import PostgresPackagingPipeline, work_dir_context
from dbdist.storage_config import StorageConfig, load_storage_config
from dbdist.tool_base import DbDistToolBase


DEFAULT_POSTGRES_VERSION = '17.5'


class PostgresPackagingTool(DbDistToolBase):
    target: BuildTarget
    host_arch: Arch
    storage_config: Optional[StorageConfig]

    @overrides
    def add_command_line_args(self) -> None:
        self.arg_parser.add_argument(
            'arch',
            type=arch_arg_type,
            help='Target architecture: %s' % ', '.join(arch.value for arch in Arch))
        self.arg_parser.add_argument(
            '--pg_version',
            type=version_arg_type,
            default=DEFAULT_POSTGRES_VERSION,
            help='PostgreSQL version to build. Default: %(default)s')
        self.arg_parser.add_argument(
            '--platform',
            type=platform_arg_type,
            help='Target platform. Must match the host platform. Defaults to the host platform.')

    @overrides
    def validate_and_process_args(self) -> None:
        try:
            host_platform = get_host_platform()
            self.host_arch = get_host_arch()
        except ValueError as ex:
            raise UsageError(str(ex)) from ex
        target_platform: Platform = self.args.platform or host_platform
        if target_platform != host_platform:
            raise UsageError(
                "Cannot build %s binaries on a %s host: cross-compiling between operating "
                "systems is not supported" % (target_platform.value, host_platform.value))
        self.target = BuildTarget(
            database=Database.POSTGRESQL,
            version=self.args.pg_version,
            platform=target_platform,
            arch=self.args.arch)

        # Credentials are validated before anything is downloaded.
        if self.args.skip_upload:
            self.storage_config = None
        else:
            self.storage_config = load_storage_config(self.args.credentials_file)
        logging.info("Packaging %s, storage key: %s", self.target, self.target.storage_key())

    @overrides
    def run_impl(self) -> None:
        with work_dir_context(
                prefix='dbdist_postgres_',
                parent_dir=self.args.work_dir,
                keep=self.args.keep_work_dir) as work_dir:
            pipeline = PostgresPackagingPipeline(
                target=self.target,
                work_dir=work_dir,
                storage_config=self.storage_config,
                host_arch=self.host_arch,
                output_dir=self.args.output_dir)
            result = pipeline.run()
        logging.info("Successfully packaged %s: %s", self.target, result)


def main(argv: Optional[List[str]] = None) -> None:
    PostgresPackagingTool().run(argv)


if __name__ == '__main__':
    main()
