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
Repackages the pre-built vendor archives listed in the build matrix and uploads them to object
storage. A failure of one matrix entry does not stop the others.
"""

import logging
import os

from typing import Any, List, Optional

from overrides import overrides

from dbdist.arg_util import database_arg_type, platform_arg_type, positive_int_arg_type
from dbdist.build_matrix import (
    MatrixEntry,
    filter_matrix_entries,
    get_build_matrix_file_path,
    load_build_matrix,
)
from dbdist.build_target import get_host_platform
from dbdist.errors import PackagingError, UsageError
from dbdist.packaging_pipeline import (
    PipelineResult,
    PrebuiltPackagingPipeline,
    work_dir_context,
)
from dbdist.parallel_task_runner import ParallelTaskRunner
from dbdist.storage_config import StorageConfig, load_storage_config
from dbdist.tool_base import DbDistToolBase


class MatrixTaskRunner(ParallelTaskRunner):
    """
    Runs the packaging pipeline for each matrix entry, each in its own work directory.
    """

    storage_config: Optional[StorageConfig]
    work_dir_parent: Optional[str]
    keep_work_dirs: bool
    output_dir: Optional[str]

    def __init__(
            self,
            parallelism: int,
            storage_config: Optional[StorageConfig],
            work_dir_parent: Optional[str] = None,
            keep_work_dirs: bool = False,
            output_dir: Optional[str] = None) -> None:
        super().__init__(
            parallelism=parallelism,
            task_type=MatrixEntry,
            task_result_type=PipelineResult)
        self.storage_config = storage_config
        self.work_dir_parent = work_dir_parent
        self.keep_work_dirs = keep_work_dirs
        self.output_dir = output_dir

    def run_task(self, task: Any) -> Any:
        self.assert_task_type(task)
        entry: MatrixEntry = task
        target = entry.target
        prefix = 'dbdist_%s_%s_%s_%s_' % (
            target.database.value, target.version, target.platform.value, target.arch.value)
        with work_dir_context(
                prefix=prefix,
                parent_dir=self.work_dir_parent,
                keep=self.keep_work_dirs) as work_dir:
            return PrebuiltPackagingPipeline(
                entry=entry,
                work_dir=work_dir,
                storage_config=self.storage_config,
                output_dir=self.output_dir).run()

    def report_task_exception(self, task: Any, exc: Exception) -> str:
        if isinstance(exc, PackagingError):
            # Expected failures are reported without a stack trace.
            logging.error("[%s] Failed at the %s step: %s", task, exc.step, exc)
            return "%s step: %s" % (exc.step, exc)
        return super().report_task_exception(task, exc)

    def report_task_result(self, task: Any, task_result: Any, succeeded: bool) -> None:
        logging.info("[%s] Done: %s", task, task_result)


class PrebuiltPackagingTool(DbDistToolBase):
    entries: List[MatrixEntry]
    storage_config: Optional[StorageConfig]

    @overrides
    def add_command_line_args(self) -> None:
        default_matrix_file = get_build_matrix_file_path()
        if os.path.exists(default_matrix_file):
            self.arg_parser.add_argument(
                '--matrix_file',
                default=default_matrix_file,
                help='Build matrix YAML file. Default: %(default)s')
        else:
            # Not running from a source checkout, e.g. after a non-editable install.
            self.arg_parser.add_argument(
                '--matrix_file',
                required=True,
                help='Build matrix YAML file.')
        self.arg_parser.add_argument(
            '--only',
            type=database_arg_type,
            action='append',
            help='Only package entries for this database. Can be specified multiple times.')
        self.arg_parser.add_argument(
            '--platform',
            type=platform_arg_type,
            action='append',
            help='Only package entries for this platform. Can be specified multiple times.')
        self.arg_parser.add_argument(
            '--parallelism',
            type=positive_int_arg_type,
            default=1,
            help='Number of matrix entries to package concurrently. Default: %(default)s')
        self.arg_parser.add_argument(
            '--summary_file',
            help='Also write the summary of the run to this file.')

    @overrides
    def validate_and_process_args(self) -> None:
        # The whole matrix and the credentials are validated before anything is downloaded.
        entries = load_build_matrix(self.args.matrix_file)
        self.entries = filter_matrix_entries(
            entries,
            set(self.args.only) if self.args.only else None,
            set(self.args.platform) if self.args.platform else None)
        if not self.entries:
            logging.warning("No build matrix entries selected")
        self.check_relocation_host()

        if self.args.skip_upload:
            self.storage_config = None
        else:
            self.storage_config = load_storage_config(self.args.credentials_file)

    def check_relocation_host(self) -> None:
        """
        Load paths of binaries can only be rewritten with the tools of their own operating system.
        """
        relocated_entries = [entry for entry in self.entries if entry.relocate]
        if not relocated_entries:
            return
        try:
            host_platform = get_host_platform()
        except ValueError as ex:
            raise UsageError(str(ex)) from ex
        foreign_entries = [
            entry for entry in relocated_entries if entry.target.platform != host_platform
        ]
        if foreign_entries:
            raise UsageError(
                "Cannot relocate binaries of another operating system on a %s host: %s. "
                "Use --platform %s to select the entries for this host." % (
                    host_platform.value,
                    ', '.join(str(entry) for entry in foreign_entries),
                    host_platform.value))

    @overrides
    def run_impl(self) -> None:
        logging.info("Packaging %d build matrix entries with parallelism %d",
                     len(self.entries), self.args.parallelism)
        runner = MatrixTaskRunner(
            parallelism=self.args.parallelism,
            storage_config=self.storage_config,
            work_dir_parent=self.args.work_dir,
            keep_work_dirs=self.args.keep_work_dir,
            output_dir=self.args.output_dir)
        outcomes = runner.run_tasks(self.entries)

        report = runner.create_summary_report(outcomes)
        logging.info("Summary:\n%s", report.as_str())
        if self.args.summary_file:
            report.write_to_file(self.args.summary_file)

        num_failed = len([outcome for outcome in outcomes if not outcome.succeeded])
        if num_failed:
            raise PackagingError(
                "Failed to package %d of %d build matrix entries" % (num_failed, len(outcomes)))


def main(argv: Optional[List[str]] = None) -> None:
    PrebuiltPackagingTool().run(argv)


if __name__ == '__main__':
    main()
