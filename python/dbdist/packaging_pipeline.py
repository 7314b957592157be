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
Steps shared by the packaging pipelines: making a bundle relocatable, archiving it, and uploading
the archive under the storage key of its build target.
"""

import contextlib
import logging
import os
import shutil
import time

from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Type, TypeVar

from dbdist import archive_util, artifact_upload, download_util, strip_util
from dbdist.artifact_upload import UploadResult
from dbdist.build_matrix import MatrixEntry
from dbdist.build_postgres import PostgresBuilder
from dbdist.build_target import Arch, BuildTarget
from dbdist.common_util import create_temp_dir
from dbdist.errors import (
    ArchiveError,
    CompileError,
    FetchError,
    NonPortablePathError,
    PackagingError,
    StripError,
    UploadError,
)
from dbdist.file_util import mkdir_p
from dbdist.library_packager import create_library_packager
from dbdist.storage_config import StorageConfig


T = TypeVar('T')


@dataclass
class PipelineResult:
    target: BuildTarget
    storage_key: str
    archive_size: int

    # None if uploading was skipped.
    upload: Optional[UploadResult] = None

    # Copy of the archive kept in the output directory, if any.
    output_path: Optional[str] = None

    def __str__(self) -> str:
        if self.upload is not None:
            return str(self.upload)
        return "%s (%d bytes, not uploaded)" % (self.storage_key, self.archive_size)


@contextlib.contextmanager
def work_dir_context(
        prefix: str,
        parent_dir: Optional[str] = None,
        keep: bool = False) -> Iterator[str]:
    """
    Creates a temporary working directory and deletes it on exit, unless keep is True.
    """
    work_dir = create_temp_dir(prefix=prefix, parent_dir=parent_dir)
    try:
        yield work_dir
    finally:
        if keep:
            logging.info("Keeping work directory %s", work_dir)
        else:
            logging.debug("Deleting work directory %s", work_dir)
            shutil.rmtree(work_dir, ignore_errors=True)


class TargetPipeline:
    """
    Produces and uploads the archive for one build target. Every step runs through run_step, which
    reports failures as the step's error type.
    """

    target: BuildTarget
    work_dir: str

    # None if uploading is skipped.
    storage_config: Optional[StorageConfig]

    output_dir: Optional[str]

    def __init__(
            self,
            target: BuildTarget,
            work_dir: str,
            storage_config: Optional[StorageConfig],
            output_dir: Optional[str] = None) -> None:
        self.target = target
        self.work_dir = work_dir
        self.storage_config = storage_config
        self.output_dir = output_dir

    def run_step(self, error_class: Type[PackagingError], step_fn: Callable[[], T]) -> T:
        """
        Runs one pipeline step. A PackagingError raised by the step propagates as is, any other
        exception is wrapped in the given error class.
        """
        step = error_class.STEP
        logging.info("[%s] Running the %s step", self.target, step)
        start_time_sec = time.time()
        try:
            result = step_fn()
        except PackagingError:
            logging.error("[%s] The %s step failed", self.target, step)
            raise
        except Exception as ex:
            logging.error("[%s] The %s step failed: %s", self.target, step, ex)
            raise error_class("The %s step failed for %s: %s" % (step, self.target, ex)) from ex
        logging.info("[%s] The %s step took %.1f sec", self.target, step,
                     time.time() - start_time_sec)
        return result

    def make_relocatable(self, bundle_dir: str, build_dir: Optional[str] = None) -> None:
        def relocate() -> None:
            packager = create_library_packager(self.target.platform, bundle_dir, build_dir)
            packager.package_binaries()
            packager.verify_portability()

        self.run_step(NonPortablePathError, relocate)

    def get_archive_path(self) -> str:
        return os.path.join(self.work_dir, '%s-%s-%s-%s.tar.gz' % (
            self.target.database.value,
            self.target.version,
            self.target.platform.value,
            self.target.arch.value))

    def create_archive(self, bundle_dir: str) -> str:
        def archive() -> str:
            archive_path = archive_util.create_tarball(bundle_dir, self.get_archive_path())
            if not archive_util.list_tarball_members(archive_path):
                raise ArchiveError("Archive %s is empty, nothing was packaged from %s" % (
                    archive_path, bundle_dir))
            return archive_path

        return self.run_step(ArchiveError, archive)

    def keep_archive_copy(self, archive_path: str) -> Optional[str]:
        if not self.output_dir:
            return None
        output_path = os.path.join(self.output_dir, self.target.storage_key())
        mkdir_p(os.path.dirname(output_path))
        shutil.copyfile(archive_path, output_path)
        logging.info("[%s] Copied archive to %s", self.target, output_path)
        return output_path

    def upload(self, archive_path: str) -> Optional[UploadResult]:
        storage_config = self.storage_config
        if storage_config is None:
            logging.info("[%s] Skipping upload of %s", self.target, archive_path)
            return None

        def upload_step() -> UploadResult:
            client = artifact_upload.create_s3_client(storage_config)
            return artifact_upload.upload_archive(
                client, storage_config, archive_path, self.target.storage_key())

        return self.run_step(UploadError, upload_step)

    def publish(self, bundle_dir: str) -> PipelineResult:
        """
        Archives the bundle and uploads the archive.
        """
        archive_path = self.create_archive(bundle_dir)
        output_path = self.keep_archive_copy(archive_path)
        upload_result = self.upload(archive_path)
        return PipelineResult(
            target=self.target,
            storage_key=self.target.storage_key(),
            archive_size=os.path.getsize(archive_path),
            upload=upload_result,
            output_path=output_path)

    def run(self) -> PipelineResult:
        raise NotImplementedError()


class PostgresPackagingPipeline(TargetPipeline):
    """
    Downloads the PostgreSQL source, compiles it, and publishes a relocatable, stripped build.
    """

    host_arch: Arch

    def __init__(
            self,
            target: BuildTarget,
            work_dir: str,
            storage_config: Optional[StorageConfig],
            host_arch: Arch,
            output_dir: Optional[str] = None) -> None:
        super().__init__(target, work_dir, storage_config, output_dir)
        self.host_arch = host_arch

    def fetch(self) -> str:
        return self.run_step(
            FetchError,
            lambda: download_util.download_postgres_source(self.target.version, self.work_dir))

    def compile(self, src_dir: str) -> str:
        install_dir = os.path.join(self.work_dir, 'install')
        return self.run_step(
            CompileError,
            lambda: PostgresBuilder(self.target, src_dir, install_dir, self.host_arch).build())

    def copy_to_bundle(self, install_dir: str) -> str:
        bundle_dir = os.path.join(self.work_dir, 'bundle')
        logging.info("[%s] Copying %s to %s", self.target, install_dir, bundle_dir)
        shutil.copytree(install_dir, bundle_dir, symlinks=True)
        return bundle_dir

    def strip(self, bundle_dir: str) -> None:
        self.run_step(
            StripError,
            lambda: strip_util.strip_debug_symbols(bundle_dir, self.target, self.host_arch))

    def run(self) -> PipelineResult:
        start_time_sec = time.time()
        src_dir = self.fetch()
        install_dir = self.compile(src_dir)
        bundle_dir = self.run_step(NonPortablePathError, lambda: self.copy_to_bundle(install_dir))
        self.make_relocatable(bundle_dir, build_dir=install_dir)
        self.strip(bundle_dir)
        result = self.publish(bundle_dir)
        logging.info("[%s] Packaging took %.1f sec", self.target, time.time() - start_time_sec)
        return result


class PrebuiltPackagingPipeline(TargetPipeline):
    """
    Repackages a vendor's pre-built binary archive, optionally making it relocatable.
    """

    entry: MatrixEntry

    def __init__(
            self,
            entry: MatrixEntry,
            work_dir: str,
            storage_config: Optional[StorageConfig],
            output_dir: Optional[str] = None) -> None:
        super().__init__(entry.target, work_dir, storage_config, output_dir)
        self.entry = entry

    def fetch(self) -> str:
        return self.run_step(
            FetchError,
            lambda: download_util.download_and_extract(
                url=self.entry.resolved_url(),
                dest_dir_parent=self.work_dir,
                expected_version=self.target.version,
                checksum_url=self.entry.resolved_checksum_url()))

    def run(self) -> PipelineResult:
        start_time_sec = time.time()
        bundle_dir = self.fetch()
        if self.entry.relocate:
            self.make_relocatable(bundle_dir)
        else:
            logging.info("[%s] Relocation is not enabled, keeping the vendor's load paths",
                         self.target)
        result = self.publish(bundle_dir)
        logging.info("[%s] Packaging took %.1f sec", self.target, time.time() - start_time_sec)
        return result
