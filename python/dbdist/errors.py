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
Errors raised by the packaging pipelines. Each error class names the pipeline step it comes from,
so that the message shown to the user identifies the failed step.
"""

from typing import List, Optional, Tuple

from dbdist.tool_base import UserFriendlyToolError


class PackagingError(UserFriendlyToolError):
    """Base class for all errors reported by the packaging tools."""
    STEP = 'packaging'

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message, exit_code=exit_code)
        self.step = self.STEP


class FetchError(PackagingError):
    STEP = 'fetch'

    def __init__(
            self,
            message: str,
            url: Optional[str] = None,
            status: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class CompileError(PackagingError):
    STEP = 'compile'

    def __init__(
            self,
            message: str,
            exit_code: Optional[int] = None,
            log_tail: str = '') -> None:
        full_message = message
        if exit_code is not None:
            full_message += ' (exit code %d)' % exit_code
        if log_tail:
            full_message += '. Last lines of the build log:\n' + log_tail
        super().__init__(full_message)
        # The exit code of the failed toolchain command, not of this process.
        self.tool_exit_code = exit_code
        self.log_tail = log_tail


class NonPortablePathError(PackagingError):
    STEP = 'relocate'

    def __init__(
            self,
            message: str,
            non_portable_paths: Optional[List[Tuple[str, str]]] = None) -> None:
        self.non_portable_paths = non_portable_paths or []
        if self.non_portable_paths:
            message += ':\n' + '\n'.join(
                '    %s: %s' % (file_path, entry) for file_path, entry in self.non_portable_paths)
        super().__init__(message)


class StripError(CompileError):
    STEP = 'strip'


class ArchiveError(PackagingError):
    STEP = 'archive'


class UploadError(PackagingError):
    STEP = 'upload'

    def __init__(
            self,
            message: str,
            status: Optional[int] = None,
            error_code: Optional[str] = None) -> None:
        details = []
        if status is not None:
            details.append('HTTP status %d' % status)
        if error_code:
            details.append('error code %s' % error_code)
        if details:
            message += ' (%s)' % ', '.join(details)
        super().__init__(message)
        self.status = status
        self.error_code = error_code


class ConfigError(PackagingError):
    STEP = 'config'


class UsageError(PackagingError):
    STEP = 'usage'

    def __init__(self, message: str) -> None:
        super().__init__(message, exit_code=2)
