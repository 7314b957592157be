#
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
This module provides utilities for running commands.
"""

import os
import subprocess
import logging

from typing import Union, List, Optional, Dict

from dbdist.common_util import shlex_join


class ProgramResult:
    cmd_line: List[str]
    returncode: int
    stdout: str
    stderr: str

    # Error message that would have been raised if error_ok was False.
    error_msg: Optional[str]

    def __init__(
            self,
            cmd_line: List[str],
            returncode: int,
            stdout: str,
            stderr: str,
            error_msg: Optional[str]) -> None:
        self.cmd_line = cmd_line
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.error_msg = error_msg

    def __str__(self) -> str:
        return ('ProgramResult('
                'cmd_line=%s, '
                'returncode=%d, '
                'stdout=%s, '
                'stderr=%s, '
                'error_msg=%s)') % (
            self.cmd_line, self.returncode, self.stdout, self.stderr, self.error_msg
        )

    def success(self) -> bool:
        return self.returncode == 0

    def failure(self) -> bool:
        return self.returncode != 0

    def combined_output(self) -> str:
        return '\n'.join(s for s in [self.stdout, self.stderr] if s)

    def output_tail(self, max_lines: int) -> str:
        """
        Returns the last max_lines lines of the combined standard output and standard error.
        """
        lines = self.combined_output().split('\n')
        return '\n'.join(lines[-max_lines:])


def trim_output(output: Union[str, bytes], max_lines: int) -> str:
    """
    >>> trim_output('a\\nb\\nc', 2)
    'a\\nb\\n(1 lines skipped)'
    """
    if isinstance(output, bytes):
        output = output.decode('utf-8', errors='replace')
    lines = output.split("\n")
    if len(lines) <= max_lines:
        return output
    return "\n".join(lines[:max_lines] + ['({} lines skipped)'.format(len(lines) - max_lines)])


def run_program(
        args: Union[str, List[str]],
        error_ok: bool = False,
        max_error_lines: int = 100,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        log_command: bool = False) -> ProgramResult:
    """
    Run the given program identified by its argument list, and return a ProgramResult object.

    @param error_ok False to raise an exception on errors.
    @param env Environment variables to add to (or override in) the current environment.
    """
    if not isinstance(args, list):
        args = [args]
    if log_command:
        if cwd is None:
            dir_for_logging = os.getcwd()
        else:
            dir_for_logging = cwd
        logging.info("Running command: %s (in directory: %s)", shlex_join(args), dir_for_logging)

    full_env: Optional[Dict[str, str]] = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)

    try:
        program_subprocess = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=full_env)
    except OSError:
        logging.error("Failed to run program {}".format(args))
        raise

    program_stdout, program_stderr = program_subprocess.communicate()
    stdout_str = program_stdout.decode('utf-8', errors='replace').strip()
    stderr_str = program_stderr.decode('utf-8', errors='replace').strip()
    error_msg = None
    if program_subprocess.returncode != 0:
        error_msg = "Non-zero exit code {} from: {} ; stdout: '{}' stderr: '{}'".format(
                program_subprocess.returncode, shlex_join(args),
                trim_output(stdout_str, max_error_lines),
                trim_output(stderr_str, max_error_lines))
        if not error_ok:
            raise RuntimeError(error_msg)
    return ProgramResult(
        cmd_line=args,
        returncode=program_subprocess.returncode,
        stdout=stdout_str,
        stderr=stderr_str,
        error_msg=error_msg,
    )
