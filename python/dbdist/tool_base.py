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

import argparse
import os
import sys
import logging

from typing import Dict, Any, List, Optional

from dbdist.common_util import init_logging, get_bool_env_var

from overrides import EnforceOverrides


class UserFriendlyToolError(Exception):
    """
    An exception that is thrown by a command-line tool to indicate an error. We do not print a stack
    trace when reporting this error.
    """
    def __init__(self, message: str, exit_code: int = 1) -> None:
        """
        :param message: The error message.
        :param exit_code: The exit code to use when exiting the tool.
        """
        super().__init__(message)
        assert exit_code != 0, "Exit code 0 is reserved for success. Exception message: " + message
        self.exit_code = exit_code


class DbDistToolBase(EnforceOverrides):
    """
    A base class for the command-line tools that package database binaries.
    """
    arg_parser_created: bool
    arg_parser: argparse.ArgumentParser
    args: argparse.Namespace

    def get_description(self) -> Optional[str]:
        """
        Returns the description of the command-line tool that is shown when invoked with --help.
        By default, the description is taken from the tool class, or from the module containing
        the tool's class, in that order of preference.
        """
        class_docstring = self.__class__.__doc__
        if class_docstring is not None and class_docstring.strip():
            return class_docstring
        return sys.modules[self.__class__.__module__].__doc__

    def get_arg_parser_kwargs(self) -> Dict[str, Any]:
        return dict(description=self.get_description())

    def __init__(self) -> None:
        self.arg_parser_created = False

    def run(self, argv: Optional[List[str]] = None) -> None:
        """
        The top-level function used to run the tool.
        """
        self.create_arg_parser()
        self.parse_args(argv)
        try:
            self.validate_and_process_args()
            self.run_impl()
        except UserFriendlyToolError as ex:
            # We don't use logging.exception here to provide a more user-friendly error message.
            # It should not look like a unexpected crash with a stack trace, but like a properly
            # handled error.
            logging.error(str(ex))
            sys.exit(ex.exit_code)

    def parse_args(self, argv: Optional[List[str]] = None) -> None:
        self.args = self.arg_parser.parse_args(argv)
        init_logging(verbose=self.args.verbose)

    def validate_and_process_args(self) -> None:
        """
        Can be overridden to validate arguments and load configuration before run_impl is called.
        """
        pass

    def run_impl(self) -> None:
        """
        The overridable function containing the tool's functionality.
        """
        raise NotImplementedError()

    def add_command_line_args(self) -> None:
        """
        Can be overridden to add more command-line arguments to the parser.
        """
        pass

    def create_arg_parser(self) -> None:
        # Don't allow to run this function multiple times.
        if self.arg_parser_created:
            raise RuntimeError("Cannot create the argument parser multiple times")

        self.arg_parser = argparse.ArgumentParser(**self.get_arg_parser_kwargs())

        self.arg_parser.add_argument(
            '--work_dir',
            default=os.getenv('DBDIST_WORK_DIR'),
            help='Parent directory for temporary build directories. Defaults to the system '
                 'temporary directory.')

        self.arg_parser.add_argument(
            '--keep_work_dir',
            action='store_true',
            help='Do not delete temporary build directories at exit.')

        self.arg_parser.add_argument(
            '--output_dir',
            help='Also keep a copy of every produced archive in this directory, laid out by '
                 'storage key.')

        self.arg_parser.add_argument(
            '--skip_upload',
            action='store_true',
            help='Build and archive, but do not upload anything. Credentials are not required.')

        self.arg_parser.add_argument(
            '--credentials_file',
            default=os.getenv('DBDIST_CREDENTIALS_FILE'),
            help='YAML or JSON file with object storage credentials. If not specified, the '
                 'DBDIST_S3_* environment variables are used.')

        self.arg_parser.add_argument(
            '--verbose',
            help='Enable verbose output',
            action='store_true',
            default=get_bool_env_var('DBDIST_VERBOSE'),
        )

        self.add_command_line_args()
        self.arg_parser_created = True
