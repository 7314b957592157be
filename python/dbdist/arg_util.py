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
import re

from dbdist.build_target import Arch, Database, Platform


VERSION_RE = re.compile(r'^[0-9]+([.][0-9]+)*([-+.][0-9A-Za-z.-]+)?$')


def arch_arg_type(arg_value: str) -> Arch:
    arg_value = arg_value.strip()
    try:
        return Arch(arg_value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid architecture: {arg_value}, expected one of: "
            f"{', '.join(arch.value for arch in Arch)}")


def platform_arg_type(arg_value: str) -> Platform:
    arg_value = arg_value.strip().lower()
    try:
        return Platform(arg_value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid platform: {arg_value}, expected one of: "
            f"{', '.join(platform.value for platform in Platform)}")


def database_arg_type(arg_value: str) -> Database:
    arg_value = arg_value.strip().lower()
    try:
        return Database(arg_value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid database: {arg_value}, expected one of: "
            f"{', '.join(database.value for database in Database)}")


def version_arg_type(arg_value: str) -> str:
    arg_value = arg_value.strip()
    if not VERSION_RE.match(arg_value):
        raise argparse.ArgumentTypeError(
            f"Invalid version: {arg_value}, expected a dotted version number such as 17.5")
    return arg_value


def positive_int_arg_type(arg_value: str) -> int:
    try:
        value = int(arg_value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected an integer, got: {arg_value}")
    if value < 1:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got: {value}")
    return value
