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
Identifies what is being packaged: a database, its version, and the platform and architecture the
binaries are built for. The storage key of the resulting archive is derived from these alone.
"""

import enum
import platform

from dataclasses import dataclass

import semantic_version  # type: ignore

from sys_detection import is_macos, is_linux


class Database(enum.Enum):
    POSTGRESQL = 'postgresql'
    MONGODB = 'mongodb'
    REDIS = 'redis'


class Platform(enum.Enum):
    MACOS = 'macos'
    LINUX = 'linux'


class Arch(enum.Enum):
    ARM64 = 'arm64'
    X86_64 = 'x86_64'


# Names reported by platform.machine() on various systems.
MACHINE_NAME_TO_ARCH = {
    'arm64': Arch.ARM64,
    'aarch64': Arch.ARM64,
    'x86_64': Arch.X86_64,
    'amd64': Arch.X86_64,
}


def get_major_version(version: str) -> str:
    """
    Returns the leading numeric component of a version string.

    >>> get_major_version('17.5')
    '17'
    >>> get_major_version('8.0.4')
    '8'
    >>> get_major_version('7.4.0-v3')
    '7'
    """
    try:
        return str(semantic_version.Version.coerce(version).major)
    except ValueError as ex:
        raise ValueError("Cannot determine the major version of '%s': %s" % (version, ex))


@dataclass(frozen=True)
class BuildTarget:
    database: Database
    version: str
    platform: Platform
    arch: Arch

    def __post_init__(self) -> None:
        # Fail at construction rather than when the storage key is first computed.
        get_major_version(self.version)

    @property
    def major_version(self) -> str:
        return get_major_version(self.version)

    def storage_key(self) -> str:
        return '%s/%s/%s/%s.tar.gz' % (
            self.database.value, self.major_version, self.platform.value, self.arch.value)

    def __str__(self) -> str:
        return '%s %s (%s/%s)' % (
            self.database.value, self.version, self.platform.value, self.arch.value)


def get_host_platform() -> Platform:
    if is_macos():
        return Platform.MACOS
    if is_linux():
        return Platform.LINUX
    raise ValueError("Unsupported host operating system: %s" % platform.system())


def arch_from_machine_name(machine_name: str) -> Arch:
    """
    >>> arch_from_machine_name('aarch64')
    <Arch.ARM64: 'arm64'>
    >>> arch_from_machine_name('AMD64')
    <Arch.X86_64: 'x86_64'>
    """
    arch = MACHINE_NAME_TO_ARCH.get(machine_name.lower())
    if arch is None:
        raise ValueError("Unsupported host architecture: %s" % machine_name)
    return arch


def get_host_arch() -> Arch:
    return arch_from_machine_name(platform.machine())
