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
Builds PostgreSQL from source with configure, make and make install, for the host architecture or
cross-compiling for the other one.
"""

import logging
import os
import time

from typing import Dict, List, Optional

from dbdist.build_target import Arch, BuildTarget, Platform, get_host_platform
from dbdist.command_util import ProgramResult, run_program
from dbdist.common_util import get_parallelism, shlex_join
from dbdist.errors import CompileError, UsageError
from dbdist.file_util import mkdir_p, write_file


BUILD_STEPS = (
    'configure',
    'make',
    'make_install',
)

MAKE_PARALLELISM_ENV_VAR = 'DBDIST_MAKE_PARALLELISM'

# Number of trailing build log lines included in a compilation error.
LOG_TAIL_NUM_LINES = 50

CONFIGURE_FLAGS = [
    '--without-readline',
    '--without-zlib',
    '--without-icu',
    '--without-openssl',
]

MACOS_MIN_VERSION_BY_ARCH = {
    Arch.ARM64: '11.0',
    Arch.X86_64: '10.15',
}

# Architecture names used in GNU target triples.
GNU_ARCH_NAME = {
    Arch.ARM64: 'aarch64',
    Arch.X86_64: 'x86_64',
}


def get_gnu_triple(target_platform: Platform, arch: Arch) -> str:
    """
    >>> get_gnu_triple(Platform.LINUX, Arch.ARM64)
    'aarch64-linux-gnu'
    >>> get_gnu_triple(Platform.MACOS, Arch.X86_64)
    'x86_64-apple-darwin'
    """
    if target_platform == Platform.MACOS:
        return '%s-apple-darwin' % GNU_ARCH_NAME[arch]
    return '%s-linux-gnu' % GNU_ARCH_NAME[arch]


def get_target_build_env(
        target: BuildTarget, host_arch: Arch) -> Dict[str, str]:
    """
    Returns the environment variables that make the compiler produce binaries for the target
    architecture.
    """
    env: Dict[str, str] = {}
    if target.platform == Platform.MACOS:
        arch_flags = '-arch %s -mmacosx-version-min=%s' % (
            target.arch.value, MACOS_MIN_VERSION_BY_ARCH[target.arch])
        env['CFLAGS'] = arch_flags
        env['LDFLAGS'] = arch_flags
    elif target.arch != host_arch:
        env['CC'] = '%s-gcc' % get_gnu_triple(target.platform, target.arch)
    return env


def get_target_configure_flags(target: BuildTarget, host_arch: Arch) -> List[str]:
    if target.arch == host_arch:
        return []
    return ['--host=%s' % get_gnu_triple(target.platform, target.arch)]


class PostgresBuilder:
    target: BuildTarget
    src_dir: str
    install_dir: str
    host_arch: Arch
    make_parallelism: int

    def __init__(
            self,
            target: BuildTarget,
            src_dir: str,
            install_dir: str,
            host_arch: Arch,
            host_platform: Optional[Platform] = None) -> None:
        if host_platform is None:
            host_platform = get_host_platform()
        if target.platform != host_platform:
            raise UsageError(
                "Cannot build %s binaries on a %s host: cross-compiling between operating "
                "systems is not supported" % (target.platform.value, host_platform.value))
        self.target = target
        self.src_dir = src_dir
        self.install_dir = install_dir
        self.host_arch = host_arch
        self.make_parallelism = get_parallelism(MAKE_PARALLELISM_ENV_VAR)

    def is_cross_compiling(self) -> bool:
        return self.target.arch != self.host_arch

    def get_log_path(self, step: str) -> str:
        return os.path.join(self.src_dir, 'dbdist_%s.log' % step)

    def get_configure_cmd_line(self) -> List[str]:
        return (
            ['./configure', '--prefix=%s' % self.install_dir] +
            CONFIGURE_FLAGS +
            get_target_configure_flags(self.target, self.host_arch)
        )

    def get_make_cmd_line(self) -> List[str]:
        return ['make', '-j%d' % self.make_parallelism]

    def run_build_step(self, step: str, cmd_line: List[str]) -> ProgramResult:
        start_time_sec = time.time()
        env = get_target_build_env(self.target, self.host_arch)
        if env:
            logging.info("Environment for the %s step: %s", step,
                         ' '.join('%s=%s' % (k, v) for k, v in sorted(env.items())))
        result = run_program(
            cmd_line,
            cwd=self.src_dir,
            env=env,
            error_ok=True,
            log_command=True)

        log_path = self.get_log_path(step)
        write_file([
            '# Command: %s' % shlex_join(cmd_line),
            '# Exit code: %d' % result.returncode,
            result.combined_output(),
        ], log_path)

        if result.failure():
            raise CompileError(
                "PostgreSQL %s step failed for %s, full log: %s" % (step, self.target, log_path),
                exit_code=result.returncode,
                log_tail=result.output_tail(LOG_TAIL_NUM_LINES))
        logging.info("The %s step of building PostgreSQL took %.1f sec",
                     step, time.time() - start_time_sec)
        return result

    def configure(self) -> None:
        self.run_build_step('configure', self.get_configure_cmd_line())

    def make(self) -> None:
        self.run_build_step('make', self.get_make_cmd_line())

    def make_install(self) -> None:
        mkdir_p(self.install_dir)
        self.run_build_step('make_install', self.get_make_cmd_line() + ['install'])

    def build(self) -> str:
        """
        Runs configure, make and make install. Returns the installation directory.
        """
        start_time_sec = time.time()
        logging.info(
            "Building %s in %s, installing into %s (host architecture: %s%s)",
            self.target, self.src_dir, self.install_dir, self.host_arch.value,
            ', cross-compiling' if self.is_cross_compiling() else '')
        self.configure()
        self.make()
        self.make_install()
        logging.info("PostgreSQL build (%s) took %.1f sec",
                     ', '.join(BUILD_STEPS), time.time() - start_time_sec)
        return self.install_dir
