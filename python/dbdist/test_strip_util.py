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

import pathlib

from typing import Any, List

import pytest

from dbdist import strip_util
from dbdist.build_target import Arch, BuildTarget, Database, Platform
from dbdist.command_util import ProgramResult
from dbdist.errors import CompileError, StripError
from dbdist.file_util import ELF_MAGIC, mkdir_p


def make_target(platform: Platform, arch: Arch) -> BuildTarget:
    return BuildTarget(database=Database.POSTGRESQL, version='17.5', platform=platform, arch=arch)


def create_bundle(bundle_dir: pathlib.Path) -> None:
    mkdir_p(bundle_dir / 'bin')
    mkdir_p(bundle_dir / 'lib')
    (bundle_dir / 'bin' / 'postgres').write_bytes(ELF_MAGIC + b'postgres')
    (bundle_dir / 'lib' / 'libpq.so.5.17').write_bytes(ELF_MAGIC + b'libpq')
    (bundle_dir / 'lib' / 'libpq.so.5').symlink_to('libpq.so.5.17')
    (bundle_dir / 'bin' / 'pg_config.sh').write_text('#!/bin/sh\n')


def test_strip_tool_for_cross_compiled_binaries() -> None:
    assert strip_util.get_strip_tool(make_target(Platform.LINUX, Arch.X86_64), Arch.X86_64) == \
        'strip'
    assert strip_util.get_strip_tool(make_target(Platform.LINUX, Arch.ARM64), Arch.X86_64) == \
        'aarch64-linux-gnu-strip'


def test_strips_elf_files_only(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
    create_bundle(tmp_path)
    commands: List[List[str]] = []

    def fake_run_program(args: List[str], **kwargs: Any) -> ProgramResult:
        commands.append(args)
        return ProgramResult(cmd_line=args, returncode=0, stdout='', stderr='', error_msg=None)

    monkeypatch.setattr(strip_util, 'run_program', fake_run_program)
    stripped_files = strip_util.strip_debug_symbols(
        str(tmp_path), make_target(Platform.LINUX, Arch.ARM64), Arch.X86_64)
    assert stripped_files == [
        str(tmp_path / 'bin' / 'postgres'),
        str(tmp_path / 'lib' / 'libpq.so.5.17'),
    ]
    assert commands == [
        ['aarch64-linux-gnu-strip', '--strip-debug', path] for path in stripped_files
    ]


def test_macos_bundles_are_not_stripped(
        tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
    create_bundle(tmp_path)
    monkeypatch.setattr(strip_util, 'run_program', None)
    assert strip_util.strip_debug_symbols(
        str(tmp_path), make_target(Platform.MACOS, Arch.ARM64), Arch.ARM64) == []


def test_strip_failure(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
    create_bundle(tmp_path)
    monkeypatch.setattr(strip_util, 'run_program', lambda args, **kwargs: ProgramResult(
        cmd_line=args, returncode=1, stdout='',
        stderr='strip: Unable to recognise the format of the input file', error_msg='failed'))
    with pytest.raises(StripError) as exc_info:
        strip_util.strip_debug_symbols(
            str(tmp_path), make_target(Platform.LINUX, Arch.X86_64), Arch.X86_64)
    assert isinstance(exc_info.value, CompileError)
    assert exc_info.value.step == 'strip'
    assert 'Unable to recognise the format' in exc_info.value.log_tail
