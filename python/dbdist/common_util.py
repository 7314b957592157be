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
This module provides common utility functions.
"""

import itertools
import logging
import multiprocessing
import os
import shlex
import shutil
import tempfile

import typing
from typing import (
    Any, List, Tuple, Callable, TypeVar, Optional, Iterable, TYPE_CHECKING)


if TYPE_CHECKING:
    class _SupportsLessThan(typing.Protocol):
        def __lt__(self, __other: Any) -> bool: ...

    _GroupElementType = TypeVar('_GroupElementType')
    _GroupKeyType = TypeVar('_GroupKeyType', bound=_SupportsLessThan)
else:
    _GroupElementType = typing.Any
    _GroupKeyType = typing.Any


MODULE_DIR = os.path.dirname(os.path.realpath(__file__))
DBDIST_SRC_ROOT = os.path.realpath(os.path.join(MODULE_DIR, '..', '..'))

LOG_FORMAT = "%(asctime)s [%(filename)s:%(lineno)d %(levelname)s] %(message)s"


def sorted_grouped_by(
        arr: Iterable[_GroupElementType],
        key_fn: Callable[[_GroupElementType], _GroupKeyType]
        ) -> List[Tuple[_GroupKeyType, List[_GroupElementType]]]:
    """
    Group the given collection by the key computed using the given function. The collection does not
    have to be already sorted.
    @return a list of (key, list_of_values) tuples where keys are sorted

    >>> sorted_grouped_by(['bb', 'a', 'cc', 'd'], len)
    [(1, ['a', 'd']), (2, ['bb', 'cc'])]
    """
    return [(k, list(v)) for (k, v) in itertools.groupby(sorted(arr, key=key_fn), key_fn)]


g_init_logging_verbose_value: Optional[bool] = None


def init_logging(verbose: bool) -> None:
    global g_init_logging_verbose_value

    if g_init_logging_verbose_value is not None:
        # This function has already been called.
        if verbose == g_init_logging_verbose_value:
            return
        logging.warning(
            f"init_logging() has already been called with verbose={g_init_logging_verbose_value}, "
            f"ignoring a subsequent call with verbose={verbose}"
        )
        return

    g_init_logging_verbose_value = verbose

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT)


def get_bool_env_var(env_var_name: str) -> bool:
    value = os.environ.get(env_var_name, None)
    if value is None:
        return False

    return value.lower() in ['1', 't', 'true', 'y', 'yes']


def shlex_join(args: List[str]) -> str:
    return ' '.join([shlex.quote(arg) for arg in args])


def find_executable(name: str, must_find: bool = False) -> Optional[str]:
    """
    Similar to the UNIX "which" command.
    """
    path = shutil.which(name)
    if path is None and must_find:
        raise IOError("Could not find executable %s. PATH: %s" % (name, os.getenv('PATH')))
    return path


def get_parallelism(env_var_name: str) -> int:
    """
    Returns the parallelism configured in the given environment variable, or the number of CPUs.
    """
    value_str = os.environ.get(env_var_name)
    if value_str:
        value = int(value_str)
        if value < 1:
            raise ValueError("%s must be a positive integer, got: %s" % (env_var_name, value_str))
        return value
    return multiprocessing.cpu_count()


def create_temp_dir(prefix: str, parent_dir: Optional[str] = None) -> str:
    """
    Creates a temporary directory and returns its absolute path. The caller is responsible for
    deleting it.
    """
    if parent_dir is not None:
        os.makedirs(parent_dir, exist_ok=True)
    tmp_dir = tempfile.mkdtemp(prefix=prefix, dir=parent_dir)
    logging.debug("Created temporary directory %s", tmp_dir)
    return os.path.realpath(tmp_dir)


def get_ruamel_yaml_instance() -> Any:
    import ruamel.yaml
    yaml = ruamel.yaml.YAML(typ='safe')
    return yaml


def load_yaml_file(yaml_path: str) -> Any:
    yaml = get_ruamel_yaml_instance()
    with open(yaml_path) as yaml_file:
        return yaml.load(yaml_file)
