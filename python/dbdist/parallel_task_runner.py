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

import concurrent.futures
import logging
import sys
import time
import traceback

from dataclasses import dataclass
from typing import Any, List, Optional, Type

from dbdist.file_util import write_file


@dataclass
class TaskRunnerProgressInfo:
    total_num_tasks: int
    num_finished_tasks: int
    num_successful_tasks: int
    elapsed_time_sec: float

    @property
    def num_failed_tasks(self) -> int:
        return self.num_finished_tasks - self.num_successful_tasks

    @property
    def percent_finished_tasks(self) -> float:
        if self.total_num_tasks == 0:
            return 0
        return self.num_finished_tasks / self.total_num_tasks * 100


@dataclass
class TaskOutcome:
    task: Any
    succeeded: bool
    result: Any = None

    # Error message for failed tasks.
    error: Optional[str] = None


class ReportHelper:
    lines: List[str]

    def __init__(self) -> None:
        self.lines = []

    def add_item(self, description: str, value: str) -> None:
        """
        Adds an item to the report. If the value contains a newline, it will be added on a separate
        line, followed by an empty line.
        """
        if '\n' in value:
            line_str = '{}:\n{}\n'.format(description, value.rstrip())
        else:
            line_str = '{}: {}'.format(description, value)
        self.lines.append(line_str)

    def as_str(self) -> str:
        return '\n'.join(self.lines)

    def add_raw_line(self, line: str) -> None:
        self.lines.append(line)

    def write_to_file(self, file_path: str) -> None:
        write_file(content=self.as_str(), output_file_path=file_path)


class ParallelTaskRunner:
    """
    A class for running tasks in parallel. The tasks are run in a thread pool. A failure of one task
    does not prevent the other tasks from running.
    """

    parallelism: int
    task_type: Type
    task_result_type: Type

    def __init__(
            self,
            parallelism: int,
            task_type: Type,
            task_result_type: Type) -> None:
        self.parallelism = parallelism
        self.task_type = task_type
        self.task_result_type = task_result_type

    def assert_task_type(self, task: Any) -> None:
        assert isinstance(task, self.task_type), "Expected task of type {}, got {}: {}".format(
            self.task_type, type(task), task)

    def run_task(self, task: Any) -> Any:
        self.assert_task_type(task)

    def did_task_succeed(self, task_result: Any) -> bool:
        return True

    def report_progress(self, progress_info: TaskRunnerProgressInfo) -> None:
        logging.info(
            "Processed %d/%d (%.2f%%) tasks, succeeded: %d, failed: %d, elapsed time %.1f sec",
            progress_info.num_finished_tasks,
            progress_info.total_num_tasks,
            progress_info.percent_finished_tasks,
            progress_info.num_successful_tasks,
            progress_info.num_failed_tasks,
            progress_info.elapsed_time_sec)

    def report_task_exception(self, task: Any, exc: Exception) -> str:
        """
        Logs an exception raised by a task and returns a one-line description of it.
        """
        logging.error("Task %s generated an exception: %s", task, traceback.format_exc())
        return str(exc)

    def report_task_result(self, task: Any, task_result: Any, succeeded: bool) -> None:
        pass

    def run_tasks(self, tasks: List[Any]) -> List[TaskOutcome]:
        for task in tasks:
            self.assert_task_type(task)

        outcomes: List[TaskOutcome] = []
        num_successes = 0
        start_time_sec = time.time()
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.parallelism) as executor:
            future_to_task = {
                executor.submit(self.run_task, task): task
                for task in tasks
            }

            total_num_tasks = len(tasks)
            for future in concurrent.futures.as_completed(future_to_task):
                task = future_to_task[future]

                outcome = TaskOutcome(task=task, succeeded=True)
                try:
                    outcome.result = future.result()
                    if not isinstance(outcome.result, self.task_result_type):
                        outcome.error = "Expected task result of type {}, got {}: {}".format(
                            self.task_result_type, type(outcome.result), outcome.result)
                        logging.warning(outcome.error)
                        outcome.result = None
                        outcome.succeeded = False
                except Exception as exc:
                    outcome.error = self.report_task_exception(task, exc)
                    outcome.succeeded = False
                else:
                    if outcome.succeeded and not self.did_task_succeed(outcome.result):
                        outcome.succeeded = False

                if outcome.succeeded:
                    num_successes += 1
                outcomes.append(outcome)

                if outcome.result is not None:
                    try:
                        self.report_task_result(task, outcome.result, outcome.succeeded)
                    except Exception:
                        logging.exception("Error while reporting task result")

                self.report_progress(TaskRunnerProgressInfo(
                    total_num_tasks=total_num_tasks,
                    num_finished_tasks=len(outcomes),
                    num_successful_tasks=num_successes,
                    elapsed_time_sec=time.time() - start_time_sec
                ))
                sys.stdout.flush()
                sys.stderr.flush()
        return outcomes

    def create_summary_report(self, outcomes: List[TaskOutcome]) -> ReportHelper:
        report = ReportHelper()
        succeeded = [outcome for outcome in outcomes if outcome.succeeded]
        failed = [outcome for outcome in outcomes if not outcome.succeeded]
        report.add_item("Tasks succeeded", '%d of %d' % (len(succeeded), len(outcomes)))
        for outcome in sorted(succeeded, key=lambda o: str(o.task)):
            report.add_raw_line('    OK      %s: %s' % (outcome.task, outcome.result))
        if failed:
            report.add_item("Tasks failed", '%d of %d' % (len(failed), len(outcomes)))
            for outcome in sorted(failed, key=lambda o: str(o.task)):
                report.add_raw_line('    FAILED  %s: %s' % (outcome.task, outcome.error))
        return report
