"""
Group Execution Manager

Runs the averaging pipeline over independent replicate groups, either one
after the other or on a thread pool. Groups share nothing but the
cancellation token; a failing group never stops its siblings.
"""

import logging
import time
import traceback as tb
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import CancellationRequested, OCTVolAvgError
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class GroupTask:
    """One replicate group: its name and its replicate files in order."""

    name: str
    files: List[Path]

    def __str__(self):
        return f"GroupTask({self.name}, {len(self.files)} replicates)"


@dataclass
class GroupResult:
    """Stores the outcome of processing one replicate group."""

    name: str
    success: bool
    cancelled: bool = False

    # Pipeline products (if successful)
    reg_avg: Optional[Any] = None    # np.ndarray (Y, X, Z) uint8
    enface: Optional[Any] = None     # np.ndarray (S, S, Y) uint8
    outputs: Dict[str, Path] = field(default_factory=dict)

    # Error information (if failed)
    error: Optional[OCTVolAvgError] = None
    traceback: Optional[str] = None

    duration: float = 0.0

    def __str__(self):
        if self.cancelled:
            status = "CANCELLED"
        else:
            status = "SUCCESS" if self.success else "FAILED"
        return f"GroupResult({self.name}, {status}, {self.duration:.1f}s)"


def execute_group(task: GroupTask, group_func: Callable[[GroupTask], GroupResult]) -> GroupResult:
    """
    Run group_func on one task, turning pipeline errors into a failed result.

    Only OCTVolAvgError subclasses are caught; anything else is a bug and
    propagates.
    """
    start_time = time.time()
    try:
        result = group_func(task)
    except CancellationRequested as e:
        logger.info(f"Group {task.name} cancelled")
        result = GroupResult(name=task.name, success=False, cancelled=True, error=e)
    except OCTVolAvgError as e:
        logger.error(f"Group {task.name} failed: {e}")
        logger.debug(f"Group {task.name} traceback", exc_info=True)
        result = GroupResult(name=task.name, success=False, error=e, traceback=tb.format_exc())

    result.duration = time.time() - start_time
    return result


class SequentialGroupExecutor:
    """
    Processes groups one after the other, stopping at the first cancellation.
    """

    def __init__(self, token: Optional[CancellationToken] = None):
        self.token = token

    def execute(self, tasks: List[GroupTask], group_func: Callable[[GroupTask], GroupResult]) -> List[GroupResult]:
        """
        Args:
            tasks: Groups to process, in order
            group_func: Processes one group; signature (GroupTask) -> GroupResult

        Returns:
            One GroupResult per group attempted
        """
        results = []
        for i, task in enumerate(tasks):
            if self.token is not None and self.token.is_cancelled:
                logger.info(f"Cancelled before {task}; {len(tasks) - i} groups not processed")
                break

            logger.info(f"[{i+1}/{len(tasks)}] Processing {task}...")
            result = execute_group(task, group_func)
            results.append(result)
            if result.cancelled:
                break

        _log_summary(results, len(tasks))
        return results


class ThreadedGroupExecutor:
    """
    Processes independent groups concurrently on a thread pool.

    Results are returned in task order, not completion order.
    """

    def __init__(self, max_workers: int, token: Optional[CancellationToken] = None):
        self.max_workers = max_workers
        self.token = token
        logger.info(f"Group executor initialized with {max_workers} worker threads")

    def _guarded(self, group_func):
        def run(task):
            if self.token is not None and self.token.is_cancelled:
                raise CancellationRequested(f"group {task.name}")
            return group_func(task)
        return run

    def execute(self, tasks: List[GroupTask], group_func: Callable[[GroupTask], GroupResult]) -> List[GroupResult]:
        if not tasks:
            return []

        results_by_name = {}
        guarded = self._guarded(group_func)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_task = {executor.submit(execute_group, task, guarded): task for task in tasks}

            completed = 0
            for future in as_completed(future_to_task):
                task = future_to_task[future]
                completed += 1
                result = future.result()
                results_by_name[task.name] = result
                logger.info(f"  [{completed}/{len(tasks)}] {result}")

        results = [results_by_name[task.name] for task in tasks]
        _log_summary(results, len(tasks))
        return results


def _log_summary(results, total):
    successful = sum(1 for r in results if r.success)
    cancelled = sum(1 for r in results if r.cancelled)
    failed = len(results) - successful - cancelled
    logger.info(f"Groups complete: {successful}/{total} successful, {failed} failed, {cancelled} cancelled")


def create_executor(max_workers: int = 1, token: Optional[CancellationToken] = None):
    """
    Factory function to create a group executor.

    Args:
        max_workers: 1 for sequential processing, more for a thread pool
        token: Cancellation token checked before each group starts

    Returns:
        Executor instance
    """
    if max_workers > 1:
        return ThreadedGroupExecutor(max_workers=max_workers, token=token)
    return SequentialGroupExecutor(token=token)
