"""Concurrent transfer scheduling for one watch pair.

Transfers run on a bounded :class:`ThreadPoolExecutor`. Each path has at
most one task executing and at most one task waiting behind it: a newer
task for a path replaces the waiting one, so bursts of changes collapse
into a single transfer while different paths proceed in parallel.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Union

from ..exceptions import LocalIoError, RemoteError
from ..utils import DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_RETRY_DELAY, DEFAULT_RETRY_DELAY
from .models import TransferOutcome, TransferTask

logger = logging.getLogger(__name__)

TaskExecutor = Callable[[TransferTask], TransferOutcome]
CompletionCallback = Callable[[TransferTask, TransferOutcome], None]
FailureCallback = Callable[[TransferTask, BaseException], None]


@dataclass
class RetryPolicy:
    """Exponential backoff for retryable transfer errors."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_DELAY
    max_delay: float = DEFAULT_MAX_RETRY_DELAY

    def delay_for(self, attempt: int) -> float:
        """Delay before the next try after ``attempt`` failed (1-based).

        Examples:
            >>> RetryPolicy(base_delay=1.0, max_delay=60.0).delay_for(3)
            4.0
        """
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        """Check whether an error is worth another attempt."""
        if isinstance(error, RemoteError):
            return error.retryable
        return isinstance(error, LocalIoError)


class TransferScheduler:
    """Runs transfer tasks with per-path exclusivity and retries.

    ``on_complete`` is called after the executor returned, that is after the
    collaborator confirmed the transfer. ``on_failure`` is called once a
    task failed fatally or ran out of attempts. Neither is called for tasks
    abandoned by :meth:`shutdown`.
    """

    def __init__(
        self,
        executor: TaskExecutor,
        on_complete: CompletionCallback,
        on_failure: FailureCallback,
        max_workers: int = 5,
        retry: Optional[RetryPolicy] = None,
        name: str = "transfer",
    ):
        """Initialize the scheduler.

        Args:
            executor: Callable that performs one task and returns its outcome
            on_complete: Called with the task and its outcome on success
            on_failure: Called with the task and the last error on failure
            max_workers: Maximum number of concurrent transfers
            retry: Retry policy (defaults to :class:`RetryPolicy`)
            name: Prefix of the worker thread names
        """
        self._executor = executor
        self._on_complete = on_complete
        self._on_failure = on_failure
        self.retry = retry or RetryPolicy()
        self.max_workers = max(1, max_workers)
        self._pool = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix=name
        )
        self._cond = threading.Condition()
        # Tasks not started yet, at most one per path
        self._pending: dict[str, TransferTask] = {}
        # Paths with a worker assigned (waiting in the pool or executing)
        self._active: set[str] = set()
        self._executing: dict[str, TransferTask] = {}
        self._completing = 0
        self._closed = False
        self._abandoned = False
        self._stop = threading.Event()
        self._stats = {
            "enqueued": 0,
            "coalesced": 0,
            "completed": 0,
            "failed": 0,
            "retried": 0,
            "discarded": 0,
            "abandoned": 0,
        }

    def enqueue(self, task: TransferTask) -> bool:
        """Schedule a task.

        A task waiting for the same path is replaced; a task for a path
        that is executing runs after it.

        Returns:
            False if the scheduler is shut down
        """
        with self._cond:
            if self._closed:
                logger.debug(f"Scheduler closed, dropping {task.path}")
                return False

            if task.path in self._pending:
                replaced = self._pending[task.path]
                self._stats["coalesced"] += 1
                logger.debug(
                    f"Replacing queued {replaced.kind.value} of {task.path} "
                    f"with {task.kind.value}"
                )
            self._pending[task.path] = task
            self._stats["enqueued"] += 1

            if task.path not in self._active:
                self._active.add(task.path)
                self._pool.submit(self._work, task.path)
            return True

    def is_busy(self, path: str) -> bool:
        """Whether a task for ``path`` is queued or executing."""
        with self._cond:
            return path in self._active

    def active_paths(self) -> set[str]:
        """Paths with a task queued or executing."""
        with self._cond:
            return set(self._active)

    def in_flight(self) -> list[str]:
        """Paths whose transfer is executing."""
        with self._cond:
            return sorted(self._executing)

    def queued(self) -> list[str]:
        """Paths with a task waiting to start."""
        with self._cond:
            return sorted(self._pending)

    def stats(self) -> dict[str, int]:
        with self._cond:
            stats = dict(self._stats)
            stats["in_flight"] = len(self._executing)
            stats["queued"] = len(self._pending)
            return stats

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no task is queued or executing.

        Returns:
            True if the scheduler became idle before the timeout
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._active and self._completing == 0, timeout
            )

    def shutdown(self, grace: float = 0.0) -> int:
        """Stop accepting tasks and wind down.

        Queued tasks are discarded. Executing tasks get ``grace`` seconds to
        finish; after that their results are no longer applied.

        Returns:
            Number of executing tasks that were abandoned
        """
        with self._cond:
            if self._closed:
                return 0
            self._closed = True
            discarded = len(self._pending)
            self._pending.clear()
            self._active = set(self._executing)
            self._stats["discarded"] += discarded
            self._stop.set()
            if discarded:
                logger.info(f"Discarded {discarded} queued transfer(s)")

            finished = self._cond.wait_for(lambda: not self._executing, grace)
            abandoned = 0
            if not finished:
                abandoned = len(self._executing)
                self._abandoned = True
                self._stats["abandoned"] += abandoned
                logger.warning(
                    f"Abandoning {abandoned} running transfer(s): "
                    f"{', '.join(sorted(self._executing))}"
                )
            # Completions already being applied are allowed to finish
            self._cond.wait_for(lambda: self._completing == 0)

        self._pool.shutdown(wait=False, cancel_futures=True)
        return abandoned

    def _work(self, path: str) -> None:
        """Worker loop: run tasks for ``path`` until none is waiting."""
        while True:
            with self._cond:
                task = self._pending.pop(path, None)
                if task is None or self._closed:
                    self._active.discard(path)
                    self._cond.notify_all()
                    return
                self._executing[path] = task

            try:
                self._run(task)
            finally:
                with self._cond:
                    self._executing.pop(path, None)
                    self._cond.notify_all()

    def _run(self, task: TransferTask) -> None:
        while True:
            task.attempt_count += 1
            try:
                outcome = self._executor(task)
            except Exception as e:
                retry = (
                    self.retry.is_retryable(e)
                    and task.attempt_count < self.retry.max_attempts
                )
                if not retry:
                    self._finish(task, e)
                    return

                delay = self.retry.delay_for(task.attempt_count)
                logger.warning(
                    f"{task.kind.value} {task.path} failed "
                    f"(attempt {task.attempt_count}/{self.retry.max_attempts}): "
                    f"{e}. Retrying in {delay:.1f}s"
                )
                with self._cond:
                    self._stats["retried"] += 1
                if self._stop.wait(delay):
                    logger.info(f"Shutdown during backoff, dropping {task.path}")
                    return
                continue

            self._finish(task, outcome)
            return

    def _finish(
        self, task: TransferTask, result: Union[TransferOutcome, Exception]
    ) -> None:
        with self._cond:
            if self._abandoned:
                logger.debug(f"Ignoring result of abandoned {task.path}")
                return
            self._completing += 1

        try:
            if isinstance(result, Exception):
                logger.error(
                    f"{task.kind.value} {task.path} failed after "
                    f"{task.attempt_count} attempt(s): {result}"
                )
                self._on_failure(task, result)
                with self._cond:
                    self._stats["failed"] += 1
            else:
                self._on_complete(task, result)
                with self._cond:
                    self._stats["completed"] += 1
        except Exception:
            logger.exception(f"Error while recording result of {task.path}")
        finally:
            with self._cond:
                self._completing -= 1
                self._cond.notify_all()
