"""Post-commit side effects.

State-changing services enqueue notifications here once their transaction
has committed. Running the tasks is the caller's decision (the HTTP layer
hands ``run`` to FastAPI background tasks). A failing task is logged and
handed to the application's ``FailedTaskQueue``, where the retry job picks
it up again.
"""

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable

from booking_engine.core import config
from booking_engine.core.batch import BatchResult

logger = logging.getLogger(__name__)


@dataclass
class PostCommitTask:
    name: str
    func: Callable[..., Any]
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)
    attempts: int = 0
    last_error: str | None = None


class PostCommitTasks:
    def __init__(self, failed_queue: 'FailedTaskQueue | None' = None) -> None:
        self._pending: list[PostCommitTask] = []
        self.failed: list[PostCommitTask] = []
        self.completed: list[PostCommitTask] = []
        self.failed_queue = failed_queue

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, name: str, func: Callable[..., Any], *args, **kwargs) -> None:
        self._pending.append(PostCommitTask(name=name, func=func, args=args, kwargs=kwargs))

    def add_task(self, task: PostCommitTask) -> None:
        self._pending.append(task)

    def run(self) -> list[PostCommitTask]:
        """Run every pending task once; returns the tasks that failed."""
        pending, self._pending = self._pending, []
        failures = []

        for task in pending:
            task.attempts += 1
            try:
                task.func(*task.args, **task.kwargs)
            except Exception as exc:
                task.last_error = str(exc)
                logger.exception('Post-commit task %s failed (attempt %s)', task.name, task.attempts)
                failures.append(task)
            else:
                self.completed.append(task)

        self.failed.extend(failures)
        if self.failed_queue is not None and failures:
            self.failed_queue.extend(failures)
        return failures


class FailedTaskQueue:
    """Failed post-commit tasks waiting for the retry job.

    One instance is shared by every request. A task that has failed
    ``max_attempts`` times is dropped and logged as an error.
    """

    def __init__(self, max_attempts: int | None = None) -> None:
        self.max_attempts = config.OUTBOX_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self._lock = Lock()
        self._tasks: list[PostCommitTask] = []
        self.dropped: list[PostCommitTask] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def extend(self, tasks: list[PostCommitTask]) -> None:
        with self._lock:
            for task in tasks:
                if task.attempts >= self.max_attempts:
                    logger.error(
                        'Dropping post-commit task %s after %s attempts: %s',
                        task.name, task.attempts, task.last_error,
                    )
                    self.dropped.append(task)
                else:
                    self._tasks.append(task)

    def retry(self) -> BatchResult:
        with self._lock:
            tasks, self._tasks = self._tasks, []

        # Tasks failing again come back through extend().
        batch = PostCommitTasks(failed_queue=self)
        for task in tasks:
            batch.add_task(task)
        failures = batch.run()

        result = BatchResult()
        for task in batch.completed:
            result.record_success(task.name, attempts=task.attempts)
        for task in failures:
            result.record_failure(task.name, task.last_error or 'failed')

        logger.info('Post-commit retry: %s succeeded, %s failed', result.succeeded, result.failed)
        return result
