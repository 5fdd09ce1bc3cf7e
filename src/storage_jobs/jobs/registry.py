"""Collects task definitions before the dispatcher starts."""
import logging
from typing import List, Set, Tuple, Type

from storage_jobs.jobs.tasks import BaseTask

logger = logging.getLogger(__name__)


class TaskRegistry:
    def __init__(self):
        self._tasks: List[Type[BaseTask]] = []
        self._built = False

    @property
    def built(self) -> bool:
        return self._built

    def queue_names(self) -> Set[str]:
        names = set()
        for task in self._tasks:
            names.add(task.get_queue_name())
            if task.with_slow_retry_queue():
                names.add(task.get_slow_retry_queue_name())
        return names

    def register(self, task: Type[BaseTask]) -> Type[BaseTask]:
        """
        Add a task definition. Usable as a class decorator.

        Raises:
            TypeError: `task` is not a `BaseTask` subclass.
            ValueError: the queue name is empty or already taken.
        """
        if not isinstance(task, type) or not issubclass(task, BaseTask):
            raise TypeError(f"{task!r} is not a BaseTask subclass")
        if task in self._tasks:
            return task

        queue_name = task.get_queue_name()
        if not queue_name:
            raise ValueError(f"{task.__name__} has no queue name")

        taken = self.queue_names()
        if queue_name in taken:
            raise ValueError(f"Queue name {queue_name} is already registered")

        if task.with_slow_retry_queue():
            slow_name = task.get_slow_retry_queue_name()
            if slow_name == queue_name or slow_name in taken:
                raise ValueError(f"Slow retry queue name {slow_name} of {task.__name__} is already in use")

        if self._built:
            logger.warning(f"{task.__name__} registered after startup; running workers will not pick it up")

        self._tasks.append(task)
        return task

    def build(self) -> Tuple[Type[BaseTask], ...]:
        self._built = True
        return tuple(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)


registry = TaskRegistry()
