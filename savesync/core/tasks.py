"""Background task manager — fire-and-forget cloud work that can be drained on exit."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

POLL_INTERVAL = 0.1

CompletionCallback = Callable[[str, "BaseException | None"], None]


@dataclass
class _Task:
    task_id: str
    name: str
    done: threading.Event = field(default_factory=threading.Event)
    error: BaseException | None = None


class BackgroundTaskManager:
    """
    Runs each task in its own daemon thread and tracks it until it finishes.

    Failures are logged and handed to ``on_complete``; nothing is raised
    into the caller that scheduled the work.
    """

    def __init__(self, on_complete: CompletionCallback | None = None) -> None:
        self._on_complete = on_complete
        self._cond = threading.Condition()
        self._tasks: dict[str, _Task] = {}
        self._counter = itertools.count(1)

    @property
    def active_count(self) -> int:
        with self._cond:
            return len(self._tasks)

    @property
    def has_active(self) -> bool:
        return self.active_count > 0

    def active_task_names(self) -> list[str]:
        with self._cond:
            return [task.name for task in self._tasks.values()]

    def run(self, name: str, work: Callable[..., Any], *args: Any) -> str:
        """Start ``work(*args)`` in the background; coroutine functions get their own loop."""
        return self._start(name, work, args).task_id

    def _start(self, name: str, work: Callable[..., Any], args: tuple[Any, ...]) -> _Task:
        task = _Task(task_id=f"{name}_{next(self._counter)}", name=name)
        with self._cond:
            self._tasks[task.task_id] = task

        thread = threading.Thread(
            target=self._target,
            args=(task, work, args),
            name=task.task_id,
            daemon=True,
        )
        thread.start()
        logger.debug(f"Background task started: {task.task_id}")
        return task

    def _target(self, task: _Task, work: Callable[..., Any], args: tuple[Any, ...]) -> None:
        try:
            try:
                result = work(*args)
                if inspect.iscoroutine(result):
                    asyncio.run(result)
            except Exception as e:
                logger.exception(f"Background task {task.task_id} failed: {e}")
                task.error = e
            except BaseException as e:
                task.error = e
                raise

            if self._on_complete is not None:
                try:
                    self._on_complete(task.task_id, task.error)
                except Exception:
                    logger.exception(f"Completion callback for {task.task_id} failed")
        finally:
            # Unregister even when the work raised SystemExit or similar
            with self._cond:
                self._tasks.pop(task.task_id, None)
                self._cond.notify_all()
            task.done.set()
            logger.debug(f"Background task finished: {task.task_id}")

    def wait_for_all(self, timeout: float) -> bool:
        """Block until no task is running; False if ``timeout`` seconds pass first."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    names = ", ".join(t.task_id for t in self._tasks.values())
                    logger.warning(f"Gave up waiting for {len(self._tasks)} background task(s): {names}")
                    return False
                # Short slices so a missed notify never stalls the drain
                self._cond.wait(min(remaining, POLL_INTERVAL))
        return True

    def run_and_wait(
        self,
        name: str,
        work: Callable[..., Any],
        *args: Any,
        cancel_event: threading.Event | None = None,
    ) -> bool:
        """
        Run ``work`` and wait for it in the foreground.

        Setting ``cancel_event`` stops the wait but not the work: the task keeps
        running in the background registry.  Returns True if the work finished
        while waited on; its exception, if any, is re-raised.
        """
        task = self._start(name, work, args)
        while not task.done.wait(POLL_INTERVAL):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"{task.task_id} continues in the background")
                return False

        if task.error is not None:
            raise task.error
        return True
