"""
Task Supervision Module

Cooperative cancellation signals and a fail-fast group of worker
threads. Stopping a signal stops every signal derived from it.
"""

import logging
import threading
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class StopSignal:
    """Cancellation signal with optional parent propagation"""

    def __init__(self, parent: Optional["StopSignal"] = None):
        self._event = threading.Event()
        self._children: List["StopSignal"] = []
        self._lock = threading.Lock()
        self._parent = parent
        if parent is not None:
            parent._attach(self)

    def _attach(self, child: "StopSignal") -> None:
        with self._lock:
            self._children.append(child)
        if self._event.is_set():
            child.set()

    def _detach(self, child: "StopSignal") -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    def child(self) -> "StopSignal":
        """Create a signal stopped whenever this one is"""
        return StopSignal(self)

    def close(self) -> None:
        """Stop following the parent signal"""
        if self._parent is not None:
            self._parent._detach(self)
            self._parent = None

    def set(self) -> None:
        self._event.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stopped or the timeout expires

        Returns:
            True if the signal is stopped
        """
        return self._event.wait(timeout)


class TaskGroup:
    """Runs tasks in threads; the first task to finish stops the others

    A task finishing, with or without an error, sets the group's stop
    signal. Tasks must return promptly once the signal is set.
    """

    def __init__(self, stop: StopSignal, name: str = "group"):
        self.stop = stop
        self.name = name
        self._tasks: List[Tuple[str, Callable[[], None]]] = []
        self._errors: List[BaseException] = []
        self._lock = threading.Lock()

    def add(self, name: str, task: Callable[[], None]) -> None:
        self._tasks.append((name, task))

    def _run_task(self, name: str, task: Callable[[], None]) -> None:
        try:
            task()
        except Exception as e:
            logger.error(f"Task {self.name}/{name} failed: {e}")
            with self._lock:
                self._errors.append(e)
        finally:
            self.stop.set()

    def run(self) -> None:
        """Run all tasks and wait for them to finish

        Raises:
            Exception: The first error raised by any task
        """
        threads = []
        for name, task in self._tasks:
            thread = threading.Thread(
                target=self._run_task,
                args=(name, task),
                name=f"{self.name}-{name}",
                daemon=True
            )
            threads.append(thread)
            thread.start()

        for thread in threads:
            thread.join()

        if self._errors:
            raise self._errors[0]
