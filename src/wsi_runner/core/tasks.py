"""
Background Task Execution
=========================

Qt thread pool wrapper for running a model off the calling thread.

A run submitted here is fire-and-forget: the pool gives no ordering
guarantee, so callers must not submit two runs for the same (slide, model)
pair at once.

Classes
-------
TaskSignals
    Signals carrying a task's result or error
Task
    QRunnable wrapper around a callable

Functions
---------
submit
    Start a callable on the global thread pool

Examples
--------
>>> signals = submit(manager.run_process, slide, "tumor_seg",
...                  on_finished=lambda outcome: print(outcome.status))
"""

import logging

from PySide6.QtCore import QObject, QRunnable, QThreadPool, Signal

logger = logging.getLogger(__name__)


class TaskSignals(QObject):
    """
    Signals of one background task.

    Signals
    -------
    finished : Signal(object)
        Emitted with the return value on success
    error : Signal(str)
        Emitted with the exception message on failure
    """

    finished = Signal(object)
    error = Signal(str)


class Task(QRunnable):
    """
    Execute ``fn(*args, **kwargs)`` on a pool thread and emit the outcome.

    Parameters
    ----------
    fn : callable
        Function to execute
    *args, **kwargs
        Passed to ``fn``
    """

    def __init__(self, fn, *args, **kwargs):
        super().__init__()
        self.fn = fn
        self.args = args
        self.kwargs = kwargs
        self.signals = TaskSignals()

    def run(self):
        try:
            res = self.fn(*self.args, **self.kwargs)
        except Exception as e:
            logger.exception("Background task %s failed", getattr(self.fn, "__name__", self.fn))
            self.signals.error.emit(str(e))
            return
        self.signals.finished.emit(res)


def submit(fn, *args, on_finished=None, on_error=None, **kwargs) -> TaskSignals:
    """
    Submit ``fn`` to ``QThreadPool.globalInstance()``.

    Callbacks are connected before the task starts, so a task that finishes
    immediately still reaches them.

    Returns
    -------
    TaskSignals
        The task's signals, for connecting more receivers
    """
    t = Task(fn, *args, **kwargs)
    if on_finished is not None:
        t.signals.finished.connect(on_finished)
    if on_error is not None:
        t.signals.error.connect(on_error)
    QThreadPool.globalInstance().start(t)
    return t.signals
