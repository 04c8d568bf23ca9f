from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable

from ingress_controller.src.errors import OperationCancelled

LOGGER = logging.getLogger(__name__)

# Upper bound on how long a waiter sleeps before re-checking its own cancel event.
_CANCEL_POLL_SECONDS = 0.05


class GateState(enum.Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    COMPLETED = "completed"


class ReconcileGate:
    """Single-flight barrier around the initial full synchronisation.

    The first call to :meth:`wait` starts ``runnable`` on a dedicated daemon
    thread, handing it that caller's ``cancel`` event.  Every caller, including
    ones arriving after completion, blocks until the result is known and then
    gets the same outcome: ``None`` on success, or the very same exception
    object re-raised.  ``runnable`` never runs twice.

    A waiter whose own ``cancel`` event fires, or whose ``timeout`` elapses,
    raises :class:`OperationCancelled` without disturbing the executor or other
    waiters.  ``on_error`` is invoked once, on the executor thread, if
    ``runnable`` fails.
    """

    def __init__(
        self,
        runnable: Callable[[threading.Event], None],
        on_error: Callable[[BaseException], None] | None = None,
        name: str = "initial-sync",
    ) -> None:
        self._runnable = runnable
        self._on_error = on_error
        self._name = name
        self._state = GateState.NOT_STARTED
        self._error: BaseException | None = None
        self._cond = threading.Condition()
        self.done = threading.Event()

    @property
    def state(self) -> GateState:
        with self._cond:
            return self._state

    @property
    def succeeded(self) -> bool:
        with self._cond:
            return self._state is GateState.COMPLETED and self._error is None

    def wait(self, cancel: threading.Event | None = None, timeout: float | None = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            if self._state is GateState.NOT_STARTED:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled(f"cancelled before starting {self._name}")
                self._state = GateState.RUNNING
                threading.Thread(
                    target=self._execute,
                    args=(cancel or threading.Event(),),
                    name=self._name,
                    daemon=True,
                ).start()

            while self._state is not GateState.COMPLETED:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled(f"cancelled while waiting for {self._name}")
                remaining = _CANCEL_POLL_SECONDS
                if deadline is not None:
                    left = deadline - time.monotonic()
                    if left <= 0:
                        raise OperationCancelled(f"timed out waiting for {self._name}")
                    remaining = min(remaining, left)
                self._cond.wait(timeout=remaining)

            if self._error is not None:
                raise self._error

    def _execute(self, cancel: threading.Event) -> None:
        error: BaseException | None = None
        try:
            self._runnable(cancel)
        except Exception as exc:
            error = exc
            LOGGER.exception("%s failed", self._name)
            if self._on_error is not None:
                try:
                    self._on_error(exc)
                except Exception:
                    LOGGER.exception("%s error handler failed", self._name)
        except BaseException as exc:
            error = exc
            raise
        finally:
            with self._cond:
                self._error = error
                self._state = GateState.COMPLETED
                self._cond.notify_all()
            self.done.set()
