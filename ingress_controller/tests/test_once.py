from __future__ import annotations

import threading

import pytest

from ingress_controller.src.errors import OperationCancelled
from ingress_controller.src.once import GateState, ReconcileGate


class TestReconcileGate:
    """Single-flight semantics of the initial-sync gate."""

    def test_runs_once_for_concurrent_waiters(self) -> None:
        calls = []
        release = threading.Event()

        def runnable(cancel: threading.Event) -> None:
            calls.append(1)
            release.wait(timeout=5)

        gate = ReconcileGate(runnable)
        errors: list[BaseException] = []

        def waiter() -> None:
            try:
                gate.wait(timeout=5)
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=waiter) for _ in range(5)]
        for thread in threads:
            thread.start()
        release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert calls == [1]
        assert errors == []
        assert gate.succeeded
        assert gate.state is GateState.COMPLETED

    def test_late_waiter_returns_without_rerunning(self) -> None:
        calls = []
        gate = ReconcileGate(lambda cancel: calls.append(1))

        gate.wait(timeout=5)
        gate.wait(timeout=5)

        assert calls == [1]
        assert gate.done.is_set()

    def test_error_is_replayed_to_every_waiter(self) -> None:
        failure = RuntimeError("list failed")
        seen: list[BaseException] = []

        def runnable(cancel: threading.Event) -> None:
            raise failure

        gate = ReconcileGate(runnable, on_error=seen.append)

        with pytest.raises(RuntimeError) as first:
            gate.wait(timeout=5)
        with pytest.raises(RuntimeError) as second:
            gate.wait(timeout=5)

        assert first.value is failure
        assert second.value is failure
        assert seen == [failure]
        assert not gate.succeeded

    def test_failing_error_handler_does_not_block_waiters(self) -> None:
        def runnable(cancel: threading.Event) -> None:
            raise ValueError("boom")

        def on_error(exc: BaseException) -> None:
            raise RuntimeError("handler broke")

        gate = ReconcileGate(runnable, on_error=on_error)

        with pytest.raises(ValueError, match="boom"):
            gate.wait(timeout=5)

    def test_cancelled_waiter_does_not_stop_the_run(self) -> None:
        release = threading.Event()
        finished = threading.Event()

        def runnable(cancel: threading.Event) -> None:
            release.wait(timeout=5)
            finished.set()

        gate = ReconcileGate(runnable)
        impatient = threading.Event()
        impatient.set()

        with pytest.raises(OperationCancelled):
            gate.wait(cancel=impatient)

        release.set()
        gate.wait(timeout=5)
        assert finished.is_set()
        assert gate.succeeded

    def test_timeout_raises_operation_cancelled(self) -> None:
        release = threading.Event()
        gate = ReconcileGate(lambda cancel: release.wait(timeout=5))

        with pytest.raises(OperationCancelled, match="timed out"):
            gate.wait(timeout=0.1)

        release.set()

    def test_first_callers_cancel_event_reaches_runnable(self) -> None:
        received: list[threading.Event] = []
        cancel = threading.Event()
        gate = ReconcileGate(received.append)

        gate.wait(cancel=cancel, timeout=5)

        assert received == [cancel]

    def test_already_cancelled_first_caller_does_not_start_the_run(self) -> None:
        received: list[threading.Event] = []

        def runnable(cancel: threading.Event) -> None:
            received.append(cancel)
            if cancel.is_set():
                raise OperationCancelled("sync cancelled")

        gate = ReconcileGate(runnable)
        cancelled = threading.Event()
        cancelled.set()

        with pytest.raises(OperationCancelled, match="before starting"):
            gate.wait(cancel=cancelled)
        assert gate.state is GateState.NOT_STARTED

        gate.wait(timeout=5)

        assert len(received) == 1
        assert not received[0].is_set()
        assert gate.succeeded

    def test_base_exception_still_completes_the_gate(self) -> None:
        interrupt = SystemExit("stop")

        def runnable(cancel: threading.Event) -> None:
            raise interrupt

        gate = ReconcileGate(runnable)

        with pytest.raises(SystemExit) as raised:
            gate.wait(timeout=5)

        assert raised.value is interrupt
        assert gate.state is GateState.COMPLETED
        assert not gate.succeeded
