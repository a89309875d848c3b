"""Tracks the child processes of the running wave and stops them on SIGINT/SIGTERM."""

from __future__ import annotations

import signal
import subprocess
import threading
from contextlib import contextmanager
from typing import Iterator, Sequence

RUNNING = "running"
TERMINATING = "terminating"


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class ProcessSupervisor:
    """Owns the per-wave process registry.

    The wave barrier and the signal callback read the same registry. Once a
    signal arrives the supervisor moves to ``TERMINATING`` for good: the token
    is cancelled so no further task is dispatched, and every live process of
    the current wave gets a single SIGTERM.
    """

    def __init__(self, logger, token: CancellationToken | None = None):
        self.logger = logger
        self.token = token or CancellationToken()
        self.state = RUNNING
        # Reentrant: signal callbacks run on the main thread, possibly while it holds the lock.
        self._lock = threading.RLock()
        self._processes: list = []
        # id -> process; holding the process keeps its id from being reused.
        self._terminated: dict = {}

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def begin_wave(self) -> None:
        with self._lock:
            self._processes = []
            self._terminated = {}

    def register(self, process) -> None:
        with self._lock:
            self._processes.append(process)

    def snapshot(self) -> list:
        with self._lock:
            return list(self._processes)

    def wait_all(self, poll_interval: float = 0.5, progress=None) -> list[int | None]:
        """Join every registered process in registration order.

        Returns the exit codes; ``None`` marks a process still running when the
        barrier was abandoned after cancellation.
        """
        codes = []
        for process in self.snapshot():
            codes.append(self._wait_one(process, poll_interval))
            if progress is not None:
                progress.update(1)
        return codes

    def _wait_one(self, process, poll_interval: float) -> int | None:
        while True:
            try:
                return process.wait(timeout=poll_interval)
            except subprocess.TimeoutExpired:
                if self.token.cancelled:
                    return process.poll()

    def terminate_all(self) -> int:
        """Send SIGTERM to every live process not already asked to stop."""
        sent = 0
        with self._lock:
            for process in self._processes:
                if id(process) in self._terminated:
                    continue
                self._terminated[id(process)] = process
                if process.poll() is not None:
                    continue
                self.logger.info("Terminating process %s...", process.pid)
                try:
                    process.terminate()
                except OSError:
                    # Exited between poll() and terminate().
                    continue
                sent += 1
        return sent

    def handle_signal(self, signum, frame) -> None:
        if self.state == TERMINATING:
            return
        self.state = TERMINATING
        self.logger.warning("Caught %s, stopping background jobs...", _signal_name(signum))
        self.token.cancel()
        self.terminate_all()
        self.logger.info("Cleanup complete.")

    @contextmanager
    def install_signal_handlers(
        self, signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM)
    ) -> Iterator["ProcessSupervisor"]:
        previous = {signum: signal.signal(signum, self.handle_signal) for signum in signals}
        try:
            yield self
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)


def _signal_name(signum) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
