"""
Registry of spawned agent processes.

Every child the loop starts is registered here so that a SIGTERM/SIGINT to
the host, or interpreter exit, takes the children down with it. Termination
is two-step: SIGTERM first, then SIGKILL for anything still alive after the
grace period.

The registry is owned by whoever creates it (normally the JobEngine) and
passed down, so tests can build an isolated instance.
"""

import atexit
import logging
import os
import signal
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 5.0
POLL_INTERVAL = 0.05

HOST_SIGNALS = (signal.SIGTERM, signal.SIGINT)

Scheduler = Callable[[float, Callable[[], None]], None]


def _timer_scheduler(delay: float, fn: Callable[[], None]) -> None:
    """Run fn after delay on a daemon timer thread."""
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()


def _is_alive(proc) -> bool:
    return getattr(proc, "returncode", None) is None


def _has_exited(proc) -> bool:
    """Check a child without reaping it.

    returncode alone is not enough here: asyncio only updates it from the
    event loop, which is blocked while a signal handler or atexit hook runs.
    """
    if not _is_alive(proc):
        return True
    try:
        return os.waitid(os.P_PID, proc.pid, os.WEXITED | os.WNOHANG | os.WNOWAIT) is not None
    except ChildProcessError:
        return True


def _send(proc, sig: int, label: str) -> None:
    """Deliver a signal, ignoring processes that are already gone."""
    try:
        if sig == signal.SIGKILL:
            proc.kill()
        else:
            proc.send_signal(sig)
    except (ProcessLookupError, OSError) as e:
        logger.debug(f"Signal {sig} to {label} (pid {getattr(proc, 'pid', '?')}) failed: {e}")


class ProcessRegistry:
    """Tracks live child processes keyed by process handle."""

    def __init__(
        self,
        grace_period: float = DEFAULT_GRACE_SECONDS,
        scheduler: Optional[Scheduler] = None,
    ):
        self.grace_period = grace_period
        self._schedule = scheduler or _timer_scheduler
        self._children: dict = {}
        # Reentrant: the signal handler runs on the main thread and may
        # interrupt register/unregister while they hold the lock.
        self._lock = threading.RLock()
        self._previous_handlers: dict = {}
        self._atexit_registered = False

    def register(self, proc, label: str) -> None:
        with self._lock:
            self._children[proc] = label
        logger.debug(f"Registered {label} (pid {getattr(proc, 'pid', '?')})")

    def unregister(self, proc) -> None:
        with self._lock:
            self._children.pop(proc, None)

    async def wait(self, proc) -> int:
        """Await natural exit of an asyncio process and drop it from the table."""
        try:
            return await proc.wait()
        finally:
            self.unregister(proc)

    def count(self) -> int:
        with self._lock:
            return len(self._children)

    def label_of(self, proc) -> Optional[str]:
        with self._lock:
            return self._children.get(proc)

    def terminate(self, proc, grace_period: Optional[float] = None) -> None:
        """SIGTERM one process, then SIGKILL it if still alive after the grace period."""
        label = self.label_of(proc) or "process"
        grace = self.grace_period if grace_period is None else grace_period

        if _is_alive(proc):
            _send(proc, signal.SIGTERM, label)

        def escalate():
            if _is_alive(proc):
                logger.warning(f"{label} ignored SIGTERM for {grace}s, sending SIGKILL")
                _send(proc, signal.SIGKILL, label)

        self._schedule(grace, escalate)

    def kill_all(self) -> None:
        """Terminate every registered process and wait for them.

        SIGTERM now, then SIGKILL for survivors once the grace period is
        up. Blocks for at most the grace period; the host is about to exit,
        so a timer thread would die before it fired.
        """
        with self._lock:
            children = list(self._children.items())
        if not children:
            return

        logger.info(f"Terminating {len(children)} child process(es)")
        survivors = []
        for proc, label in children:
            if _is_alive(proc):
                _send(proc, signal.SIGTERM, label)
                survivors.append((proc, label))

        deadline = time.monotonic() + self.grace_period
        survivors = [(p, l) for p, l in survivors if not _has_exited(p)]
        while survivors and time.monotonic() < deadline:
            time.sleep(POLL_INTERVAL)
            survivors = [(p, l) for p, l in survivors if not _has_exited(p)]

        for proc, label in survivors:
            logger.warning(f"{label} ignored SIGTERM for {self.grace_period}s, sending SIGKILL")
            _send(proc, signal.SIGKILL, label)

    def _on_signal(self, signum, frame) -> None:
        self.kill_all()
        previous = self._previous_handlers.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif previous != signal.SIG_IGN:
            raise SystemExit(128 + signum)

    def install_signal_handlers(self) -> None:
        """Hook host termination signals and interpreter exit.

        Must be called from the main thread. Previous handlers are chained.
        """
        for sig in HOST_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self._on_signal)
        if not self._atexit_registered:
            atexit.register(self.kill_all)
            self._atexit_registered = True

    def uninstall_signal_handlers(self) -> None:
        """Restore the handlers that were active before install."""
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
        if self._atexit_registered:
            atexit.unregister(self.kill_all)
            self._atexit_registered = False
