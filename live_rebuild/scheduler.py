"""Serialized rebuild scheduling.

Responsibility:
    Turn an arbitrarily bursty stream of ``trigger()`` calls into a strictly
    sequential stream of build runs.

Design:
    - **Single permit**: at most one ``work`` invocation is in flight at any
      instant. The scheduler is the only mutual exclusion around the build
      pipeline and therefore around the bundle output directory.
    - **Coalescing**: triggers that arrive while a run is in flight set a
      single ``pending`` flag. However many arrive, exactly one follow-up run
      happens after the current one, and it re-invokes the most recently
      supplied ``work`` callable.
    - **Failure isolation**: an exception raised by ``work`` is logged and
      swallowed; the scheduler then checks ``pending`` as if the run had
      succeeded, so one broken build never blocks the next.
    - **Threads**: runs execute on a dedicated daemon worker thread. All state
      transitions happen while holding a ``threading.Condition``; ``work``
      itself runs with the condition released.

Key Invariants:
    - ``pending`` is only ever true while ``running`` is true.
    - ``trigger()`` never blocks on a build and never raises because of one.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["RebuildState", "SerialRebuildScheduler"]

Work = Callable[[], Any]


@dataclass(frozen=True)
class RebuildState:
    """Snapshot of the scheduler state."""

    running: bool = False
    pending: bool = False


class SerialRebuildScheduler:
    """Run build work one at a time, coalescing bursts into one follow-up run.

    Attributes:
        name (str): Name used for the worker thread and log messages.
        runs_started (int): Number of ``work`` invocations started.
        runs_failed (int): Number of ``work`` invocations that raised.
        triggers_coalesced (int): Number of triggers absorbed by the pending flag.

    Example:
        >>> scheduler = SerialRebuildScheduler()
        >>> scheduler.trigger(pipeline)
        >>> scheduler.wait_idle(timeout=30.0)
        True
    """

    __slots__ = (
        "name",
        "runs_started",
        "runs_failed",
        "triggers_coalesced",
        "_condition",
        "_running",
        "_pending",
        "_stopped",
        "_work",
        "_thread",
        "_last_duration",
    )

    def __init__(self, name: str = "rebuild") -> None:
        self.name = name
        self.runs_started = 0
        self.runs_failed = 0
        self.triggers_coalesced = 0
        self._condition = threading.Condition()
        self._running = False
        self._pending = False
        self._stopped = False
        self._work: Optional[Work] = None
        self._thread: Optional[threading.Thread] = None
        self._last_duration = 0.0

    @property
    def state(self) -> RebuildState:
        with self._condition:
            return RebuildState(running=self._running, pending=self._pending)

    def trigger(self, work: Work) -> None:
        """Request a run of ``work``.

        If nothing is running, a run starts immediately on the worker thread.
        Otherwise the request is folded into the single pending follow-up run.

        Args:
            work (Callable[[], Any]): The build closure. Its return value is ignored.

        Returns:
            None
        """
        with self._condition:
            if self._stopped:
                logger.debug(f"[{self.name}] trigger ignored, scheduler stopped")
                return
            self._work = work
            if self._running:
                if self._pending:
                    self.triggers_coalesced += 1
                self._pending = True
                logger.debug(f"[{self.name}] build in progress, queued one follow-up run")
                return
            self._running = True
            self._start_thread()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no run is in flight or pending.

        Args:
            timeout (Optional[float]): Maximum time to wait in seconds.

        Returns:
            bool: True if the scheduler is idle, False on timeout.
        """
        with self._condition:
            return self._condition.wait_for(lambda: not self._running, timeout=timeout)

    def stop(self) -> None:
        """Refuse further triggers and drop a pending follow-up run.

        An in-flight run is not interrupted.
        """
        with self._condition:
            self._stopped = True
            self._pending = False
            self._condition.notify_all()

    def get_statistics(self) -> Dict[str, Any]:
        with self._condition:
            return {
                "running": self._running,
                "pending": self._pending,
                "runs_started": self.runs_started,
                "runs_failed": self.runs_failed,
                "triggers_coalesced": self.triggers_coalesced,
                "last_duration": self._last_duration,
            }

    def _start_thread(self) -> None:
        """Start the worker thread. Must be called with the condition held."""
        try:
            self._thread = threading.Thread(
                target=self._run, name=f"{self.name.capitalize()}Worker", daemon=True
            )
            self._thread.start()
        except Exception:
            # Reset state so a later trigger can retry
            self._running = False
            self._pending = False
            self._condition.notify_all()
            logger.error(f"[{self.name}] failed to start worker thread", exc_info=True)

    def _run(self) -> None:
        """Worker loop: run, then re-run while a follow-up is pending."""
        with self._condition:
            while True:
                work = self._work
                self.runs_started += 1
                self._condition.release()
                failed = False
                start = time.monotonic()
                try:
                    if work is not None:
                        work()
                except Exception as e:
                    failed = True
                    logger.warning(f"[{self.name}] build failed: {e}")
                    logger.debug(f"[{self.name}] failure details", exc_info=True)
                finally:
                    self._condition.acquire()
                    self._last_duration = time.monotonic() - start
                if failed:
                    self.runs_failed += 1

                if self._pending and not self._stopped:
                    self._pending = False
                    continue
                break

            self._pending = False
            self._running = False
            self._thread = None
            self._condition.notify_all()

    def __repr__(self) -> str:
        return f"<SerialRebuildScheduler name={self.name} running={self._running} pending={self._pending}>"
