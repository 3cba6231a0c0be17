"""Watch session: glue between the file watch service and the rebuild scheduler.

State machine::

    UNINITIALIZED --start()--> WATCHING --fatal config change--> TERMINATING

A session is created once per process and never returns to
``UNINITIALIZED``. Once terminating, incoming batches are ignored so a fatal
configuration change never leads to another build.
"""

from __future__ import annotations

import enum
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union

from live_rebuild.errors import FatalConfigChange, WatchEstablishmentFailed
from live_rebuild.expression import WatchExpression
from live_rebuild.filter import ChangeBatch, ChangeFilter
from live_rebuild.scheduler import SerialRebuildScheduler

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["SessionState", "WatchSession", "EXIT_FATAL_CONFIG_CHANGE"]

EXIT_FATAL_CONFIG_CHANGE = 1
SUBSCRIPTION_NAME = "rebuild"


class SessionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    WATCHING = "watching"
    TERMINATING = "terminating"


class FileWatchService(Protocol):
    def watch_project(self, root: Union[str, Path]) -> int:
        ...

    def subscribe(
        self, name: str, expression: WatchExpression, since: int, callback: Callable[[ChangeBatch], None]
    ) -> None:
        ...

    def unsubscribe(self, name: str) -> None:
        ...

    def stop(self) -> None:
        ...


class WatchSession:
    """Route change batches from the watch service into the scheduler.

    Attributes:
        service (FileWatchService): The file watch service.
        change_filter (ChangeFilter): Relevance and fatal-change checks.
        scheduler (SerialRebuildScheduler): Serializes builds.
        work (Callable[[], Any]): The build closure (normally a ``BuildPipeline``).
        on_fatal (Callable[[FatalConfigChange], None]): Called once when a build
            configuration file changed. It must arrange for the process to
            exit with a non-zero status.
        state (SessionState): Current lifecycle state.
        clock (Optional[int]): Logical clock captured when the watch was established.
    """

    def __init__(
        self,
        service: FileWatchService,
        change_filter: ChangeFilter,
        scheduler: SerialRebuildScheduler,
        work: Callable[[], Any],
        on_fatal: Callable[[FatalConfigChange], None],
    ) -> None:
        self.service = service
        self.change_filter = change_filter
        self.scheduler = scheduler
        self.work = work
        self.on_fatal = on_fatal
        self.state = SessionState.UNINITIALIZED
        self.clock: Optional[int] = None
        self.batches_received = 0
        self.triggers = 0
        self._lock = threading.Lock()

    def start(self, root: Union[str, Path], expression: WatchExpression) -> None:
        """Establish the watch and subscribe for changes made from now on.

        Args:
            root (Union[str, Path]): Directory to watch.
            expression (WatchExpression): Filter sent to the watch service.

        Raises:
            RuntimeError: If the session was already started.
            WatchEstablishmentFailed: If the watch or subscription cannot be set up.
        """
        with self._lock:
            if self.state is not SessionState.UNINITIALIZED:
                raise RuntimeError(f"Watch session cannot start from state {self.state.value}")

        try:
            clock = self.service.watch_project(root)
        except WatchEstablishmentFailed:
            raise
        except Exception as e:
            raise WatchEstablishmentFailed(f"Could not establish watch on {root}: {e}") from e

        # Batches may arrive as soon as the subscription exists
        with self._lock:
            self.clock = clock
            self.state = SessionState.WATCHING
        try:
            self.service.subscribe(SUBSCRIPTION_NAME, expression, since=clock, callback=self.handle_batch)
        except Exception as e:
            with self._lock:
                self.clock = None
                self.state = SessionState.UNINITIALIZED
            if isinstance(e, WatchEstablishmentFailed):
                raise
            raise WatchEstablishmentFailed(f"Could not subscribe to changes in {root}: {e}") from e

        logger.info(f"[watcher] watching {root} (clock {clock})")

    def handle_batch(self, batch: ChangeBatch) -> None:
        """Handle one batch of changed files.

        A change to a build configuration file ends the session; otherwise a
        build-relevant batch triggers the scheduler.
        """
        with self._lock:
            if self.state is not SessionState.WATCHING:
                logger.debug(f"[watcher] ignoring batch in state {self.state.value}: {batch.paths}")
                return
            self.batches_received += 1

            fatal = self.change_filter.fatal_paths(batch)
            if fatal:
                self.state = SessionState.TERMINATING

        if fatal:
            error = FatalConfigChange(fatal)
            logger.error(f"[watcher] build config changed, restart required: {', '.join(fatal)}")
            self.on_fatal(error)
            return

        if not self.change_filter.should_rebuild(batch):
            logger.debug(f"[watcher] no build-relevant files in batch: {batch.paths}")
            return

        logger.info(f"[watcher] files changed: {self.change_filter.relevant_paths(batch)}")
        self.triggers += 1
        self.scheduler.trigger(self.work)

    def stop(self) -> None:
        """Stop receiving changes. A running build is left to finish."""
        with self._lock:
            if self.state is SessionState.WATCHING:
                self.state = SessionState.TERMINATING
        try:
            self.service.unsubscribe(SUBSCRIPTION_NAME)
            self.service.stop()
        except Exception as e:
            logger.error(f"Error stopping watch service: {e}")

    def __repr__(self) -> str:
        return f"<WatchSession state={self.state.value} clock={self.clock}>"
