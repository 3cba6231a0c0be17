"""
File watch service implementation using watchdog.

Responsibility:
    Establish a recursive watch on a root directory and deliver batches of
    changed files, filtered by a :class:`~live_rebuild.expression.WatchExpression`,
    to subscribers. Each batch is tagged with a logical clock.

Design:
    - **Event-Driven**: Uses a `watchdog` observer; no polling.
    - **Debouncing**: Raw events are queued and a `DebounceTimer` coalesces a
      burst (an editor saving several files, a `git checkout`) into one batch.
      Reaching `batch_size_limit` queued events flushes immediately.
    - **Logical Clock**: The clock advances once per flushed batch.
      `watch_project()` returns the current clock; a subscription only receives
      batches with a later clock, i.e. changes made after it was established.
    - **Relative Paths**: Events are reported relative to the watch root with
      forward slashes. Directory events and paths outside the root are dropped.

Key Invariants:
    - Delivered batches are never empty.
    - Batches are delivered in clock order, one at a time, from the timer thread.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Union

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from live_rebuild.errors import WatchEstablishmentFailed
from live_rebuild.expression import WatchExpression, normalize_path
from live_rebuild.filter import ChangeBatch, ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DebounceTimer", "ChangeCollector", "Subscription", "WatchService"]

BatchCallback = Callable[[ChangeBatch], None]


class DebounceTimer:
    """Fire ``callback`` once a burst of ``schedule()`` calls has gone quiet.

    A single worker thread is started per burst and exits after firing, so an
    idle watcher holds no timer thread. ``schedule()`` during the callback
    starts a new burst on the same thread.

    Attributes:
        interval (float): Quiet period in seconds.
        callback (Callable[[], None]): Called on the timer thread; exceptions are logged.
        name (str): Thread name.
        fired (int): Number of callback invocations.
    """

    __slots__ = ("interval", "callback", "name", "fired", "_condition", "_deadline", "_stopped", "_thread")

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "DebounceTimer") -> None:
        self.interval = interval
        self.callback = callback
        self.name = name
        self.fired = 0
        self._condition = threading.Condition()
        # None while no burst is pending
        self._deadline: Optional[float] = None
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    @property
    def pending(self) -> bool:
        with self._condition:
            return self._deadline is not None

    def schedule(self) -> None:
        """Start a burst, or push the deadline of the current one back."""
        self._arm(time.monotonic() + self.interval)

    def trigger_now(self) -> None:
        """Fire as soon as the timer thread wakes up."""
        self._arm(0.0)

    def stop(self) -> None:
        """Discard any pending burst and refuse new ones."""
        with self._condition:
            self._stopped = True
            self._deadline = None
            self._condition.notify_all()

    def _arm(self, deadline: float) -> None:
        with self._condition:
            if self._stopped:
                return
            self._deadline = deadline
            if self._thread is None:
                self._start_thread()
            else:
                self._condition.notify()

    def _start_thread(self) -> None:
        """Must be called with the condition held."""
        thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        try:
            thread.start()
        except RuntimeError:
            # Leave the burst pending; the next schedule() retries
            logger.error(f"Failed to start {self.name} thread", exc_info=True)
            return
        self._thread = thread

    def _run(self) -> None:
        with self._condition:
            while self._deadline is not None and not self._stopped:
                remaining = self._deadline - time.monotonic()
                if remaining > 0:
                    self._condition.wait(remaining)
                    continue

                self._deadline = None
                self.fired += 1
                self._condition.release()
                try:
                    self.callback()
                except Exception:
                    logger.error(f"Error in {self.name} callback", exc_info=True)
                finally:
                    self._condition.acquire()
            self._thread = None

    def __repr__(self) -> str:
        return f"<DebounceTimer name={self.name} interval={self.interval} pending={self._deadline is not None}>"


class ChangeCollector(FileSystemEventHandler):
    """Translate watchdog events into relative change events and queue them.

    Moves are reported as a deletion of the source and a creation of the
    destination. Within one flush, repeated events for the same path collapse
    to the last one.

    Attributes:
        root (Path): Absolute watch root.
        on_flush (Callable[[List[ChangeEvent]], None]): Receives each coalesced group.
        batch_size_limit (int): Queue length that forces an immediate flush.
    """

    def __init__(
        self,
        root: Path,
        on_flush: Callable[[List[ChangeEvent]], None],
        debounce_seconds: float = 0.1,
        batch_size_limit: int = 500,
    ) -> None:
        self.root = root.absolute()
        self._root_str = str(self.root)
        self.on_flush = on_flush
        self.batch_size_limit = max(1, batch_size_limit)
        self._lock = threading.Lock()
        self._queue: Deque[ChangeEvent] = deque()
        self._debounce_timer = DebounceTimer(debounce_seconds, self._on_debounce_fired, name="ChangeDebounce")
        self._stopped = False
        self.events_detected = 0
        self.total_debounced_events = 0

    def relative(self, raw_path: Union[str, bytes]) -> Optional[str]:
        """Return ``raw_path`` relative to the root, or None if it lies outside."""
        path = os.fsdecode(raw_path)
        try:
            rel = os.path.relpath(os.path.abspath(path), self._root_str)
        except ValueError:
            # Different drive on Windows
            return None
        if rel == os.curdir or rel == os.pardir or rel.startswith(os.pardir + os.sep):
            return None
        return normalize_path(rel)

    def _queue_event(self, raw_path: Union[str, bytes], kind: ChangeKind) -> None:
        if self._stopped:
            return
        rel = self.relative(raw_path)
        if rel is None:
            return
        with self._lock:
            self._queue.append(ChangeEvent(rel, kind))
            self.events_detected += 1
            if len(self._queue) >= self.batch_size_limit:
                self._debounce_timer.trigger_now()
            else:
                self._debounce_timer.schedule()

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._queue_event(event.src_path, ChangeKind.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._queue_event(event.src_path, ChangeKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._queue_event(event.src_path, ChangeKind.DELETED)

    def on_moved(self, event: FileMovedEvent) -> None:
        if event.is_directory:
            return
        self._queue_event(event.src_path, ChangeKind.DELETED)
        self._queue_event(event.dest_path, ChangeKind.CREATED)

    def flush(self) -> None:
        """Deliver everything queued so far (used by the timer and on shutdown)."""
        self._on_debounce_fired()

    def _on_debounce_fired(self) -> None:
        with self._lock:
            pending = list(self._queue)
            self._queue.clear()
        if not pending:
            return

        latest: "OrderedDict[str, ChangeKind]" = OrderedDict()
        for change in pending:
            latest.pop(change.path, None)
            latest[change.path] = change.kind
        self.total_debounced_events += len(pending) - len(latest)
        self.on_flush([ChangeEvent(path, kind) for path, kind in latest.items()])

    def stop(self) -> None:
        self._stopped = True
        self._debounce_timer.stop()

    def __repr__(self) -> str:
        return f"<ChangeCollector root={self.root}>"


@dataclass(frozen=True)
class Subscription:
    name: str
    expression: WatchExpression
    since: int
    callback: BatchCallback


class WatchService:
    """Watchdog-backed file watch service with subscriptions and a logical clock.

    Example:
        >>> service = WatchService()
        >>> clock = service.watch_project("/path/to/workspace")
        >>> service.subscribe("rebuild", expression, since=clock, callback=on_batch)
        >>> # ...
        >>> service.stop()
    """

    def __init__(self, debounce_seconds: float = 0.1, batch_size_limit: int = 500) -> None:
        self.debounce_seconds = debounce_seconds
        self.batch_size_limit = batch_size_limit
        self.root: Optional[Path] = None
        self._observer: Optional[Observer] = None
        self._collector: Optional[ChangeCollector] = None
        self._lock = threading.Lock()
        self._clock = 0
        self._subscriptions: Dict[str, Subscription] = {}
        self.batches_delivered = 0

    @property
    def clock(self) -> int:
        with self._lock:
            return self._clock

    def watch_project(self, root: Union[str, Path]) -> int:
        """Start watching ``root`` recursively.

        Args:
            root (Union[str, Path]): Directory to watch.

        Returns:
            int: The logical clock at the moment the watch was established.

        Raises:
            WatchEstablishmentFailed: If the directory is missing or the observer
                cannot start (e.g. inotify limits).
        """
        root_path = Path(root).absolute()
        if not root_path.is_dir():
            raise WatchEstablishmentFailed(f"Watch root is not a directory: {root_path}")

        if self._observer is not None:
            if self.root == root_path:
                return self.clock
            raise WatchEstablishmentFailed(f"Already watching {self.root}")

        collector = ChangeCollector(
            root_path,
            self._on_changes,
            debounce_seconds=self.debounce_seconds,
            batch_size_limit=self.batch_size_limit,
        )
        observer = Observer()
        try:
            observer.schedule(collector, str(root_path), recursive=True)
            observer.start()
        except OSError as e:
            collector.stop()
            raise WatchEstablishmentFailed(
                f"Could not watch {root_path}: {e} (Check inotify limits?)"
            ) from e
        except Exception as e:
            collector.stop()
            raise WatchEstablishmentFailed(f"Could not start observer for {root_path}: {e}") from e

        self.root = root_path
        self._collector = collector
        self._observer = observer
        logger.info(f"[watcher] watch established on: {root_path} ({type(observer).__name__})")
        return self.clock

    def subscribe(self, name: str, expression: WatchExpression, since: int, callback: BatchCallback) -> None:
        """Register ``callback`` for batches matching ``expression`` newer than ``since``."""
        if self._observer is None:
            raise WatchEstablishmentFailed("subscribe() called before watch_project()")
        with self._lock:
            self._subscriptions[name] = Subscription(name, expression, since, callback)
        logger.debug(f"[watcher] subscription {name!r} since clock {since}: {expression.to_terms()}")

    def unsubscribe(self, name: str) -> None:
        with self._lock:
            self._subscriptions.pop(name, None)

    def _on_changes(self, events: List[ChangeEvent]) -> None:
        with self._lock:
            self._clock += 1
            clock = self._clock
            subscriptions = list(self._subscriptions.values())

        for sub in subscriptions:
            if clock <= sub.since:
                continue
            matching = [event for event in events if sub.expression.matches(event.path)]
            if not matching:
                continue
            batch = ChangeBatch(matching, clock=clock)
            self.batches_delivered += 1
            try:
                sub.callback(batch)
            except Exception as e:
                logger.error(f"[watcher] subscription {sub.name!r} failed to handle batch: {e}", exc_info=True)

    def stop(self) -> None:
        """Stop the debounce timer and the observer thread."""
        if self._collector:
            self._collector.stop()
        if self._observer:
            try:
                if self._observer.is_alive():
                    self._observer.stop()
                    self._observer.join(timeout=5.0)
                    if self._observer.is_alive():
                        logger.warning("Observer thread did not terminate within timeout.")
            except Exception as e:
                logger.error(f"Error stopping observer: {e}")
        self._observer = None
        self._collector = None
        logger.info("[watcher] stopped")

    def get_statistics(self) -> Dict[str, int]:
        collector = self._collector
        return {
            "clock": self.clock,
            "events_detected": collector.events_detected if collector else 0,
            "total_debounced_events": collector.total_debounced_events if collector else 0,
            "batches_delivered": self.batches_delivered,
        }

    def __repr__(self) -> str:
        return f"<WatchService root={self.root} clock={self._clock}>"
