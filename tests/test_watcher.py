from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import List
from unittest.mock import MagicMock

import pytest
from watchdog.events import (
    DirCreatedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from live_rebuild.errors import WatchEstablishmentFailed
from live_rebuild.expression import AnyOf, Match
from live_rebuild.filter import ChangeBatch, ChangeEvent, ChangeKind
from live_rebuild.watcher import ChangeCollector, DebounceTimer, WatchService

RES_OR_JS = AnyOf((Match("*.res"), Match("*.js")))


class Flushes:
    def __init__(self) -> None:
        self.groups: List[List[ChangeEvent]] = []
        self.event = threading.Event()

    def __call__(self, events: List[ChangeEvent]) -> None:
        self.groups.append(events)
        self.event.set()


def test_debounce_timer_coalesces_schedules() -> None:
    fired = []
    done = threading.Event()

    def callback() -> None:
        fired.append(time.monotonic())
        done.set()

    timer = DebounceTimer(0.05, callback)
    for _ in range(5):
        timer.schedule()
        time.sleep(0.01)

    assert done.wait(timeout=2.0)
    time.sleep(0.1)
    assert len(fired) == 1
    assert timer.fired == 1
    assert not timer.pending
    timer.stop()


def test_debounce_timer_stop_prevents_callback() -> None:
    callback = MagicMock()
    timer = DebounceTimer(0.05, callback)
    timer.schedule()
    timer.stop()
    time.sleep(0.1)

    callback.assert_not_called()
    timer.schedule()
    time.sleep(0.1)
    callback.assert_not_called()


def test_collector_relative_paths(temp_dir: Path) -> None:
    collector = ChangeCollector(temp_dir, Flushes(), debounce_seconds=10)

    assert collector.relative(str(temp_dir / "src" / "A.res")) == "src/A.res"
    assert collector.relative(str(temp_dir)) is None
    assert collector.relative(str(temp_dir.parent / "elsewhere.res")) is None
    collector.stop()


def test_collector_maps_events_and_dedupes(temp_dir: Path) -> None:
    flushes = Flushes()
    collector = ChangeCollector(temp_dir, flushes, debounce_seconds=10)

    collector.on_created(FileCreatedEvent(str(temp_dir / "src" / "A.res")))
    collector.on_modified(FileModifiedEvent(str(temp_dir / "src" / "A.res")))
    collector.on_deleted(FileDeletedEvent(str(temp_dir / "old.js")))
    collector.on_moved(FileMovedEvent(str(temp_dir / "B.res"), str(temp_dir / "C.res")))
    collector.on_created(DirCreatedEvent(str(temp_dir / "newdir")))
    collector.flush()
    collector.stop()

    assert flushes.groups == [
        [
            ChangeEvent("src/A.res", ChangeKind.MODIFIED),
            ChangeEvent("old.js", ChangeKind.DELETED),
            ChangeEvent("B.res", ChangeKind.DELETED),
            ChangeEvent("C.res", ChangeKind.CREATED),
        ]
    ]
    assert collector.events_detected == 5
    assert collector.total_debounced_events == 1


def test_collector_flushes_after_debounce(temp_dir: Path) -> None:
    flushes = Flushes()
    collector = ChangeCollector(temp_dir, flushes, debounce_seconds=0.02)

    collector.on_modified(FileModifiedEvent(str(temp_dir / "A.res")))
    collector.on_modified(FileModifiedEvent(str(temp_dir / "B.res")))

    assert flushes.event.wait(timeout=2.0)
    collector.stop()
    assert [e.path for e in flushes.groups[0]] == ["A.res", "B.res"]


def test_collector_batch_size_limit_flushes_immediately(temp_dir: Path) -> None:
    flushes = Flushes()
    collector = ChangeCollector(temp_dir, flushes, debounce_seconds=10, batch_size_limit=2)

    collector.on_modified(FileModifiedEvent(str(temp_dir / "A.res")))
    collector.on_modified(FileModifiedEvent(str(temp_dir / "B.res")))

    assert flushes.event.wait(timeout=2.0)
    collector.stop()


def test_collector_empty_flush_is_noop(temp_dir: Path) -> None:
    flushes = Flushes()
    collector = ChangeCollector(temp_dir, flushes, debounce_seconds=10)
    collector.flush()
    collector.stop()
    assert flushes.groups == []


def test_watch_project_missing_dir(temp_dir: Path, mock_observer: MagicMock) -> None:
    service = WatchService()
    with pytest.raises(WatchEstablishmentFailed, match="not a directory"):
        service.watch_project(temp_dir / "missing")
    mock_observer.assert_not_called()


def test_watch_project_observer_failure(temp_dir: Path, mock_observer: MagicMock) -> None:
    mock_observer.return_value.start.side_effect = OSError(28, "inotify watch limit reached")
    service = WatchService()

    with pytest.raises(WatchEstablishmentFailed, match="inotify"):
        service.watch_project(temp_dir)


def test_subscribe_requires_watch(mock_observer: MagicMock) -> None:
    service = WatchService()
    with pytest.raises(WatchEstablishmentFailed):
        service.subscribe("rebuild", RES_OR_JS, since=0, callback=MagicMock())


def test_subscription_filters_and_tags_clock(temp_dir: Path, mock_observer: MagicMock) -> None:
    service = WatchService()
    clock = service.watch_project(temp_dir)
    mock_observer.return_value.schedule.assert_called_once()
    assert mock_observer.return_value.schedule.call_args[1]["recursive"] is True

    callback = MagicMock()
    service.subscribe("rebuild", RES_OR_JS, since=clock, callback=callback)

    service._on_changes([ChangeEvent("README.md")])
    callback.assert_not_called()

    service._on_changes([ChangeEvent("README.md"), ChangeEvent("src/A.res")])
    callback.assert_called_once()
    batch: ChangeBatch = callback.call_args[0][0]
    assert batch.paths == ["src/A.res"]
    assert batch.clock == clock + 2
    service.stop()


def test_subscription_ignores_changes_before_since(temp_dir: Path, mock_observer: MagicMock) -> None:
    service = WatchService()
    service.watch_project(temp_dir)
    service._on_changes([ChangeEvent("early.res")])

    callback = MagicMock()
    service.subscribe("rebuild", RES_OR_JS, since=service.clock + 1, callback=callback)
    service._on_changes([ChangeEvent("still-too-early.res")])
    callback.assert_not_called()

    service._on_changes([ChangeEvent("late.res")])
    callback.assert_called_once()
    service.stop()


def test_failing_callback_is_logged(temp_dir: Path, mock_observer: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    service = WatchService()
    clock = service.watch_project(temp_dir)
    service.subscribe("rebuild", RES_OR_JS, since=clock, callback=MagicMock(side_effect=RuntimeError("boom")))

    service._on_changes([ChangeEvent("A.res")])

    assert "failed to handle batch: boom" in caplog.text
    assert service.get_statistics()["batches_delivered"] == 1
    service.stop()


def test_real_observer_delivers_batch(temp_dir: Path) -> None:
    received: List[ChangeBatch] = []
    got_batch = threading.Event()

    def on_batch(batch: ChangeBatch) -> None:
        received.append(batch)
        got_batch.set()

    service = WatchService(debounce_seconds=0.05)
    clock = service.watch_project(temp_dir)
    service.subscribe("rebuild", RES_OR_JS, since=clock, callback=on_batch)
    try:
        (temp_dir / "notes.txt").write_text("ignored")
        (temp_dir / "Main.res").write_text("let x = 1")
        assert got_batch.wait(timeout=5.0)
    finally:
        service.stop()

    paths = [p for batch in received for p in batch.paths]
    assert "Main.res" in paths
    assert "notes.txt" not in paths


def test_subscribe_logs_expression_and_unsubscribe_stops_delivery(
    temp_dir: Path, mock_observer: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    service = WatchService()
    clock = service.watch_project(temp_dir)
    callback = MagicMock()

    with caplog.at_level(logging.DEBUG, logger="live_rebuild.watcher"):
        service.subscribe("rebuild", RES_OR_JS, since=clock, callback=callback)
    assert "['anyof', ['match', '*.res'], ['match', '*.js']]" in caplog.text

    service.unsubscribe("rebuild")
    service._on_changes([ChangeEvent("A.res")])
    callback.assert_not_called()
    assert service.get_statistics()["clock"] == clock + 1
    service.stop()
