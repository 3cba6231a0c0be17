from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional
from unittest.mock import MagicMock, patch

import pytest

from live_rebuild.bundler import BundleResult
from live_rebuild.config import Config, load_config
from live_rebuild.notifier import SubscriberNotifier


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname).resolve()


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove LIVE_REBUILD_* variables so the environment never leaks into tests."""
    for name in list(os.environ):
        if name.startswith("LIVE_REBUILD_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project(temp_dir: Path) -> Path:
    """A minimal project directory with sources and a static dir."""
    root = temp_dir / "app"
    (root / "src").mkdir(parents=True)
    (root / "public").mkdir()
    (root / "src" / "Index.res").write_text("let x = 1\n", encoding="utf-8")
    (root / "public" / "index.html").write_text("<html>hello</html>", encoding="utf-8")
    return root


@pytest.fixture
def config(project: Path, clean_env: None) -> Config:
    return load_config({"root": str(project)})


class FakeClock:
    """Wall clock in seconds that only moves when told to."""

    def __init__(self, now: float = 1700000000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier(fake_clock: FakeClock) -> SubscriberNotifier:
    return SubscriberNotifier(clock=fake_clock)


class RecordingSubscriber:
    """Subscriber that records payloads; optionally fails like a dead socket."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.received: List[Dict[str, Any]] = []

    def send(self, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise BrokenPipeError("client went away")
        self.received.append(payload)


@pytest.fixture
def subscriber() -> RecordingSubscriber:
    return RecordingSubscriber()


@pytest.fixture
def make_subscriber() -> Any:
    """Factory for additional subscribers: ``make_subscriber(fail=True)``."""
    return RecordingSubscriber


class FakeCompiler:
    def __init__(self, exit_codes: Optional[List[int]] = None) -> None:
        self.exit_codes = list(exit_codes or [])
        self.calls = 0

    def compile(self) -> int:
        self.calls += 1
        if self.exit_codes:
            return self.exit_codes.pop(0)
        return 0


class FakeHandle:
    def __init__(self) -> None:
        self.rebuilds = 0
        self.results: List[Any] = []

    def rebuild(self) -> BundleResult:
        self.rebuilds += 1
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return BundleResult()


class FakeBundler:
    def __init__(self) -> None:
        self.builds: List[Dict[str, Any]] = []
        self.handles: List[FakeHandle] = []
        self.failures: List[Exception] = []

    def build(self, **overrides: Any) -> FakeHandle:
        self.builds.append(overrides)
        if self.failures:
            raise self.failures.pop(0)
        handle = FakeHandle()
        self.handles.append(handle)
        return handle


@pytest.fixture
def fake_compiler() -> FakeCompiler:
    return FakeCompiler()


@pytest.fixture
def fake_bundler() -> FakeBundler:
    return FakeBundler()


@pytest.fixture
def make_compiler() -> Any:
    """Factory for compilers with scripted exit codes: ``make_compiler([1, 0])``."""
    return FakeCompiler


class BlockingWork:
    """Work closure that blocks until released and records concurrency."""

    def __init__(self, fail_on: Optional[List[int]] = None) -> None:
        self.fail_on = set(fail_on or [])
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.started = threading.Event()
        self.release = threading.Event()
        self._lock = threading.Lock()

    def __call__(self) -> None:
        with self._lock:
            self.calls += 1
            call = self.calls
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            assert self.release.wait(timeout=5.0), "work was never released"
            if call in self.fail_on:
                raise RuntimeError(f"build {call} failed")
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def blocking_work() -> BlockingWork:
    return BlockingWork()


@pytest.fixture
def mock_observer() -> Generator[MagicMock, None, None]:
    """Patch the watchdog Observer used by the watch service."""
    with patch("live_rebuild.watcher.Observer") as mock_cls:
        yield mock_cls
