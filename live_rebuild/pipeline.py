"""The compile + bundle build pipeline.

Responsibility:
    Run one build: compile, then bundle, then announce the result to the
    notifier. The first build is a full bundle that yields a reusable handle;
    every later build reuses that handle for an incremental rebuild.

Design:
    - **Fail fast**: a failed compile never proceeds to bundling, so stale or
      partial compiler output is never bundled.
    - **Stage markers**: each stage logs ``[name] starting``, ``[name] succeeded``
      or ``[name] error: ...`` so it is visible which stage failed when several
      builds run back to back.
    - **Handle ownership**: the bundle handle is owned by the pipeline and only
      touched from inside ``run_once``, which the scheduler never runs
      concurrently.
    - **Retry from scratch**: while there is no handle (first build not done yet
      or the handle was dropped), every run performs a full build.

Service worker generation is a production build concern and never runs here.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from live_rebuild.bundler import BundleHandle, Bundler
from live_rebuild.compiler import Compiler
from live_rebuild.errors import CompileFailed, IncrementalRebuildFailed
from live_rebuild.notifier import SubscriberNotifier

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["BuildPipeline", "stage", "LIVE_RELOAD_SCRIPT"]

LIVE_RELOAD_SCRIPT = Path(__file__).parent / "static" / "live_reload.js"


@contextmanager
def stage(name: str) -> Iterator[None]:
    """Log start, success or failure of a build stage.

    Exceptions are logged and re-raised unchanged.

    Example:
        >>> with stage("rescript"):
        ...     run_compiler()
    """
    logger.info(f"[{name}] starting")
    try:
        yield
    except Exception as e:
        logger.error(f"[{name}] error: {e}")
        raise
    logger.info(f"[{name}] succeeded")


class BuildPipeline:
    """Compile, bundle and notify.

    Instances are callable, so the pipeline itself is the work closure handed
    to :class:`~live_rebuild.scheduler.SerialRebuildScheduler`.

    Attributes:
        compiler (Compiler): Runs the compile stage.
        bundler (Bundler): Runs full builds.
        notifier (SubscriberNotifier): Told about every successful build.
        inject (List[str]): Scripts injected into the first (full) bundle.
        builds_succeeded (int): Number of successful runs.
        builds_failed (int): Number of failed runs.
    """

    def __init__(
        self,
        compiler: Compiler,
        bundler: Bundler,
        notifier: SubscriberNotifier,
        inject: Optional[List[Union[str, Path]]] = None,
    ) -> None:
        self.compiler = compiler
        self.bundler = bundler
        self.notifier = notifier
        if inject is None:
            inject = [LIVE_RELOAD_SCRIPT]
        self.inject = [str(path) for path in inject]
        self._handle: Optional[BundleHandle] = None
        self.builds_succeeded = 0
        self.builds_failed = 0
        self.last_build_duration = 0.0

    @property
    def handle(self) -> Optional[BundleHandle]:
        return self._handle

    @property
    def is_first_run(self) -> bool:
        """True while no bundle handle exists, i.e. the next bundle is a full build."""
        return self._handle is None

    def __call__(self) -> None:
        self.run_once()

    def run_once(self, is_first_run: Optional[bool] = None) -> None:
        """Run one complete build.

        Args:
            is_first_run (Optional[bool]): Force a full bundle when True. When
                omitted (or False without a handle) the choice follows
                :attr:`is_first_run`.

        Returns:
            None

        Raises:
            CompileFailed: If the compiler exits with a non-zero status.
            BundleFailed: If the full bundle fails.
            IncrementalRebuildFailed: If the incremental rebuild reports errors.
        """
        full_build = self.is_first_run if is_first_run is None else (is_first_run or self._handle is None)
        start = time.monotonic()
        try:
            self._compile()
            if full_build:
                self._full_bundle()
            else:
                self._incremental_bundle()
        except Exception:
            self.builds_failed += 1
            raise
        finally:
            self.last_build_duration = time.monotonic() - start

        self.builds_succeeded += 1
        self.notifier.broadcast()

    def _compile(self) -> None:
        with stage("rescript"):
            exit_code = self.compiler.compile()
            if exit_code != 0:
                raise CompileFailed(exit_code)

    def _full_bundle(self) -> None:
        with stage("esbuild"):
            handle = self.bundler.build(minify=False, inject=list(self.inject))
        self._handle = handle

    def _incremental_bundle(self) -> None:
        handle = self._handle
        assert handle is not None
        with stage("esbuild incremental"):
            try:
                result = handle.rebuild()
            except IncrementalRebuildFailed:
                raise
            except Exception as e:
                # Unusable handle: the next run starts over with a full build
                self._handle = None
                raise IncrementalRebuildFailed(f"Incremental bundle failed, handle discarded: {e}") from e
            if result.errors:
                raise IncrementalRebuildFailed(errors=result.errors)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "builds_succeeded": self.builds_succeeded,
            "builds_failed": self.builds_failed,
            "last_build_duration": self.last_build_duration,
            "has_handle": self._handle is not None,
            "stamp": self.notifier.stamp,
        }

    def __repr__(self) -> str:
        return f"<BuildPipeline first_run={self.is_first_run} ok={self.builds_succeeded} failed={self.builds_failed}>"
