"""Exception hierarchy for live-rebuild."""

from __future__ import annotations

from typing import List, Optional


class LiveRebuildError(Exception):
    """Base class for all live-rebuild errors."""


class BuildError(LiveRebuildError):
    """A single build failed. Recovered locally by the scheduler."""


class CompileFailed(BuildError):
    """The compiler exited with a non-zero status."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"Compilation failed (exit code {exit_code})")
        self.exit_code = exit_code


class BundleFailed(BuildError):
    """The full bundle build failed."""


class IncrementalRebuildFailed(BuildError):
    """The incremental bundle rebuild reported errors."""

    def __init__(self, message: str = "Incremental bundle failed", errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class FatalConfigChange(LiveRebuildError):
    """One of the build configuration files changed; the process must restart."""

    def __init__(self, paths: List[str]) -> None:
        super().__init__(f"Build configuration changed: {', '.join(paths)}")
        self.paths = paths


class WatchEstablishmentFailed(LiveRebuildError):
    """The file watch could not be established."""
