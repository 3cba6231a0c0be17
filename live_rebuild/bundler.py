"""Bundle stage: drive the esbuild command line.

A full build returns a :class:`BundleHandle`. The pipeline keeps that handle
and calls :meth:`BundleHandle.rebuild` for every later build instead of
configuring a new one. ``rebuild`` reports errors in its result rather than
raising; an exception from ``rebuild`` means the handle itself is unusable.
"""

from __future__ import annotations

import dataclasses
import logging
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from live_rebuild.errors import BundleFailed

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "BundleOptions",
    "BundleResult",
    "BundleHandle",
    "Bundler",
    "CommandBundleHandle",
    "EsbuildBundler",
    "DEFAULT_LOADERS",
]

DEFAULT_LOADERS: Dict[str, str] = {
    ".woff": "file",
    ".woff2": "file",
    ".eot": "file",
    ".ttf": "file",
    ".svg": "file",
    ".png": "file",
}


@dataclass
class BundleOptions:
    """esbuild options understood by live-rebuild.

    Attributes:
        entry_points (Dict[str, str]): Output name to entry file.
        outdir (str): Output directory.
        bundle (bool): Inline imported dependencies.
        minify (bool): Minify the output.
        sourcemap (bool): Emit source maps.
        target (List[str]): Browser targets, e.g. ``["firefox85", "chrome89"]``.
        loader (Dict[str, str]): Extension to loader, e.g. ``{".png": "file"}``.
        log_level (str): esbuild log level.
        inject (List[str]): Files injected into every output file.
    """

    entry_points: Dict[str, str]
    outdir: str
    bundle: bool = True
    minify: bool = True
    sourcemap: bool = True
    target: List[str] = field(default_factory=lambda: ["firefox85", "chrome89"])
    loader: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_LOADERS))
    log_level: str = "info"
    inject: List[str] = field(default_factory=list)

    def replace(self, **overrides: Any) -> BundleOptions:
        return dataclasses.replace(self, **overrides)

    def to_args(self) -> List[str]:
        """Render the options as esbuild command line arguments."""
        args = [f"{name}={path}" for name, path in self.entry_points.items()]
        if self.bundle:
            args.append("--bundle")
        if self.minify:
            args.append("--minify")
        if self.sourcemap:
            args.append("--sourcemap")
        if self.target:
            args.append("--target=" + ",".join(self.target))
        for ext, kind in self.loader.items():
            args.append(f"--loader:{ext}={kind}")
        args.append(f"--outdir={self.outdir}")
        if self.log_level:
            args.append(f"--log-level={self.log_level}")
        for path in self.inject:
            args.append(f"--inject:{path}")
        return args


@dataclass
class BundleResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class BundleHandle(Protocol):
    def rebuild(self) -> BundleResult:
        ...


class Bundler(Protocol):
    def build(self, **overrides: Any) -> BundleHandle:
        ...


def _run_esbuild(command: List[str], cwd: Optional[Path]) -> BundleResult:
    """Run esbuild once, echoing its diagnostics and collecting errors and warnings.

    Raises:
        OSError: If the executable cannot be started.
    """
    completed = subprocess.run(
        command,
        cwd=cwd,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        check=False,
    )
    output = completed.stderr or ""
    if output:
        sys.stderr.write(output)
        sys.stderr.flush()

    result = BundleResult()
    for line in output.splitlines():
        stripped = line.strip()
        if "[ERROR]" in stripped:
            result.errors.append(stripped)
        elif "[WARNING]" in stripped:
            result.warnings.append(stripped)
    if completed.returncode != 0 and not result.errors:
        result.errors.append(f"esbuild exited with code {completed.returncode}")
    return result


class CommandBundleHandle:
    """Handle for a completed build; ``rebuild`` re-runs the same esbuild command."""

    __slots__ = ("command", "cwd", "rebuilds")

    def __init__(self, command: List[str], cwd: Optional[Path] = None) -> None:
        self.command = command
        self.cwd = cwd
        self.rebuilds = 0

    def rebuild(self) -> BundleResult:
        self.rebuilds += 1
        return _run_esbuild(self.command, self.cwd)

    def __repr__(self) -> str:
        return f"<CommandBundleHandle rebuilds={self.rebuilds}>"


class EsbuildBundler:
    """Run full esbuild builds from a :class:`BundleOptions` template.

    Attributes:
        options (BundleOptions): Base options; ``build`` overrides are applied on top.
        executable (str): Path to the esbuild binary.
        cwd (Optional[Path]): Working directory for esbuild.
    """

    def __init__(
        self,
        options: BundleOptions,
        executable: Union[str, Path] = "esbuild",
        cwd: Optional[Union[str, Path]] = None,
    ) -> None:
        self.options = options
        self.executable = str(executable)
        self.cwd = Path(cwd) if cwd is not None else None

    def command_for(self, options: BundleOptions) -> List[str]:
        return [self.executable, *options.to_args()]

    def build(self, **overrides: Any) -> CommandBundleHandle:
        """Perform a full build.

        Args:
            **overrides: ``BundleOptions`` fields to override for this build.

        Returns:
            CommandBundleHandle: Handle that re-runs this exact build.

        Raises:
            BundleFailed: If esbuild cannot be started or reports errors.
        """
        options = self.options.replace(**overrides)
        command = self.command_for(options)
        logger.debug(f"Running bundler: {' '.join(command)}")
        try:
            result = _run_esbuild(command, self.cwd)
        except OSError as e:
            raise BundleFailed(f"Could not run esbuild ({self.executable}): {e}") from e
        if not result.ok:
            raise BundleFailed(f"Bundle failed with {len(result.errors)} error(s)")
        return CommandBundleHandle(command, self.cwd)

    def __repr__(self) -> str:
        return f"<EsbuildBundler executable={self.executable}>"
