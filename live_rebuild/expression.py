"""Declarative watch expressions.

A watch expression is an immutable predicate tree evaluated against paths
relative to the watch root (always using forward slashes). The node types
mirror the term vocabulary of common file watch services:

    * ``AllOf`` / ``AnyOf`` / ``Not``: boolean combinators.
    * ``Match``: shell-style glob against the basename, or against the whole
      relative path when ``scope`` is ``"wholename"``.
    * ``DirName``: true when the path lies anywhere below a directory.

The expression used by watch mode is produced once at session start by
:func:`build_watch_expression` and never mutated afterwards.
"""

from __future__ import annotations

import glob
import logging
import os
import posixpath
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import TYPE_CHECKING, Any, FrozenSet, Iterable, List, Tuple, Union

if TYPE_CHECKING:
    from live_rebuild.config import Config

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "WatchExpression",
    "AllOf",
    "AnyOf",
    "Not",
    "Match",
    "DirName",
    "DEFAULT_EXTENSIONS",
    "build_config_paths",
    "build_watch_expression",
]

DEFAULT_EXTENSIONS = (".res", ".js", ".mjs", ".json", ".css", ".scss", ".sass")
MATCH_SCOPES = ("basename", "wholename")


def normalize_path(path: str) -> str:
    """Return ``path`` with forward slashes and no leading ``./``."""
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


class WatchExpression:
    """Base class of all expression nodes."""

    __slots__ = ()

    def matches(self, path: str) -> bool:
        raise NotImplementedError

    def to_terms(self) -> List[Any]:
        """Return the expression as nested lists (watch service wire form)."""
        raise NotImplementedError


@dataclass(frozen=True)
class AllOf(WatchExpression):
    terms: Tuple[WatchExpression, ...]

    def matches(self, path: str) -> bool:
        return all(term.matches(path) for term in self.terms)

    def to_terms(self) -> List[Any]:
        return ["allof", *[term.to_terms() for term in self.terms]]


@dataclass(frozen=True)
class AnyOf(WatchExpression):
    terms: Tuple[WatchExpression, ...]

    def matches(self, path: str) -> bool:
        return any(term.matches(path) for term in self.terms)

    def to_terms(self) -> List[Any]:
        return ["anyof", *[term.to_terms() for term in self.terms]]


@dataclass(frozen=True)
class Not(WatchExpression):
    term: WatchExpression

    def matches(self, path: str) -> bool:
        return not self.term.matches(path)

    def to_terms(self) -> List[Any]:
        return ["not", self.term.to_terms()]


@dataclass(frozen=True)
class Match(WatchExpression):
    """Glob match against the basename (default) or the whole relative path.

    Matching is case sensitive. In ``wholename`` scope ``*`` also matches
    ``/``, so ``*/lib/**`` matches ``pkg/lib/es6/Index.bs.js``.
    """

    pattern: str
    scope: str = "basename"

    def __post_init__(self) -> None:
        if self.scope not in MATCH_SCOPES:
            raise ValueError(f"Invalid match scope: {self.scope!r}")

    def matches(self, path: str) -> bool:
        path = normalize_path(path)
        if self.scope == "wholename":
            return fnmatchcase(path, self.pattern)
        return fnmatchcase(posixpath.basename(path), self.pattern)

    def to_terms(self) -> List[Any]:
        if self.scope == "basename":
            return ["match", self.pattern]
        return ["match", self.pattern, self.scope]


@dataclass(frozen=True)
class DirName(WatchExpression):
    """True when the path is inside ``directory`` (at any depth)."""

    directory: str

    def matches(self, path: str) -> bool:
        directory = normalize_path(self.directory).rstrip("/")
        if not directory or directory == ".":
            return True
        return normalize_path(path).startswith(directory + "/")

    def to_terms(self) -> List[Any]:
        return ["dirname", self.directory]


def any_extension(extensions: Iterable[str]) -> AnyOf:
    """Build an ``AnyOf`` of basename matches, one per extension (deduplicated, ordered)."""
    seen: List[str] = []
    for ext in extensions:
        if not ext:
            continue
        if not ext.startswith("."):
            ext = "." + ext
        if ext not in seen:
            seen.append(ext)
    return AnyOf(tuple(Match("*" + ext) for ext in seen))


def build_config_paths(workspace_root: Union[str, Path], files: Iterable[Union[str, Path]]) -> FrozenSet[str]:
    """Express build configuration files relative to the watch root.

    Files outside the watch root can never show up in a change event, so they
    are left out (e.g. the entry module of a regular, non-editable install).

    Args:
        workspace_root: The watch root.
        files: Absolute (or root-relative) paths of the configuration files.

    Returns:
        FrozenSet[str]: Normalized relative paths, as they appear in change events.
    """
    root = os.path.abspath(str(workspace_root))
    relative = set()
    for f in files:
        path = str(f)
        if os.path.isabs(path):
            try:
                path = os.path.relpath(path, root)
            except ValueError:
                # Different drive on Windows
                path = os.pardir
        path = normalize_path(path)
        if path == os.pardir or path.startswith(os.pardir + "/"):
            logger.debug(f"[watcher] {f} is outside {root}, changes to it are not watched")
            continue
        relative.add(path)
    return frozenset(relative)


def build_watch_expression(config: Config) -> WatchExpression:
    """Compile the watch-mode expression from the configuration.

    Includes the source extensions of interest, every extension the bundler
    has a loader for and the build configuration files inside the watch root.
    Excludes the bundler output directory, the compiler's ``lib/`` output and
    service worker artifacts.

    Args:
        config (Config): The resolved configuration.

    Returns:
        WatchExpression: The immutable expression tree.
    """
    extensions = list(DEFAULT_EXTENSIONS) + list(config.esbuild.loader.keys())
    outdir = posixpath.relpath(
        normalize_path(str(config.esbuild.outdir)),
        normalize_path(str(config.workspace_root)),
    )
    config_paths = sorted(build_config_paths(config.workspace_root, config.build_config_files))
    return AllOf(
        (
            AnyOf(
                any_extension(extensions).terms
                + tuple(Match(glob.escape(path), "wholename") for path in config_paths)
            ),
            Not(DirName(outdir)),
            Not(AnyOf((Match("lib/**", "wholename"), Match("*/lib/**", "wholename")))),
            Not(Match("sw.js")),
            Not(Match("workbox-*.js")),
        )
    )
