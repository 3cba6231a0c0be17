"""Change events and the filter that decides whether they warrant a rebuild.

:class:`ChangeFilter` is stateless. It answers two questions about a batch of
changed files:

    * Does any file match the watch expression (``should_rebuild``)? The watch
      service already filters with the same expression; the check is repeated
      here so both sides can never drift apart silently.
    * Did one of the build configuration files change
      (``is_fatal_config_change``)? Such a change takes priority over a rebuild:
      the process must exit rather than keep running a stale pipeline.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Sequence

from live_rebuild.expression import WatchExpression, build_config_paths, normalize_path

__all__ = ["ChangeKind", "ChangeEvent", "ChangeBatch", "ChangeFilter", "build_config_paths"]


class ChangeKind(str, enum.Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    EXISTS = "exists"


@dataclass(frozen=True)
class ChangeEvent:
    """A single changed file, relative to the watch root."""

    path: str
    kind: ChangeKind = ChangeKind.MODIFIED


@dataclass(frozen=True)
class ChangeBatch:
    """An ordered, non-empty group of change events sharing one clock tick."""

    events: Sequence[ChangeEvent]
    clock: int = 0

    def __post_init__(self) -> None:
        if not self.events:
            raise ValueError("ChangeBatch must contain at least one event")
        object.__setattr__(self, "events", tuple(self.events))

    def __iter__(self) -> Iterator[ChangeEvent]:
        return iter(self.events)

    def __len__(self) -> int:
        return len(self.events)

    @property
    def paths(self) -> List[str]:
        return [event.path for event in self.events]


class ChangeFilter:
    """Decide which change batches trigger a rebuild and which are fatal.

    Attributes:
        expression (WatchExpression): The expression files must match to be build-relevant.
        config_paths (FrozenSet[str]): Root-relative paths of the build configuration files.
    """

    __slots__ = ("expression", "config_paths")

    def __init__(self, expression: WatchExpression, config_paths: Iterable[str] = ()) -> None:
        self.expression = expression
        self.config_paths = frozenset(normalize_path(p) for p in config_paths)

    def relevant_paths(self, batch: ChangeBatch) -> List[str]:
        return [event.path for event in batch if self.expression.matches(event.path)]

    def should_rebuild(self, batch: ChangeBatch) -> bool:
        return any(self.expression.matches(event.path) for event in batch)

    def fatal_paths(self, batch: ChangeBatch) -> List[str]:
        return [event.path for event in batch if normalize_path(event.path) in self.config_paths]

    def is_fatal_config_change(self, batch: ChangeBatch) -> bool:
        return bool(self.fatal_paths(batch))

    def __repr__(self) -> str:
        return f"<ChangeFilter config_paths={sorted(self.config_paths)}>"
