"""Tests for change batches and the change filter."""

from __future__ import annotations

from pathlib import Path

import pytest

from live_rebuild.expression import AllOf, AnyOf, Match, Not
from live_rebuild.filter import ChangeBatch, ChangeEvent, ChangeFilter, ChangeKind, build_config_paths

EXPRESSION = AllOf((AnyOf((Match("*.res"), Match("*.js"))), Not(Match("sw.js"))))


def batch(*paths: str) -> ChangeBatch:
    return ChangeBatch([ChangeEvent(p) for p in paths], clock=1)


def test_batch_must_not_be_empty() -> None:
    with pytest.raises(ValueError, match="at least one event"):
        ChangeBatch([])


def test_batch_is_immutable_sequence() -> None:
    events = [ChangeEvent("a.res"), ChangeEvent("b.js", ChangeKind.DELETED)]
    b = ChangeBatch(events, clock=3)
    events.append(ChangeEvent("c.js"))

    assert len(b) == 2
    assert b.paths == ["a.res", "b.js"]
    assert [e.kind for e in b] == [ChangeKind.MODIFIED, ChangeKind.DELETED]
    assert isinstance(b.events, tuple)


def test_build_config_paths(temp_dir: Path) -> None:
    paths = build_config_paths(temp_dir, [temp_dir / "app" / "live-rebuild.toml", "tools/build.py"])
    assert paths == frozenset({"app/live-rebuild.toml", "tools/build.py"})


def test_build_config_paths_skips_files_outside_root(temp_dir: Path) -> None:
    root = temp_dir / "workspace"
    outside = temp_dir / "site-packages" / "live_rebuild" / "main.py"
    paths = build_config_paths(root, [outside, root / "live-rebuild.toml"])
    assert paths == frozenset({"live-rebuild.toml"})


def test_should_rebuild_any_match() -> None:
    change_filter = ChangeFilter(EXPRESSION)
    assert change_filter.should_rebuild(batch("README.md", "src/A.res"))
    assert not change_filter.should_rebuild(batch("README.md", "public/sw.js"))
    assert change_filter.relevant_paths(batch("README.md", "src/A.res", "b.js")) == ["src/A.res", "b.js"]


def test_fatal_config_change() -> None:
    change_filter = ChangeFilter(EXPRESSION, {"app/live-rebuild.toml", "./tools/build.js"})

    assert change_filter.is_fatal_config_change(batch("src/A.res", "app/live-rebuild.toml"))
    assert change_filter.fatal_paths(batch("tools/build.js")) == ["tools/build.js"]
    assert not change_filter.is_fatal_config_change(batch("src/A.res"))
    # A file with the same basename elsewhere is not a config file
    assert not change_filter.is_fatal_config_change(batch("other/live-rebuild.toml"))


def test_fatal_change_even_when_not_build_relevant() -> None:
    change_filter = ChangeFilter(EXPRESSION, {"live-rebuild.toml"})
    b = batch("live-rebuild.toml")
    assert change_filter.is_fatal_config_change(b)
    assert not change_filter.should_rebuild(b)
