"""Compile stage: run the project's compiler as a child process."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Union

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Compiler", "CommandCompiler"]

# Shell convention for "command not found"
EXIT_COMMAND_NOT_FOUND = 127


class Compiler(Protocol):
    def compile(self) -> int:
        """Run one compilation and return its exit code."""
        ...


class CommandCompiler:
    """Run a compile command with inherited stdio and report its exit code.

    Compiler output goes straight to the terminal, the same way it would if
    the developer ran the command by hand.

    Attributes:
        command (List[str]): Executable and arguments.
        cwd (Optional[Path]): Working directory for the child process.
    """

    __slots__ = ("command", "cwd", "env")

    def __init__(
        self,
        command: Sequence[Union[str, Path]],
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        if not command:
            raise ValueError("Compiler command must not be empty")
        self.command: List[str] = [str(part) for part in command]
        self.cwd = Path(cwd) if cwd is not None else None
        self.env = env

    def compile(self) -> int:
        """Run the command to completion.

        Returns:
            int: The exit code. ``127`` if the executable could not be started.
        """
        logger.debug(f"Running compiler: {' '.join(self.command)} (cwd={self.cwd})")
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        try:
            completed = subprocess.run(self.command, cwd=self.cwd, env=env, check=False)
        except FileNotFoundError as e:
            logger.error(f"Compiler executable not found: {e}")
            return EXIT_COMMAND_NOT_FOUND
        except PermissionError as e:
            logger.error(f"Compiler executable is not runnable: {e}")
            return EXIT_COMMAND_NOT_FOUND
        return completed.returncode

    def __repr__(self) -> str:
        return f"<CommandCompiler command={self.command!r}>"
