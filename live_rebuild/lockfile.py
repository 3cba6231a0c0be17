"""Lock file held while watch mode runs.

The lock file tells the compiler's own watcher (and a second live-rebuild
instance) that a build watcher is already active in this project. Failing to
take it is reported but never stops the orchestrator.
"""

from __future__ import annotations

import atexit
import logging
import os
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["LockFile"]


class LockFile:
    """Exclusively created lock file containing the owner PID.

    Example:
        >>> lock = LockFile("/work/app/.bsb.lock")
        >>> lock.acquire()
        True
        >>> lock.release()
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        """Create the lock file; it is removed again at interpreter exit.

        Returns:
            bool: True if the lock is now held, False if it could not be created.
        """
        if self._fd is not None:
            return True
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            logger.error(f"[lock] error creating {self.path}: already exists (another watcher running?)")
            return False
        except OSError as e:
            logger.error(f"[lock] error creating {self.path}: {e}")
            return False
        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
        except OSError as e:
            logger.debug(f"[lock] could not write pid to {self.path}: {e}")
        self._fd = fd
        atexit.register(self.release)
        logger.debug(f"[lock] acquired {self.path}")
        return True

    def release(self) -> None:
        """Close and delete the lock file if this instance holds it."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.close(fd)
        except OSError as e:
            logger.debug(f"[lock] error closing {self.path}: {e}")
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[lock] could not remove {self.path}: {e}")
        atexit.unregister(self.release)

    def __enter__(self) -> LockFile:
        self.acquire()
        return self

    def __exit__(self, exc_type: object, exc_value: object, traceback: object) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"<LockFile path={self.path} held={self.held}>"
