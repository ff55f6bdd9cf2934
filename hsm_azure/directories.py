import logging
import os
import threading
from typing import Set

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class DirectoryReconciler:
    """
    Make sure the local directory for a blob key exists.

    Import workers call `ensure` concurrently; two workers racing on the same
    parent both see success. Paths that were created (or found) once are
    remembered for the life of the reconciler, so one bulk import run only
    touches the filesystem once per directory.

    Args:
        root_path (str): Directory that blob keys are relative to.
        mode (int): Mode passed to os.makedirs (before umask).
    """
    def __init__(
        self,
        root_path: str = ".",
        mode: int = 0o777
    ) -> None:
        self.root_path = root_path
        self.mode = mode
        self._known: Set[str] = set()
        self._lock = threading.Lock()

    def full_path(self, dir_path: str) -> str:
        return os.path.join(self.root_path, dir_path.lstrip("/"))

    def ensure(self, dir_path: str) -> None:
        """
        Create dir_path (and its parents) under the root if absent.

        Args:
            dir_path (str): Directory relative to the root.

        Raises:
            OSError: If the directory cannot be created.
        """
        dir_path = os.path.normpath(dir_path)
        if dir_path in ("", "."):
            return

        with self._lock:
            if dir_path in self._known:
                return

        # exist_ok covers the race with another worker creating the same path
        os.makedirs(self.full_path(dir_path), mode=self.mode, exist_ok=True)
        logger.debug(f"mkdir -p {dir_path}")

        with self._lock:
            self._known.add(dir_path)
