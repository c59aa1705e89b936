"""
Background task launchers.

A launcher starts the sync worker without blocking the caller and reports
back through a completion callback with the worker's exit code.
"""

import logging
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[Optional[int]], None]

DEFAULT_WORKER_COMMAND = (sys.executable, "-m", "token_pet.cli.main", "sync", "--background")


class BackgroundLauncher(ABC):
    """Spawn-and-forget capability with a completion callback."""

    @abstractmethod
    def launch(self, on_complete: CompletionCallback) -> None:
        """Start the worker and return immediately.

        Raises:
            OSError: If the worker cannot be started
        """


class SubprocessLauncher(BackgroundLauncher):
    """Runs the worker as a detached OS process.

    The process gets its own session and no inherited stdio, so it keeps
    running after the calling process exits. While the caller is still
    alive, a daemon thread waits for the process and fires the callback.
    """

    def __init__(self, command: Sequence[str] = DEFAULT_WORKER_COMMAND):
        self.command = list(command)

    def launch(self, on_complete: CompletionCallback) -> None:
        process = subprocess.Popen(
            self.command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True,
        )
        logger.debug("Started sync worker pid=%d", process.pid)

        watcher = threading.Thread(
            target=lambda: on_complete(process.wait()),
            name="sync-worker-watcher",
            daemon=True,
        )
        watcher.start()


class ThreadLauncher(BackgroundLauncher):
    """Runs the worker on a thread inside the current process."""

    def __init__(self, target: Callable[[], None]):
        self.target = target
        self.thread: Optional[threading.Thread] = None

    def launch(self, on_complete: CompletionCallback) -> None:
        def _run() -> None:
            try:
                self.target()
            except Exception:
                logger.exception("In-process sync worker failed")
                on_complete(1)
                return
            on_complete(0)

        self.thread = threading.Thread(target=_run, name="sync-worker", daemon=True)
        self.thread.start()
