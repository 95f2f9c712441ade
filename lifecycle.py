"""Shutdown / restart requests: POSIX signals and config-file changes."""
from __future__ import annotations

import signal
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from PyQt6.QtCore import QObject, QTimer, QFileSystemWatcher, pyqtSlot

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_RESTART = 42   # a supervisor (systemd path unit) starts us again

CONFIG_DEBOUNCE_MS = 2000


class Request(Enum):
    SHUTDOWN = EXIT_OK
    RESTART = EXIT_RESTART

    @property
    def exit_code(self) -> int:
        return self.value


class RequestSlot:
    """Holds at most one pending request; later ones are dropped, not queued."""

    def __init__(self):
        self._pending: Optional[Request] = None

    @property
    def pending(self) -> Optional[Request]:
        return self._pending

    def post(self, request: Request) -> bool:
        """Returns False if a request was already pending."""
        if self._pending is not None:
            log.debug("%s dropped, %s already pending", request.name, self._pending.name)
            return False
        self._pending = request
        return True

    def take(self) -> Optional[Request]:
        request, self._pending = self._pending, None
        return request


def install_signal_handlers(slot: RequestSlot, signals=(signal.SIGINT, signal.SIGTERM)):
    """Turn termination signals into a SHUTDOWN request."""
    def handler(signum, _frame):
        if slot.post(Request.SHUTDOWN):
            log.info("Received %s, shutting down...", signal.Signals(signum).name)

    for signum in signals:
        signal.signal(signum, handler)


class ConfigWatcher(QObject):
    """Posts a RESTART request once the config file settles after a change.

    The parent directory is watched as well: editors that save by renaming a
    temp file over the original make the file watch disappear.
    """

    def __init__(self, path: Path | str, slot: RequestSlot,
                 debounce_ms: int = CONFIG_DEBOUNCE_MS, parent: QObject | None = None):
        super().__init__(parent)
        self._path = str(Path(path).resolve())
        self._slot = slot
        self._watcher = QFileSystemWatcher(self)
        self._watcher.addPath(str(Path(self._path).parent))
        self._watcher.addPath(self._path)
        self._watcher.fileChanged.connect(self._on_changed)
        self._watcher.directoryChanged.connect(self._on_dir_changed)

        self._debounce = QTimer(self)
        self._debounce.setSingleShot(True)
        self._debounce.setInterval(debounce_ms)
        self._debounce.timeout.connect(self._on_settled)

    @property
    def debouncing(self) -> bool:
        return self._debounce.isActive()

    @pyqtSlot(str)
    def _on_dir_changed(self, _directory: str):
        if Path(self._path).exists() and self._path not in self._watcher.files():
            self._watcher.addPath(self._path)
            self._on_changed(self._path)

    @pyqtSlot(str)
    def _on_changed(self, _path: str):
        # Bursts of writes inside the window collapse into one request.
        if not self._debounce.isActive():
            log.debug("Configuration file changed, waiting %d ms", self._debounce.interval())
            self._debounce.start()

    @pyqtSlot()
    def _on_settled(self):
        if self._slot.post(Request.RESTART):
            log.info("Configuration changed, restart requested")
