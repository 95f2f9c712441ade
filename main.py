#!/usr/bin/env python3
"""Process Pillz: switch sched-ext scheduler, TuneD profile and nice
according to the programs the user is running.

Entry point: wires all components and starts the Qt event loop.
"""
from __future__ import annotations

import sys
import os
import pwd
import logging
import argparse

# Add app directory to path so all modules resolve correctly
APP_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, APP_DIR)

from PyQt6.QtCore import QCoreApplication, QObject, QTimer, pyqtSlot

import config as cfg_module
from control import ControlBridge
from lifecycle import (
    EXIT_ERROR, ConfigWatcher, RequestSlot, install_signal_handlers,
)
from manager import PillManager
from monitor import ProcessCache
from pills import PillCatalog, TriggerMatcher

log = logging.getLogger("process_pillz")

REQUEST_POLL_MS = 250


class Daemon(QObject):
    """Runs one scan per tick and turns pending requests into an exit."""

    def __init__(self, manager: PillManager, slot: RequestSlot, scan_interval: int,
                 exit_fn=None, parent: QObject | None = None):
        super().__init__(parent)
        self._manager = manager
        self._slot = slot
        self._exit = exit_fn or QCoreApplication.exit
        self._exiting = False

        self._scan_timer = QTimer(self)
        self._scan_timer.setInterval(scan_interval * 1000)
        self._scan_timer.timeout.connect(self.tick)

        # Also gives the interpreter a chance to run signal handlers.
        self._request_timer = QTimer(self)
        self._request_timer.setInterval(REQUEST_POLL_MS)
        self._request_timer.timeout.connect(self.check_requests)

    def start(self):
        self._scan_timer.start()
        self._request_timer.start()
        QTimer.singleShot(0, self.tick)

    @pyqtSlot()
    def tick(self):
        if self._exiting:
            return
        self._manager.scan()

    @pyqtSlot()
    def check_requests(self) -> bool:
        request = self._slot.take()
        if request is None or self._exiting:
            return False
        self._exiting = True
        self._scan_timer.stop()
        self._request_timer.stop()
        log.info("Reverting to the default pill before exit")
        self._manager.reset()
        self._exit(request.exit_code)
        return True


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="process-pillz", description=__doc__.splitlines()[0])
    parser.add_argument("-c", "--config", default=str(cfg_module.CONFIG_FILE),
                        help="configuration file (default: %(default)s)")
    parser.add_argument("--debug", action="store_true", help="log debug messages")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg_module.check_security(args.config)
        config = cfg_module.load(args.config)
        cfg_module.validate(config)
    except cfg_module.ConfigError as e:
        log.critical("Configuration error: %s", e)
        return EXIT_ERROR

    try:
        username = pwd.getpwuid(os.getuid()).pw_name
    except KeyError as e:
        log.critical("Couldn't find the current user's name: %s", e)
        return EXIT_ERROR

    app = QCoreApplication(sys.argv[:1])
    app.setApplicationName("process-pillz")

    bridge = ControlBridge()
    manager = PillManager(
        cache=ProcessCache(username),
        catalog=PillCatalog(config["pills"]),
        matcher=TriggerMatcher(config["triggers"]),
        bridge=bridge,
        blacklist=config["blacklist"],
    )

    slot = RequestSlot()
    install_signal_handlers(slot)
    ConfigWatcher(args.config, slot, parent=app)
    daemon = Daemon(manager, slot, config["scan_interval"], parent=app)
    daemon.start()
    log.info("Watching processes of %s every %ds", username, config["scan_interval"])

    try:
        return app.exec()
    finally:
        bridge.close()


if __name__ == "__main__":
    sys.exit(main())
