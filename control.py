"""D-Bus control of the sched-ext loader and TuneD, with reconnect + bounded retry.

Both services are driven through the system bus:
  org.scx.Loader    /org/scx/Loader   SwitchScheduler(s name, u mode), StopScheduler()
                                      property SupportedSchedulers (as)
  com.redhat.tuned  /Tuned            com.redhat.tuned.control.switch_profile(s)
                                      com.redhat.tuned.control.profiles() -> as

Every operation is idempotent, so a failed attempt is simply replayed on a
fresh connection. A name the service does not advertise is rejected before
any state-changing call is made.
"""
from __future__ import annotations

import time
import logging
from dataclasses import dataclass
from enum import Enum, auto

from PyQt6.QtCore import QMetaType
from PyQt6.QtDBus import (
    QDBusArgument, QDBusConnection, QDBusInterface, QDBusMessage, QDBusVariant,
)

log = logging.getLogger(__name__)

CONNECTION_NAME = "process_pillz"
MAX_ATTEMPTS = 3
RETRY_DELAY = 2.0   # seconds


class ControlServiceError(Exception):
    """A D-Bus connection or remote call failed."""


class CallOutcome(Enum):
    OK        = auto()   # call issued and acknowledged
    REJECTED  = auto()   # name not advertised by the service, nothing done
    EXHAUSTED = auto()   # every attempt failed

    def __bool__(self) -> bool:
        return self is CallOutcome.OK


@dataclass(frozen=True)
class Endpoint:
    service: str
    path: str
    interface: str


SCX_LOADER = Endpoint("org.scx.Loader", "/org/scx/Loader", "org.scx.Loader")
TUNED = Endpoint("com.redhat.tuned", "/Tuned", "com.redhat.tuned.control")
_PROPERTIES = "org.freedesktop.DBus.Properties"


class UInt32(int):
    """An int that must go over the wire with D-Bus signature 'u'."""


def _marshal(value):
    if isinstance(value, UInt32):
        return QDBusArgument(int(value), QMetaType.Type.UInt.value)
    return value


def _unwrap(value):
    if isinstance(value, QDBusVariant):
        return value.variant()
    return value


class SystemBus:
    """A named connection to the system bus."""

    def __init__(self, name: str = CONNECTION_NAME):
        self._name = name
        self._conn = QDBusConnection.connectToBus(QDBusConnection.BusType.SystemBus, name)
        if not self._conn.isConnected():
            msg = self._conn.lastError().message()
            QDBusConnection.disconnectFromBus(name)
            raise ControlServiceError(f"can't connect to the system bus: {msg}")

    def _interface(self, service: str, path: str, interface: str) -> QDBusInterface:
        iface = QDBusInterface(service, path, interface, self._conn)
        if not iface.isValid():
            raise ControlServiceError(
                f"{service} unavailable, is it running? ({iface.lastError().message()})"
            )
        return iface

    def call(self, endpoint: Endpoint, method: str, *args) -> list:
        iface = self._interface(endpoint.service, endpoint.path, endpoint.interface)
        reply = iface.call(method, *[_marshal(a) for a in args])
        if reply.type() == QDBusMessage.MessageType.ErrorMessage:
            raise ControlServiceError(
                f"{endpoint.interface}.{method}: {reply.errorName()}: {reply.errorMessage()}"
            )
        return [_unwrap(a) for a in reply.arguments()]

    def get_property(self, endpoint: Endpoint, prop: str):
        props = Endpoint(endpoint.service, endpoint.path, _PROPERTIES)
        values = self.call(props, "Get", endpoint.interface, prop)
        if not values:
            raise ControlServiceError(f"{endpoint.interface}.{prop}: empty reply")
        return values[0]

    def close(self):
        QDBusConnection.disconnectFromBus(self._name)


class ControlBridge:
    """Scheduler and TuneD switching with reconnect-on-failure."""

    def __init__(self, connect=SystemBus, max_attempts: int = MAX_ATTEMPTS,
                 retry_delay: float = RETRY_DELAY, sleep=time.sleep):
        self._connect = connect
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._bus = None

    @property
    def connected(self) -> bool:
        return self._bus is not None

    def _ensure_bus(self):
        if self._bus is None:
            self._bus = self._connect()
            log.info("Connected to the system bus")
        return self._bus

    def close(self):
        """Drop the current connection, if any."""
        bus, self._bus = self._bus, None
        if bus is not None:
            try:
                bus.close()
            except ControlServiceError as e:
                log.debug("closing bus: %s", e)

    def _run(self, what: str, operation) -> CallOutcome:
        """Run operation(bus) until it returns an outcome or attempts run out."""
        for attempt in range(1, self._max_attempts + 1):
            try:
                return operation(self._ensure_bus())
            except ControlServiceError as e:
                log.warning("%s failed (try %d/%d): %s", what, attempt, self._max_attempts, e)
                self.close()
            if attempt < self._max_attempts:
                self._sleep(self._retry_delay)
        log.error("%s: giving up after %d tries", what, self._max_attempts)
        return CallOutcome.EXHAUSTED

    def switch_scheduler(self, name: str, mode: int = 0) -> CallOutcome:
        def operation(bus) -> CallOutcome:
            supported = bus.get_property(SCX_LOADER, "SupportedSchedulers")
            if name not in list(supported or []):
                log.error("Invalid scheduler (%s), supported: %s", name, supported)
                return CallOutcome.REJECTED
            bus.call(SCX_LOADER, "SwitchScheduler", name, UInt32(mode))
            log.info("Scheduler switched to %s (mode %d)", name, mode)
            return CallOutcome.OK

        return self._run(f"SwitchScheduler({name}, {mode})", operation)

    def stop_scheduler(self) -> CallOutcome:
        def operation(bus) -> CallOutcome:
            bus.call(SCX_LOADER, "StopScheduler")
            log.info("Scheduler stopped")
            return CallOutcome.OK

        return self._run("StopScheduler()", operation)

    def switch_tuned_profile(self, profile: str) -> CallOutcome:
        def operation(bus) -> CallOutcome:
            values = bus.call(TUNED, "profiles")
            valid = list(values[0]) if values else []
            if profile not in valid:
                log.error("Invalid TuneD profile (%s)", profile)
                return CallOutcome.REJECTED
            values = bus.call(TUNED, "switch_profile", profile)
            # switch_profile replies (bool ok, str message)
            if values and isinstance(values[0], (tuple, list)) and len(values[0]) >= 2:
                ok, message = values[0][0], values[0][1]
                if not ok:
                    log.error("TuneD refused profile %s: %s", profile, message)
                    return CallOutcome.REJECTED
            log.info("TuneD profile switched to %s", profile)
            return CallOutcome.OK

        return self._run(f"switch_profile({profile})", operation)
