"""ProcessCache: per-cycle view of the processes owned by the current user."""
from __future__ import annotations

import logging
from dataclasses import dataclass

import psutil

log = logging.getLogger(__name__)


@dataclass
class ProcessRecord:
    pid: int
    username: str
    create_time: float = 0.0
    name: str = ""
    cmdline: str = ""
    adjusted: bool = False   # reniced (or settled) during the current activation


@dataclass
class ScanEntry:
    """One owned process seen during a refresh, in scan order."""
    proc: psutil.Process
    record: ProcessRecord

    @property
    def pid(self) -> int:
        return self.record.pid


def _join_cmdline(cmdline: list[str], name: str) -> str:
    """Full command line as a single string; kernel threads fall back to name."""
    joined = " ".join(part for part in cmdline if part)
    return joined or name


class ProcessCache:
    """
    Memoizes owner, name and command line per pid so that each process is
    queried once during its lifetime:
    - new pid: resolve owner; owned processes also get name + cmdline
    - known pid: reused as-is, non-owned ones are skipped without any syscall
    - pid gone from a scan: record deleted
    - pid reused with a different start time: record replaced
    """

    def __init__(self, username: str, process_iter=psutil.process_iter):
        self._username = username
        self._process_iter = process_iter
        self._records: dict[int, ProcessRecord] = {}

    def __contains__(self, pid: int) -> bool:
        return pid in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, pid: int) -> ProcessRecord | None:
        return self._records.get(pid)

    def records(self) -> list[ProcessRecord]:
        return list(self._records.values())

    def clear_adjusted(self):
        """Start a fresh propagation window."""
        for record in self._records.values():
            record.adjusted = False

    def _resolve(self, proc: psutil.Process) -> ProcessRecord | None:
        """Build a record for a newly seen pid. Returns None if it can't be read."""
        pid = proc.pid
        try:
            with proc.oneshot():
                create_time = proc.create_time()
                username = proc.username()
                if username != self._username:
                    return ProcessRecord(pid=pid, username=username, create_time=create_time)
                name = proc.name()
                try:
                    cmdline = proc.cmdline()
                except psutil.AccessDenied:
                    cmdline = []
        except (psutil.NoSuchProcess, psutil.ZombieProcess) as e:
            log.debug("pid=%d vanished before it could be read: %s", pid, e)
            return None
        except psutil.AccessDenied as e:
            log.debug("pid=%d: access denied: %s", pid, e)
            return None
        return ProcessRecord(
            pid=pid,
            username=username,
            create_time=create_time,
            name=name,
            cmdline=_join_cmdline(cmdline, name),
        )

    def _is_reused(self, proc: psutil.Process, record: ProcessRecord) -> bool:
        try:
            return proc.create_time() != record.create_time
        except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
            return True

    def refresh(self) -> list[ScanEntry]:
        """Scan all processes and return the owned ones, in scan order."""
        seen: set[int] = set()
        owned: list[ScanEntry] = []

        for proc in self._process_iter():
            pid = proc.pid
            record = self._records.get(pid)
            if record is not None and self._is_reused(proc, record):
                log.debug("pid=%d was reused, dropping cached %r", pid, record.cmdline)
                del self._records[pid]
                record = None
            if record is None:
                record = self._resolve(proc)
                if record is None:
                    continue
                self._records[pid] = record
            seen.add(pid)
            if record.username == self._username:
                owned.append(ScanEntry(proc=proc, record=record))

        for pid in [pid for pid in self._records if pid not in seen]:
            del self._records[pid]

        return owned
