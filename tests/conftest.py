"""Shared fakes: a psutil-like process table and a recording control bridge."""

import contextlib
from collections import Counter

import psutil
import pytest

from control import CallOutcome

ME = "alice"


class FakeProc:
    """Stands in for psutil.Process with only the methods the daemon calls."""

    def __init__(self, pid, cmdline="", name=None, username=ME, ppid=1, create_time=1.0):
        self.pid = pid
        self._cmdline = cmdline
        self._name = name if name is not None else (cmdline.split()[0].rsplit("/", 1)[-1] if cmdline else f"proc{pid}")
        self._username = username
        self._ppid = ppid
        self._create_time = create_time
        self.gone = False
        self.calls = Counter()

    def _check(self):
        if self.gone:
            raise psutil.NoSuchProcess(self.pid)

    def oneshot(self):
        return contextlib.nullcontext()

    def create_time(self):
        self.calls["create_time"] += 1
        self._check()
        return self._create_time

    def username(self):
        self.calls["username"] += 1
        self._check()
        return self._username

    def name(self):
        self.calls["name"] += 1
        self._check()
        return self._name

    def cmdline(self):
        self.calls["cmdline"] += 1
        self._check()
        return self._cmdline.split()

    def ppid(self):
        self._check()
        return self._ppid


class ProcessTable:
    """Callable replacement for psutil.process_iter, yielding in pid order."""

    def __init__(self):
        self.procs = {}

    def add(self, *args, **kwargs):
        proc = FakeProc(*args, **kwargs)
        self.procs[proc.pid] = proc
        return proc

    def remove(self, *pids):
        for pid in pids:
            del self.procs[pid]

    def __call__(self):
        return [self.procs[pid] for pid in sorted(self.procs)]


class FakeBridge:
    """Records control calls instead of talking to D-Bus."""

    def __init__(self):
        self.calls = []
        self.outcome = CallOutcome.OK

    def switch_scheduler(self, name, mode=0):
        self.calls.append(("switch_scheduler", name, mode))
        return self.outcome

    def stop_scheduler(self):
        self.calls.append(("stop_scheduler",))
        return self.outcome

    def switch_tuned_profile(self, profile):
        self.calls.append(("switch_tuned_profile", profile))
        return self.outcome

    def take(self):
        calls, self.calls = self.calls, []
        return calls


@pytest.fixture
def table():
    return ProcessTable()


@pytest.fixture
def bridge():
    return FakeBridge()
