"""Priority and process-tree helpers using direct syscalls where possible."""
from __future__ import annotations

import os
import logging

import psutil

log = logging.getLogger(__name__)

# Ancestors that say nothing about which application tree a process belongs
# to: init, session managers and shells.
OPAQUE_PARENTS = frozenset({"systemd", "init", "bash", "sh", "zsh", "fish"})

NICE_MIN = -20
NICE_MAX = 20


def parse_nice(value) -> int | None:
    """Parse a nice value from config. Returns None if non-numeric or out of range."""
    try:
        nice = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    if nice < NICE_MIN or nice > NICE_MAX:
        return None
    return nice


def set_nice(pid: int, nice: int) -> None:
    """Set nice priority via setpriority(2).

    Raises PermissionError when the kernel refuses (negative values need
    CAP_SYS_NICE or a matching RLIMIT_NICE) and ProcessLookupError when the
    process is gone."""
    os.setpriority(os.PRIO_PROCESS, pid, nice)
    log.debug("setpriority pid=%d nice=%d: OK", pid, nice)


def parent_of(pid: int) -> tuple[int, str] | None:
    """Return (ppid, parent name) for a process, or None if unresolvable."""
    try:
        parent = psutil.Process(pid).parent()
        if parent is None:
            return None
        return parent.pid, parent.name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
        log.debug("parent of pid=%d: %s", pid, e)
        return None


def resolve_valid_parent(pid: int, parent_lookup=parent_of) -> int:
    """Return the pid under which siblings of `pid` should be reniced.

    Processes started straight from a shell, by systemd, or reparented to init
    have no meaningful parent: the process itself becomes the root of its tree.
    """
    parent = parent_lookup(pid)
    if parent is None:
        return pid
    ppid, name = parent
    if ppid <= 0 or name in OPAQUE_PARENTS:
        return pid
    return ppid
