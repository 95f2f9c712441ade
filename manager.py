"""PillManager: scan → decide → apply, plus nice propagation over process trees."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import Optional

import psutil

from control import CallOutcome, ControlBridge
from monitor import ProcessCache, ScanEntry
from pills import DEFAULT_PILL, PillCatalog, TriggerMatcher
import utils

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManagerState:
    pill: str = ""               # "" until the first scan applied one
    anchor: int = 0              # pid justifying the current pill, 0 = none
    valid_parent: int = 0        # ppid whose children get reniced, 0 = none
    nice: Optional[int] = None   # validated nice target, None = disabled


class Action(Enum):
    KEEP      = auto()
    REVERT    = auto()   # back to the default pill, no anchor
    SWITCH    = auto()   # apply the matched pill, anchored on the match
    REANCHOR  = auto()   # same pill, new anchor process


@dataclass(frozen=True)
class Decision:
    action: Action
    pill: str = ""
    entry: Optional[ScanEntry] = None


def find_match(entries: list[ScanEntry], matcher: TriggerMatcher,
               catalog: PillCatalog) -> tuple[Optional[ScanEntry], str]:
    """First owned process, in scan order, whose command line hits a trigger.

    Triggers bound to a pill missing from the catalog never match; they are
    reported once when the manager is built.
    """
    for entry in entries:
        pill = matcher.match(entry.record.cmdline)
        if pill and pill in catalog:
            return entry, pill
    return None, ""


def decide(state: ManagerState, anchor_seen: bool, match: Optional[ScanEntry],
           match_pill: str) -> Decision:
    """Pick exactly one action for this cycle.

    The default pill is never anchored, so a trigger bound to it can switch
    back to default but never re-anchors.
    """
    if not anchor_seen and state.pill != DEFAULT_PILL:
        return Decision(Action.REVERT, DEFAULT_PILL)
    if match is not None and match_pill != state.pill:
        return Decision(Action.SWITCH, match_pill, match)
    if match is not None and match_pill != DEFAULT_PILL and match.pid != state.anchor:
        return Decision(Action.REANCHOR, state.pill, match)
    return Decision(Action.KEEP, state.pill)


class PillManager:
    """
    Owns the process cache and the manager state. One call to scan() is one
    cycle of the control loop:
    - refresh the cache and find the first process matching a trigger
    - decide (revert / switch / re-anchor / keep) and apply
    - renice processes reachable from the anchor

    Nice propagation is breadth-first over successive scans: a process
    qualifies when it is the anchor, a child of the valid parent, or a child
    of an already adjusted process. Children usually have higher pids than
    their parents, so most of a tree converges within one scan; deeper or
    out-of-order branches converge over the following ones.

    A renice refused by the kernel is logged once and the process is still
    flagged as adjusted: it is not retried during this activation and its
    children remain reachable.
    """

    def __init__(self, cache: ProcessCache, catalog: PillCatalog, matcher: TriggerMatcher,
                 bridge: ControlBridge, blacklist: list[str] | None = None,
                 set_nice=utils.set_nice, parent_lookup=utils.parent_of):
        self._cache = cache
        self._catalog = catalog
        self._matcher = matcher
        self._bridge = bridge
        self._blacklist = frozenset(blacklist or [])
        self._set_nice = set_nice
        self._parent_lookup = parent_lookup
        self.state = ManagerState()

        for trigger, pill in matcher.unresolved(catalog):
            log.error("Trigger '%s' points at unknown pill '%s'", trigger, pill)

    @property
    def current_pill(self) -> str:
        return self.state.pill

    # ── Cycle ──────────────────────────────────────────────────────────────

    def scan(self) -> Decision:
        entries = self._cache.refresh()
        anchor_seen = any(e.pid == self.state.anchor for e in entries)
        match, match_pill = find_match(entries, self._matcher, self._catalog)

        decision = decide(self.state, anchor_seen, match, match_pill)
        if decision.action is Action.REVERT:
            self.eat_pill(None, DEFAULT_PILL)
        elif decision.action is Action.SWITCH:
            self.eat_pill(decision.entry, decision.pill)
        elif decision.action is Action.REANCHOR:
            self._anchor_on(decision.entry)
            log.info("[%s] now anchored on %s (PID %d)", self.state.pill,
                     decision.entry.record.name, decision.entry.pid)

        self._propagate_nice(entries)
        return decision

    def reset(self):
        """Back to the default pill; used on shutdown and restart."""
        self.eat_pill(None, DEFAULT_PILL)

    # ── Applier ────────────────────────────────────────────────────────────

    def eat_pill(self, entry: Optional[ScanEntry], pill_name: str):
        """Apply a pill's settings and anchor it on entry (or nothing)."""
        log.info("[Applying %s]", pill_name)
        pill = self._catalog.get(pill_name)
        nice = None

        for key, value in (pill.settings.items() if pill else ()):
            if key == "scx":
                sched = pill.scheduler
                if sched.stops:
                    outcome = self._bridge.stop_scheduler()
                else:
                    outcome = self._bridge.switch_scheduler(sched.name, sched.mode)
                self._report(outcome, f"scx={value}")
            elif key == "tuned":
                profile = pill.tuned
                self._report(self._bridge.switch_tuned_profile(profile), f"tuned={profile}")
            elif key == "nice":
                if pill.is_default:
                    log.warning("Nice is not authorized in the default pill")
                    continue
                nice = utils.parse_nice(pill.nice)
                if nice is None:
                    log.error("Invalid nice value in pill '%s': %s", pill_name, pill.nice)
            else:
                log.error("Unknown option in pill '%s': %s", pill_name, key)

        self._cache.clear_adjusted()
        self.state = replace(self.state, pill=pill_name, nice=nice)
        if entry is None or pill_name == DEFAULT_PILL:
            self.state = replace(self.state, anchor=0, valid_parent=0)
        else:
            self._anchor_on(entry)

    def _report(self, outcome: CallOutcome, what: str):
        if outcome is CallOutcome.OK:
            return
        log.error("Couldn't apply %s (%s)", what, outcome.name.lower())

    def _anchor_on(self, entry: ScanEntry):
        parent = utils.resolve_valid_parent(entry.pid, self._parent_lookup)
        self.state = replace(self.state, anchor=entry.pid, valid_parent=parent)

    # ── Propagator ─────────────────────────────────────────────────────────

    def _propagate_nice(self, entries: list[ScanEntry]):
        nice = self.state.nice
        if nice is None or self.state.pill == DEFAULT_PILL:
            return
        for entry in entries:
            record = entry.record
            if record.adjusted or not self._eligible(entry):
                continue
            if record.name in self._blacklist:
                record.adjusted = True
                log.debug("%s (PID %d) is blacklisted, not reniced", record.name, record.pid)
                continue
            try:
                self._set_nice(record.pid, nice)
            except ProcessLookupError:
                log.debug("%s (PID %d) exited before renice", record.name, record.pid)
                continue
            except PermissionError as e:
                record.adjusted = True
                log.warning("Couldn't change nice value of %s (PID %d): %s",
                            record.name, record.pid, e)
                continue
            record.adjusted = True
            log.info("reniced %s (PID %d) to %d", record.name, record.pid, nice)

    def _eligible(self, entry: ScanEntry) -> bool:
        if entry.pid == self.state.anchor:
            return True
        try:
            ppid = entry.proc.ppid()
        except psutil.Error as e:
            log.debug("Couldn't get the parent of %d: %s", entry.pid, e)
            return False
        if ppid == self.state.valid_parent:
            return True
        parent = self._cache.get(ppid)
        return parent is not None and parent.adjusted
