"""Pill dataclass, PillCatalog and TriggerMatcher."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

log = logging.getLogger(__name__)

DEFAULT_PILL = "default"

SCX_STOP = "none"
SCX_MODE_MIN = 0   # 0=Auto 1=Gaming 2=PowerSave 3=LowLatency 4=Server
SCX_MODE_MAX = 4


@dataclass(frozen=True)
class SchedulerSpec:
    name: str = SCX_STOP
    mode: int = 0

    @property
    def stops(self) -> bool:
        return self.name == SCX_STOP

    @classmethod
    def parse(cls, value: str) -> "SchedulerSpec":
        """Parse 'none', 'lavd' or 'lavd 1'. An invalid mode falls back to 0."""
        args = value.split()
        if not args or args[0] == SCX_STOP:
            return cls()
        mode = 0
        if len(args) > 1:
            try:
                mode = int(args[1])
            except ValueError:
                mode = -1
            if mode < SCX_MODE_MIN or mode > SCX_MODE_MAX:
                log.error("Wrong scheduler mode %s for %s, using default (0)", args[1], args[0])
                mode = 0
        return cls(name=args[0], mode=mode)


@dataclass
class Pill:
    name: str
    settings: dict[str, str] = field(default_factory=dict)   # file order

    @classmethod
    def from_dict(cls, name: str, d: dict) -> "Pill":
        return cls(name=name, settings={str(k): str(v) for k, v in d.items()})

    @property
    def is_default(self) -> bool:
        return self.name == DEFAULT_PILL

    @property
    def scheduler(self) -> Optional[SchedulerSpec]:
        value = self.settings.get("scx")
        return SchedulerSpec.parse(value) if value is not None else None

    @property
    def tuned(self) -> Optional[str]:
        return self.settings.get("tuned")

    @property
    def nice(self) -> Optional[str]:
        """Raw nice setting; validated by the manager on activation."""
        return self.settings.get("nice")


class PillCatalog:
    """Holds the named pills."""

    def __init__(self, pills: dict[str, dict] | None = None):
        self._pills: dict[str, Pill] = {}
        for name, settings in (pills or {}).items():
            self._pills[name] = Pill.from_dict(name, settings)

    def __contains__(self, name: str) -> bool:
        return name in self._pills

    def __len__(self) -> int:
        return len(self._pills)

    def get(self, name: str) -> Optional[Pill]:
        return self._pills.get(name)


class TriggerMatcher:
    """Maps command-line substrings to pill names.

    Triggers are tried in insertion (config file) order and the first one
    contained in the command line wins, so with {"game": "a", "game.exe": "b"}
    a process running game.exe selects "a".
    """

    def __init__(self, triggers: dict[str, str] | None = None):
        self._triggers: dict[str, str] = dict(triggers or {})

    def __len__(self) -> int:
        return len(self._triggers)

    def match(self, cmdline: str) -> str:
        """Return the pill bound to the first trigger found in cmdline, or ''."""
        for trigger, pill in self._triggers.items():
            if trigger in cmdline:
                return pill
        return ""

    def unresolved(self, catalog: PillCatalog) -> list[tuple[str, str]]:
        """Triggers that point at a pill missing from the catalog."""
        return [(t, p) for t, p in self._triggers.items() if p not in catalog]
