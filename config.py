"""Load and validate config from ~/.config/process-pillz/config.json."""
from __future__ import annotations

import json
import os
import copy
import stat
from pathlib import Path

import utils

CONFIG_DIR = Path.home() / ".config" / "process-pillz"
CONFIG_FILE = CONFIG_DIR / "config.json"

DEFAULT_CONFIG = {
    # Seconds between two process scans.
    "scan_interval": 4,
    # Substring of a process command line → pill name. First match wins,
    # in the order written here.
    "triggers": {},
    # Pill name → settings:
    #   scx:   sched-ext scheduler name, optionally followed by a mode
    #          (0=Auto 1=Gaming 2=PowerSave 3=LowLatency 4=Server), or "none"
    #   tuned: TuneD profile name
    #   nice:  -20..20, applied to the trigger process, its siblings and
    #          children. Not allowed in "default".
    "pills": {},
    # Process names never reniced.
    "blacklist": [],
}


class ConfigError(Exception):
    """The configuration can't be used; the daemon must not start."""


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into base recursively, returning new dict."""
    result = copy.deepcopy(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = copy.deepcopy(v)
    return result


def _normalise(config: dict) -> dict:
    """Pill values may be written as JSON numbers; the manager wants strings."""
    pills = config.get("pills")
    if isinstance(pills, dict):
        config["pills"] = {
            name: {str(k): str(v) for k, v in settings.items()}
            if isinstance(settings, dict) else settings
            for name, settings in pills.items()
        }
    return config


def load(path: Path | str = CONFIG_FILE) -> dict:
    """Load config, filling missing keys with defaults."""
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Error while opening configuration file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error while parsing configuration file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be an object")
    return _normalise(_deep_merge(DEFAULT_CONFIG, data))


def check_security(path: Path | str = CONFIG_FILE) -> None:
    """Refuse a config anybody else could have written."""
    try:
        st = os.stat(path)
    except OSError as e:
        raise ConfigError(f"Can't stat {path}: {e}") from e
    if st.st_mode & stat.S_IWOTH:
        raise ConfigError(f"{path} is world-writable")
    if st.st_uid != os.getuid():
        raise ConfigError(f"{path} is not owned by the current user")


def validate(config: dict) -> None:
    """Basic validation of the configuration. Raises ConfigError."""
    interval = config.get("scan_interval")
    if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
        raise ConfigError(f"scan_interval must be an integer greater than 0, got {interval!r}")

    triggers = config.get("triggers")
    if not isinstance(triggers, dict) or not triggers:
        raise ConfigError("triggers section cannot be empty")
    for trigger, pill in triggers.items():
        if not trigger.strip():
            raise ConfigError("trigger name cannot be empty")
        if not isinstance(pill, str) or not pill.strip():
            raise ConfigError(f"pill name for trigger '{trigger}' cannot be empty")

    pills = config.get("pills")
    if not isinstance(pills, dict) or not pills:
        raise ConfigError("pills section cannot be empty")
    if "default" not in pills:
        raise ConfigError("pills section must define a 'default' pill")
    for name, settings in pills.items():
        if not name.strip():
            raise ConfigError("pill name cannot be empty")
        if not isinstance(settings, dict) or not settings:
            raise ConfigError(f"pill configuration for '{name}' cannot be empty")
        for key, value in settings.items():
            if not key.strip():
                raise ConfigError(f"configuration key in pill '{name}' cannot be empty")
            if not str(value).strip():
                raise ConfigError(
                    f"configuration value for key '{key}' in pill '{name}' cannot be empty"
                )
        if name != "default" and "nice" in settings and utils.parse_nice(settings["nice"]) is None:
            raise ConfigError(
                f"nice in pill '{name}' must be an integer between "
                f"{utils.NICE_MIN} and {utils.NICE_MAX}, got {settings['nice']!r}"
            )

    blacklist = config.get("blacklist")
    if not isinstance(blacklist, list) or not all(isinstance(b, str) for b in blacklist):
        raise ConfigError("blacklist must be a list of process names")
