"""Named points at which a process can be made to crash, for recovery testing.

Crash points only take effect while debugging is switched on.
"""

from __future__ import annotations

_locations: dict[str, bool] = {}
_debug = False


class CrashPointReached(SystemExit):
    """Raised at an enabled crash point; exits with status 1 if not caught."""

    def __init__(self, location: str) -> None:
        super().__init__(1)
        self.location = location


def set_debug(enabled: bool) -> None:
    """Switch crash points on or off."""
    global _debug
    _debug = bool(enabled)


def crash_here(location: str) -> None:
    """Crash if the crash point at ``location`` is enabled."""
    if _debug and _locations.get(location, False):
        print(f"I'm going to crash at {location}")
        raise CrashPointReached(location)


def enable_crash_point(location: str) -> None:
    if _debug:
        _locations[location] = True


def disable_crash_point(location: str) -> None:
    if _debug:
        _locations[location] = False


def _reset() -> None:
    global _debug
    _debug = False
    _locations.clear()