"""Environment handed to the processes the watchdog starts."""

from __future__ import annotations

import os
from typing import Mapping

SETTINGS_PREFIX = "REVWATCH_"

# the watchdog's own interpreter must not leak into the build or the application
_INTERPRETER_VARS = ("PYTHONHOME", "PYTHONPATH", "VIRTUAL_ENV")


def child_environment(overrides: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy ``os.environ`` without revwatch's settings, then apply ``overrides``.

    ``REVWATCH_*`` variables can carry git credentials, so children never see them.
    """

    env = {
        key: value
        for key, value in os.environ.items()
        if not key.startswith(SETTINGS_PREFIX) and key not in _INTERPRETER_VARS
    }
    if overrides:
        env.update(overrides)
    return env
