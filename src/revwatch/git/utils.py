"""Utility helpers for the git runner."""

from __future__ import annotations

import base64
from typing import Mapping

from ..utils import child_environment

_NON_INTERACTIVE = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_ASKPASS": "",
    "SSH_ASKPASS": "",
    "GCM_INTERACTIVE": "never",
}


def git_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return an environment in which git can never block on a credential prompt."""

    env = child_environment(_NON_INTERACTIVE)
    if additional:
        env.update(additional)
    return env


def credential_options(username: str | None, password: str | None) -> list[str]:
    """Return ``-c`` options carrying HTTP basic credentials for a single command.

    The header lives only on the command line, so nothing is written to the
    checkout's configuration. Both values are needed; otherwise git runs
    anonymously.
    """

    if not username or not password:
        return []
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return ["-c", f"http.extraHeader=Authorization: Basic {token}"]
