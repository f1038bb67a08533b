"""Visaire: command-line LLM assistant with a checked local action pipeline."""

import os
from pathlib import Path

__version__ = "0.3.0"


def get_visaire_home() -> Path:
    """Get the global data root (~/.visaire/, or $VISAIRE_HOME when set)."""
    override = os.getenv("VISAIRE_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".visaire"


def get_sessions_dir() -> Path:
    """Directory holding one sub-directory per agent session."""
    return get_visaire_home() / "sessions"
