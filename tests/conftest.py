"""Shared fixtures: isolated data root and no provider keys from the host."""

from __future__ import annotations

import os

import pytest

_KEY_VARS = (
    "CLAUDE_API_KEY",
    "ANTHROPIC_API_KEY",
    "GPT_API_KEY",
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
)


@pytest.fixture(autouse=True)
def visaire_home(tmp_path, monkeypatch):
    """Point the data root at a per-test directory."""
    home = tmp_path / "visaire-home"
    monkeypatch.setenv("VISAIRE_HOME", str(home))
    for var in _KEY_VARS:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("VISAIRE_") and var != "VISAIRE_HOME":
            monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("DEBUG", raising=False)
    return home


@pytest.fixture
def workspace(tmp_path):
    """An empty project directory distinct from the data root."""
    root = tmp_path / "project"
    root.mkdir()
    return root
