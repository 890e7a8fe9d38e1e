"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest


@pytest.fixture()
def clean_env(monkeypatch):
    """Drop KANBAN_* variables so settings come from defaults."""
    for name in list(os.environ):
        if name.startswith("KANBAN_"):
            monkeypatch.delenv(name, raising=False)
