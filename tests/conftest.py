"""Pytest configuration for all tests."""

import os

import pytest


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep CLARITY_* variables from the host out of settings under test."""
    for name in list(os.environ):
        if name.upper().startswith("CLARITY_"):
            monkeypatch.delenv(name, raising=False)
