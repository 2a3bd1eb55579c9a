"""Shared pytest fixtures."""

import pytest


@pytest.fixture(autouse=True)
def bypass_proxy_for_loopback(monkeypatch) -> None:
    """Keep requests to the local test servers off any configured proxy."""
    monkeypatch.setenv("NO_PROXY", "127.0.0.1,localhost")
    monkeypatch.setenv("no_proxy", "127.0.0.1,localhost")
