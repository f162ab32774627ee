"""Shared fixtures."""

import pytest

from fakes import LINUX, postgres_entries, tar_bytes


@pytest.fixture
def linux_platform():
    return LINUX


@pytest.fixture
def tar_payload() -> bytes:
    """Bytes of a theseus-style tar.gz archive."""
    return tar_bytes(postgres_entries(), "gz")


@pytest.fixture(autouse=True)
def _no_github_token(monkeypatch):
    """Keep a developer's GITHUB_TOKEN out of request assertions."""
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
