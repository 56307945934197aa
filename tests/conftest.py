"""Shared fixtures for the validators engine tests."""

from __future__ import annotations

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from unl.storage import MemoryStore


class FakeTransport:
    """Serves validator lists by URL. A stored exception is raised instead."""

    def __init__(self):
        self.documents: dict[str, object] = {}
        self.calls: list[str] = []

    def serve(self, url: str, identities) -> None:
        self.documents[url] = "\n".join(identities)

    def fail(self, url: str, error: Exception) -> None:
        self.documents[url] = error

    async def __call__(self, url: str, timeout: float) -> str:
        self.calls.append(url)
        document = self.documents[url]
        if isinstance(document, Exception):
            raise document
        return document


@pytest.fixture
def new_key():
    """Factory for fresh Ed25519 public keys (hex)."""

    def _new_key() -> str:
        private_key = ed25519.Ed25519PrivateKey.generate()
        return private_key.public_key().public_bytes_raw().hex()

    return _new_key


@pytest.fixture
def keys(new_key):
    """Eight distinct validator keys, sorted."""
    return sorted(new_key() for _ in range(8))


@pytest.fixture
def store():
    s = MemoryStore()
    s.open()
    return s


@pytest.fixture
def transport():
    return FakeTransport()
