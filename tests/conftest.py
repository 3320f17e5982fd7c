"""Shared test helpers."""

import json

import pytest
from websockets.protocol import State


class FakeConnection:
    """Stands in for a websockets server connection."""

    def __init__(self, name="client", state=State.OPEN, fail=False):
        self.name = name
        self.state = state
        self.fail = fail
        self.sent = []
        self.remote_address = ("127.0.0.1", 0)

    async def send(self, message):
        if self.fail:
            raise OSError("broken pipe")
        self.sent.append(message)

    @property
    def messages(self):
        return [json.loads(m) for m in self.sent]

    def __repr__(self):
        return f"FakeConnection({self.name})"


@pytest.fixture
def make_connection():
    return FakeConnection


@pytest.fixture
def project(tmp_path):
    """A small static site."""
    root = tmp_path / "site"
    root.mkdir()
    (root / "index.html").write_text(
        "<!DOCTYPE html><html><head><title>Home</title></head><body>Home</body></html>"
    )
    (root / "style.css").write_text("body { color: red; }")
    (root / "data.json").write_text('{"a": 1}')
    docs = root / "docs"
    docs.mkdir()
    (docs / "index.html").write_text("<html><head></head><body>Docs</body></html>")
    (root / "empty").mkdir()
    return root
