"""
tests/conftest.py
"""
from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

from readlist.app import app, init_db


class StubTitles:
    """Stands in for the LLM title generator; records every description."""

    def __init__(self, title: str = "Generated Title"):
        self.title = title
        self.calls: list[str] = []

    def generate(self, description):
        self.calls.append(description)
        return self.title


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """A fresh database file per test so listings are exact."""
    return tmp_path / "readings.sqlite3"


@pytest.fixture(autouse=True)
def _configure_app(db_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(app.config, "TESTING", True)
    monkeypatch.setitem(app.config, "DATABASE", str(db_path))
    monkeypatch.setitem(app.config, "REQUIRE_LOGIN", False)
    monkeypatch.setitem(app.config, "SESSION_COOKIE_SECURE", False)
    with app.app_context():
        init_db()


@pytest.fixture
def titler(monkeypatch: pytest.MonkeyPatch) -> StubTitles:
    stub = StubTitles()
    monkeypatch.setitem(app.extensions, "title_generator", stub)
    return stub


@pytest.fixture
def client(titler) -> Generator[FlaskClient, None, None]:
    """
    Test client with the title generator stubbed out.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client
