"""
tests/test_errors.py
"""
from __future__ import annotations

from readlist.app import app


def test_404_custom_page(client):
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    assert b"Page not found" in resp.data
    assert b"Back to the reading list" in resp.data


def test_delete_with_non_numeric_id_is_404(client):
    assert client.delete("/readings/abc/delete").status_code == 404


def test_500_handler_renders_friendly_page(client, monkeypatch):
    """
    Replace ``homepage`` with a view that crashes and turn off exception
    propagation so the global 500-handler renders the page.
    """
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "homepage", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/")
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data


def test_unreadable_database_is_500(client, monkeypatch, tmp_path):
    """A DATABASE path that sqlite cannot open surfaces as a storage error."""
    from flask import g

    g.pop("db", None)
    monkeypatch.setitem(app.config, "DATABASE", str(tmp_path / "missing" / "x.db"))

    resp = client.get("/getReadingList")
    assert resp.status_code == 500
    assert b"unavailable" in resp.data
