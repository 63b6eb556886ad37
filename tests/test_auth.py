"""
tests/test_auth.py
"""
from __future__ import annotations

import itertools
from contextlib import contextmanager
from typing import Iterator

import pytest
from flask.testing import FlaskClient

from readlist.app import (
    LoginThrottle,
    app,
    get_db,
    get_store,
    issue_login_token,
    signer,
)
from readlist.store import ReadingEntry


# ───────────────────────── helpers ────────────────────────────────────
def _fresh_token() -> str:
    """Return a valid one-time login token, creating the account if needed."""
    with app.app_context():
        db = get_db()
        if not db.execute("SELECT 1 FROM user LIMIT 1").fetchone():
            return issue_login_token(db, username="tester")
        return issue_login_token(db)


_ip_counter = itertools.count(1)


@contextmanager
def _new_client() -> Iterator[FlaskClient]:
    """
    Yield a brand-new test client with a unique REMOTE_ADDR, so the
    login rate limit (keyed by IP) never bleeds between tests.
    """
    ip = f"127.0.1.{next(_ip_counter)}"
    with app.test_client() as c, app.app_context():
        c.environ_base["REMOTE_ADDR"] = ip
        yield c


def _login(client, token: str, follow=True):
    return client.post("/login", data={"token": token}, follow_redirects=follow)


@pytest.fixture
def gated(monkeypatch, titler):
    monkeypatch.setitem(app.config, "REQUIRE_LOGIN", True)


# ───────────────────────── login ──────────────────────────────────────
def test_successful_login():
    token = _fresh_token()
    with _new_client() as c:
        rv = _login(c, token)
        assert rv.status_code == 200
        with c.session_transaction() as sess:
            assert sess["logged_in"] is True
            assert sess["csrf"]


def test_token_forged():
    _fresh_token()
    bad = signer.sign("evil-payload").decode()[:-1] + "x"

    with _new_client() as c:
        rv = _login(c, bad, follow=False)
        assert rv.status_code == 200
        with c.session_transaction() as sess:
            assert "logged_in" not in sess


def test_token_is_burned_after_login():
    tok = _fresh_token()

    with _new_client() as c1:
        assert _login(c1, tok).status_code == 200

    with _new_client() as c2:
        _login(c2, tok, follow=False)
        with c2.session_transaction() as sess:
            assert "logged_in" not in sess


def test_rotate_token_invalidates_old_one():
    old = _fresh_token()
    new = _fresh_token()

    with _new_client() as c:
        _login(c, old, follow=False)
        with c.session_transaction() as sess:
            assert "logged_in" not in sess

    with _new_client() as c:
        _login(c, new)
        with c.session_transaction() as sess:
            assert sess.get("logged_in") is True


def test_login_rate_limit():
    forged = signer.sign("nope").decode()[:-1] + "x"

    with _new_client() as c:
        for _ in range(5):
            assert _login(c, forged, follow=False).status_code == 200

        resp = _login(c, forged, follow=False)
        assert resp.status_code == 429
        assert b"Too many requests" in resp.data


def test_throttle_forgets_idle_clients():
    limiter = LoginThrottle(max_requests=2, window=60)
    assert limiter.retry_after("10.0.0.1", now=0) == 0
    assert limiter.retry_after("10.0.0.1", now=1) == 0
    assert limiter.retry_after("10.0.0.1", now=2) == 58

    # a minute later the first client has no hits left and is dropped
    assert limiter.retry_after("10.0.0.2", now=100) == 0
    assert list(limiter.hits) == ["10.0.0.2"]


def test_logout_clears_session():
    with _new_client() as c:
        with c.session_transaction() as sess:
            sess["logged_in"] = True
        assert c.get("/logout").status_code == 302
        with c.session_transaction() as sess:
            assert "logged_in" not in sess


# ───────────────────────── write gate ─────────────────────────────────
def test_open_writes_by_default(client):
    rv = client.post("/addReading", data={"url": "https://a.example", "title": "A"})
    assert rv.status_code == 200


def test_gate_blocks_anonymous_writes(client, gated):
    entry_id = get_store().create(ReadingEntry(url="https://keep.example"))

    assert client.post("/addReading", data={"url": "https://a.example"}).status_code == 403
    assert client.delete(f"/readings/{entry_id}/delete").status_code == 403
    assert [r.id for r in get_store().list_all()] == [entry_id]

    # reads stay public
    assert client.get("/getReadingList").status_code == 200
    assert client.get("/").status_code == 200


def test_gate_allows_logged_in_writes_with_csrf(client, gated):
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = "test-token"

    rv = client.post(
        "/addReading", data={"url": "https://a.example", "title": "A", "csrf": "test-token"}
    )
    assert rv.status_code == 200

    (entry,) = get_store().list_all()
    rv = client.delete(
        f"/readings/{entry.id}/delete", headers={"X-CSRFToken": "test-token"}
    )
    assert rv.status_code == 200
    assert get_store().list_all() == []


def test_logged_in_write_without_csrf_is_rejected(client):
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = "test-token"

    rv = client.post("/addReading", data={"url": "https://a.example", "title": "A"})
    assert rv.status_code == 403
    assert get_store().list_all() == []
