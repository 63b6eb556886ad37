"""
tests/test_cli.py
"""
from __future__ import annotations

from readlist.app import app, get_db, get_store
from readlist.store import SAMPLE_READINGS


def test_seed_inserts_samples_once():
    runner = app.test_cli_runner()

    result = runner.invoke(args=["seed"])
    assert result.exit_code == 0
    assert f"Inserted {len(SAMPLE_READINGS)}" in result.output

    result = runner.invoke(args=["seed"])
    assert result.exit_code == 0
    assert "nothing inserted" in result.output

    with app.app_context():
        urls = [r.url for r in get_store().list_all()]
    assert urls == ["https://go.dev/doc", "https://github.com/ismi-abbas/reading-list"]


def test_init_creates_account_then_rotates():
    runner = app.test_cli_runner()

    result = runner.invoke(args=["init", "--username", "reader"])
    assert result.exit_code == 0
    assert "Account created" in result.output

    result = runner.invoke(args=["init", "--username", "reader"])
    assert result.exit_code == 0
    assert "token rotated" in result.output

    with app.app_context():
        rows = get_db().execute("SELECT username FROM user").fetchall()
    assert [r["username"] for r in rows] == ["reader"]


def test_token_without_account_fails():
    result = app.test_cli_runner().invoke(args=["token"])
    assert result.exit_code != 0
    assert "flask init" in result.output


def test_token_rotates_for_existing_account():
    runner = app.test_cli_runner()
    runner.invoke(args=["init", "--username", "reader"])
    result = runner.invoke(args=["token"])
    assert result.exit_code == 0
    assert "Fresh login token" in result.output
