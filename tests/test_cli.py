"""
tests/test_cli.py -- The administrative command line in main.py.

Each test points --database-url at a file-backed SQLite database under
tmp_path so the CLI's own CredentialStore sees the rows arranged here.
"""

from __future__ import annotations

import pytest

from auth.models import Role
from auth.store import CredentialStore
from conftest import make_user
from main import main


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cli.db'}"


@pytest.fixture
def cli_store(db_url):
    s = CredentialStore(db_url)
    yield s
    s.close()


def test_promote_defaults_to_admin(db_url, cli_store, capsys) -> None:
    user = make_user(cli_store, "ada@example.com")
    assert main(["--database-url", db_url, "promote", "ADA@example.com"]) == 0
    assert "READER -> ADMIN" in capsys.readouterr().out
    assert cli_store.get_user_by_id(user.id).role is Role.ADMIN


def test_promote_with_explicit_role(db_url, cli_store) -> None:
    user = make_user(cli_store, "ada@example.com")
    assert main(["--database-url", db_url, "promote", "ada@example.com", "--role", "AUTHOR"]) == 0
    assert cli_store.get_user_by_id(user.id).role is Role.AUTHOR


def test_promote_is_idempotent(db_url, cli_store, capsys) -> None:
    make_user(cli_store, "ada@example.com", role=Role.ADMIN)
    assert main(["--database-url", db_url, "promote", "ada@example.com"]) == 0
    assert "already has role ADMIN" in capsys.readouterr().out


def test_promote_unknown_email(db_url, cli_store, capsys) -> None:
    assert main(["--database-url", db_url, "promote", "nobody@example.com"]) == 1
    assert "No user found" in capsys.readouterr().out


def test_check_db_prints_counts(db_url, cli_store, capsys) -> None:
    make_user(cli_store, "ada@example.com")
    make_user(cli_store, "bob@example.com", role=Role.AUTHOR)
    assert main(["--database-url", db_url, "check-db"]) == 0
    out = capsys.readouterr().out
    assert "users" in out
    assert "READER" in out
    assert "AUTHOR" in out


def test_no_command_prints_help(capsys) -> None:
    assert main([]) == 2
    assert "promote" in capsys.readouterr().out
