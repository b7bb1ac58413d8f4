from pathlib import Path

import pytest

from spendviz import create_app
from spendviz.db import connect_db, parse_database_config
from spendviz.db_migrations import apply_migrations
from spendviz.store import Store


@pytest.fixture()
def app(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    db_path = tmp_path / "test.sqlite"
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(db_path)})

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def store(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    config = parse_database_config(str(tmp_path / "core.sqlite"))
    apply_migrations(config)
    conn = connect_db(config)
    yield Store(conn)
    conn.close()


@pytest.fixture()
def user_id(store):
    return store.ensure_user("alice@example.com", "Alice")


@pytest.fixture()
def account(store, user_id):
    return store.create_account(user_id, "Checking", "checking", "First Bank")
