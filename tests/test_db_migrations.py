import sqlite3

from spendviz.db import rewrite_sql
from spendviz.db_migrations import (
    COLUMN_ALREADY_PRESENT,
    COLUMN_CREATED,
    apply_migrations,
    ensure_column,
    get_db_health,
)


class _FakeCursor:
    def __init__(self, one=None, all_rows=None):
        self._one = one
        self._all = all_rows or []

    def fetchone(self):
        return self._one

    def fetchall(self):
        return self._all


class _FakePostgresConnection:
    def __init__(self, columns):
        self.backend = "postgres"
        self.columns = columns
        self.statements = []

    def execute(self, sql, params=None):
        normalized_sql = " ".join(sql.split())
        self.statements.append(normalized_sql)
        if "FROM information_schema.tables" in normalized_sql:
            return _FakeCursor(one=(1,))
        if "FROM information_schema.columns" in normalized_sql:
            return _FakeCursor(all_rows=[(name,) for name in self.columns])
        if normalized_sql.startswith("ALTER TABLE"):
            return _FakeCursor()
        raise AssertionError(f"Unexpected SQL: {sql}")


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == 4
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    conn.close()
    assert versions == [1, 2, 3, 4]


def test_apply_migrations_on_legacy_db_scopes_rules_to_category_owner(tmp_path):
    db_path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            name TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
        INSERT INTO users(email, name) VALUES ('alice@example.com', 'Alice');
        INSERT INTO users(email, name) VALUES ('bob@example.com', 'Bob');

        CREATE TABLE categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            parent_id INTEGER,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
        INSERT INTO categories(user_id, name) VALUES (1, 'Food');
        INSERT INTO categories(user_id, name) VALUES (2, 'Travel');

        CREATE TABLE categorization_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            pattern TEXT NOT NULL,
            category_id INTEGER NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
        INSERT INTO categorization_rules(pattern, category_id) VALUES ('grocery', 1);
        INSERT INTO categorization_rules(pattern, category_id) VALUES ('airline', 2);
        """
    )
    conn.commit()
    conn.close()

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))
    assert health["ok"] is True

    conn = sqlite3.connect(db_path)
    rows = conn.execute("SELECT pattern, user_id FROM categorization_rules ORDER BY id").fetchall()
    conn.close()
    assert rows == [("grocery", 1), ("airline", 2)]


def test_ensure_column_reports_outcome(tmp_path):
    conn = sqlite3.connect(tmp_path / "columns.sqlite")
    conn.execute("CREATE TABLE widgets (id INTEGER PRIMARY KEY)")

    assert ensure_column(conn, "widgets", "label TEXT") == COLUMN_CREATED
    assert ensure_column(conn, "widgets", "label TEXT") == COLUMN_ALREADY_PRESENT

    columns = [row[1] for row in conn.execute("PRAGMA table_info(widgets)").fetchall()]
    assert columns == ["id", "label"]
    conn.close()


def test_ensure_column_skips_alter_for_existing_postgres_column():
    conn = _FakePostgresConnection(columns=["id", "pattern", "category_id", "user_id"])

    outcome = ensure_column(conn, "categorization_rules", "user_id INTEGER REFERENCES users (id)")

    assert outcome == COLUMN_ALREADY_PRESENT
    assert not any(statement.startswith("ALTER TABLE") for statement in conn.statements)


def test_health_reports_missing_tables_before_migration(tmp_path):
    health = get_db_health(str(tmp_path / "fresh.sqlite"))

    assert health["ok"] is False
    assert health["schema_version"] == 0
    assert "transactions" in health["missing_tables"]
    assert "idx_transactions_account_id" in health["missing_indexes"]


def test_apply_migrations_does_not_close_passed_connection(tmp_path):
    db_path = tmp_path / "connection.sqlite"
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row

    apply_migrations(conn)

    row = conn.execute("SELECT 1").fetchone()
    assert row[0] == 1
    conn.close()


def test_migrations_create_categories_unique_index(tmp_path):
    db_path = tmp_path / "categories_uq.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'").fetchall()}
    assert "uq_categories_user_name" in indexes
    assert "idx_categorization_rules_user_id" in indexes
    conn.close()


def test_rewrite_sql_for_postgres_placeholders_and_row_ids():
    sql, params = rewrite_sql("postgres", "SELECT * FROM accounts WHERE id = ? AND user_id = ?", (3, 1))
    assert sql == "SELECT * FROM accounts WHERE id = %s AND user_id = %s"
    assert params == (3, 1)

    sql, params = rewrite_sql("postgres", "SELECT last_insert_rowid() AS id", None)
    assert sql == "SELECT lastval() AS id"
    assert params == ()


def test_rewrite_sql_leaves_sqlite_untouched():
    assert rewrite_sql("sqlite", "SELECT ? AS x", (1,)) == ("SELECT ? AS x", (1,))
