import argparse
import json
from datetime import datetime

from .db import connect_db, parse_database_config


COLUMN_CREATED = "created"
COLUMN_ALREADY_PRESENT = "already_present"

REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "email", "name", "created_at"},
        "indexes": set(),
    },
    "accounts": {
        "columns": {"id", "user_id", "name", "type", "institution", "created_at"},
        "indexes": {"idx_accounts_user_id"},
    },
    "categories": {
        "columns": {"id", "user_id", "name", "parent_id", "created_at"},
        "indexes": {"uq_categories_user_name", "idx_categories_parent_id"},
    },
    "transactions": {
        "columns": {"id", "account_id", "date", "description", "amount", "category_id", "created_at"},
        "indexes": {
            "idx_transactions_account_id",
            "idx_transactions_date",
            "idx_transactions_category_id",
        },
    },
    "categorization_rules": {
        "columns": {"id", "user_id", "pattern", "category_id", "created_at"},
        "indexes": {"idx_categorization_rules_user_id"},
    },
    "csv_mapping_presets": {
        "columns": {"id", "account_id", "mapping_json", "date_format", "debit_credit_logic", "updated_at"},
        "indexes": set(),
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def column_exists(conn, table, column):
    if not table_exists(conn, table):
        return False
    return column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def ensure_column(conn, table, col_def_sql):
    """Add a column unless the table already has it.

    Returns ``"created"`` or ``"already_present"`` so callers can tell the two
    apart without relying on a failed ALTER TABLE.
    """
    column = col_def_sql.split()[0]
    if column_exists(conn, table, column):
        return COLUMN_ALREADY_PRESENT
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")
    return COLUMN_CREATED


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            name TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            type TEXT,
            institution TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(user_id, name, type, institution),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            parent_id INTEGER,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(user_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id),
            FOREIGN KEY (parent_id) REFERENCES categories (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id INTEGER NOT NULL,
            date TEXT NOT NULL,
            description TEXT,
            amount REAL NOT NULL,
            category_id INTEGER,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (account_id) REFERENCES accounts (id),
            FOREIGN KEY (category_id) REFERENCES categories (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS categorization_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            pattern TEXT NOT NULL,
            category_id INTEGER NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (category_id) REFERENCES categories (id)
        )
        """,
    )


def migration_002(conn):
    # Rules predate multi-user support; scope them to the owner of their category.
    if ensure_column(conn, "categorization_rules", "user_id INTEGER REFERENCES users (id)") == COLUMN_CREATED:
        conn.execute(
            """
            UPDATE categorization_rules
            SET user_id = (SELECT c.user_id FROM categories c WHERE c.id = categorization_rules.category_id)
            WHERE user_id IS NULL
            """
        )


def migration_003(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS csv_mapping_presets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id INTEGER NOT NULL UNIQUE,
            mapping_json TEXT NOT NULL,
            date_format TEXT,
            debit_credit_logic TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (account_id) REFERENCES accounts (id)
        )
        """,
    )


def migration_004(conn):
    create_index_if_missing(
        conn,
        "idx_accounts_user_id",
        "CREATE INDEX idx_accounts_user_id ON accounts(user_id)",
    )
    create_index_if_missing(
        conn,
        "uq_categories_user_name",
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_categories_user_name ON categories(user_id, name)",
    )
    create_index_if_missing(
        conn,
        "idx_categories_parent_id",
        "CREATE INDEX idx_categories_parent_id ON categories(parent_id)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_account_id",
        "CREATE INDEX idx_transactions_account_id ON transactions(account_id)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_date",
        "CREATE INDEX idx_transactions_date ON transactions(date)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_category_id",
        "CREATE INDEX idx_transactions_category_id ON transactions(category_id)",
    )
    create_index_if_missing(
        conn,
        "idx_categorization_rules_user_id",
        "CREATE INDEX idx_categorization_rules_user_id ON categorization_rules(user_id)",
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.utcnow().isoformat(timespec="seconds") + "Z"),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        absent_cols = sorted(col for col in table_spec["columns"] if col not in table_cols)
        missing_columns[table_name] = absent_cols

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check spendviz DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    args = parser.parse_args()

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)
    print(json.dumps(get_db_health(config), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
