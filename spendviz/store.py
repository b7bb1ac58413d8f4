import json
from contextlib import contextmanager

from .db import INTEGRITY_ERRORS, connect_db
from .errors import AccessDeniedError, CategoryInUseError, DuplicateRecordError, ValidationError

DEFAULT_CATEGORIES = [
    "Income",
    "Housing",
    "Food",
    "Transportation",
    "Utilities",
    "Healthcare",
    "Entertainment",
    "Personal Care",
    "Miscellaneous",
]

TRANSACTION_SORT_COLUMNS = {
    "date": "t.date",
    "description": "t.description",
    "amount": "t.amount",
    "account_name": "a.name",
    "category_name": "c.name",
    "created_at": "t.created_at",
}
RULE_SORT_COLUMNS = {"pattern": "cr.pattern", "category_name": "c.name"}
CATEGORY_SORT_COLUMNS = {"name": "name", "created_at": "created_at"}

RULE_SELECT = """
    SELECT cr.id, cr.pattern, cr.category_id, c.name AS category_name
    FROM categorization_rules cr
    JOIN categories c ON cr.category_id = c.id
"""


def row_to_dict(row):
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def _page_count(total, limit):
    if not limit:
        return 1
    return (total + limit - 1) // limit


def _sort_direction(direction, default="DESC"):
    if not direction:
        return default
    return "ASC" if str(direction).lower() == "asc" else "DESC"


class Store:
    """Narrow query interface the finance core runs against.

    Every method takes the acting ``user_id`` and only ever touches rows that
    belong to it; lookups of foreign rows raise ``AccessDeniedError``.
    Nothing here commits: the caller owns the unit of work.
    """

    def __init__(self, conn):
        self.conn = conn

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    def savepoint(self, name="sp"):
        return self.conn.savepoint(name)

    # users

    def ensure_user(self, email, name=None):
        row = self.conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
        if row is not None:
            return row["id"]
        return self.conn.insert("INSERT INTO users (email, name) VALUES (?, ?)", (email, name))

    def get_user(self, user_id):
        return row_to_dict(self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone())

    # accounts

    def list_accounts(self, user_id):
        rows = self.conn.execute("SELECT * FROM accounts WHERE user_id = ? ORDER BY name", (user_id,)).fetchall()
        return [row_to_dict(row) for row in rows]

    def get_account(self, user_id, account_id):
        row = self.conn.execute(
            "SELECT * FROM accounts WHERE id = ? AND user_id = ?", (account_id, user_id)
        ).fetchone()
        if row is None:
            raise AccessDeniedError("Account not found or access denied.")
        return row_to_dict(row)

    def create_account(self, user_id, name, account_type=None, institution=None):
        try:
            with self.savepoint("create_account"):
                account_id = self.conn.insert(
                    "INSERT INTO accounts (user_id, name, type, institution) VALUES (?, ?, ?, ?)",
                    (user_id, name, account_type or None, institution or None),
                )
        except INTEGRITY_ERRORS as exc:
            raise DuplicateRecordError(
                "An account with the same name, type, and institution already exists."
            ) from exc
        return self.get_account(user_id, account_id)

    def update_account(self, user_id, account_id, name, account_type=None, institution=None):
        self.get_account(user_id, account_id)
        self.conn.execute(
            "UPDATE accounts SET name = ?, type = ?, institution = ? WHERE id = ? AND user_id = ?",
            (name, account_type or None, institution or None, account_id, user_id),
        )
        return self.get_account(user_id, account_id)

    def delete_account(self, user_id, account_id):
        self.get_account(user_id, account_id)
        self.conn.execute("DELETE FROM csv_mapping_presets WHERE account_id = ?", (account_id,))
        self.conn.execute("DELETE FROM transactions WHERE account_id = ?", (account_id,))
        cur = self.conn.execute("DELETE FROM accounts WHERE id = ? AND user_id = ?", (account_id, user_id))
        return cur.rowcount > 0

    # csv mapping presets

    def get_csv_preset(self, user_id, account_id):
        row = self.conn.execute(
            """
            SELECT p.account_id, p.mapping_json, p.date_format, p.debit_credit_logic, p.updated_at
            FROM csv_mapping_presets p
            JOIN accounts a ON p.account_id = a.id
            WHERE p.account_id = ? AND a.user_id = ?
            """,
            (account_id, user_id),
        ).fetchone()
        if row is None:
            return None
        preset = row_to_dict(row)
        preset["mapping"] = json.loads(preset.pop("mapping_json"))
        return preset

    def save_csv_preset(self, user_id, account_id, mapping, date_format=None, debit_credit_logic=None):
        self.get_account(user_id, account_id)
        self.conn.execute(
            """
            INSERT INTO csv_mapping_presets (account_id, mapping_json, date_format, debit_credit_logic, updated_at)
            VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT (account_id) DO UPDATE SET
                mapping_json = excluded.mapping_json,
                date_format = excluded.date_format,
                debit_credit_logic = excluded.debit_credit_logic,
                updated_at = excluded.updated_at
            """,
            (account_id, json.dumps(list(mapping)), date_format, debit_credit_logic),
        )
        return self.get_csv_preset(user_id, account_id)

    # categories

    def list_categories(self, user_id):
        rows = self.conn.execute(
            "SELECT id, name, parent_id, created_at FROM categories WHERE user_id = ? ORDER BY name ASC",
            (user_id,),
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    def list_categories_paged(self, user_id, page=1, limit=10, filter_text="", sort="name", direction="asc"):
        where = "WHERE user_id = ?"
        params = [user_id]
        if filter_text and filter_text.strip():
            where += " AND LOWER(name) LIKE ?"
            params.append(f"%{filter_text.strip().lower()}%")
        sort_column = CATEGORY_SORT_COLUMNS.get(sort, "name")
        total = self.conn.execute(f"SELECT COUNT(*) AS count FROM categories {where}", tuple(params)).fetchone()["count"]
        rows = self.conn.execute(
            f"""
            SELECT id, name, parent_id, created_at FROM categories {where}
            ORDER BY {sort_column} {_sort_direction(direction, 'ASC')}
            LIMIT ? OFFSET ?
            """,
            tuple(params + [limit, (page - 1) * limit]),
        ).fetchall()
        return {
            "categories": [row_to_dict(row) for row in rows],
            "totalItems": total,
            "currentPage": page,
            "totalPages": _page_count(total, limit),
        }

    def get_category(self, user_id, category_id):
        row = self.conn.execute(
            "SELECT id, name, parent_id, created_at FROM categories WHERE id = ? AND user_id = ?",
            (category_id, user_id),
        ).fetchone()
        if row is None:
            raise AccessDeniedError("Category not found or access denied.")
        return row_to_dict(row)

    def create_category(self, user_id, name, parent_id=None):
        if parent_id is not None:
            self.get_category(user_id, parent_id)
        try:
            with self.savepoint("create_category"):
                category_id = self.conn.insert(
                    "INSERT INTO categories (user_id, name, parent_id) VALUES (?, ?, ?)",
                    (user_id, name, parent_id),
                )
        except INTEGRITY_ERRORS as exc:
            raise DuplicateRecordError(f"Category {name!r} already exists.") from exc
        return self.get_category(user_id, category_id)

    def update_category(self, user_id, category_id, name, parent_id=None):
        self.get_category(user_id, category_id)
        if parent_id is not None:
            if parent_id == category_id:
                raise ValidationError("A category cannot be its own parent.")
            self.get_category(user_id, parent_id)
        try:
            with self.savepoint("update_category"):
                self.conn.execute(
                    "UPDATE categories SET name = ?, parent_id = ? WHERE id = ? AND user_id = ?",
                    (name, parent_id, category_id, user_id),
                )
        except INTEGRITY_ERRORS as exc:
            raise DuplicateRecordError(f"Category {name!r} already exists.") from exc
        return self.get_category(user_id, category_id)

    def delete_category(self, user_id, category_id):
        self.get_category(user_id, category_id)
        in_transactions = self.conn.execute(
            "SELECT COUNT(*) AS count FROM transactions WHERE category_id = ?", (category_id,)
        ).fetchone()["count"]
        if in_transactions:
            raise CategoryInUseError("Category is in use by transactions and cannot be deleted.")
        in_rules = self.conn.execute(
            "SELECT COUNT(*) AS count FROM categorization_rules WHERE category_id = ?", (category_id,)
        ).fetchone()["count"]
        if in_rules:
            raise CategoryInUseError("Category is in use by categorization rules and cannot be deleted.")
        children = self.conn.execute(
            "SELECT COUNT(*) AS count FROM categories WHERE parent_id = ? AND user_id = ?",
            (category_id, user_id),
        ).fetchone()["count"]
        if children:
            raise CategoryInUseError(
                "Category has sub-categories and cannot be deleted. Please delete sub-categories first."
            )
        cur = self.conn.execute("DELETE FROM categories WHERE id = ? AND user_id = ?", (category_id, user_id))
        return {"id": category_id, "affectedRows": cur.rowcount}

    def ensure_default_categories(self, user_id, names=None):
        for name in names or DEFAULT_CATEGORIES:
            self.conn.execute(
                "INSERT INTO categories (user_id, name) VALUES (?, ?) ON CONFLICT (user_id, name) DO NOTHING",
                (user_id, name),
            )

    # categorization rules

    def list_rules_for_user(self, user_id):
        rows = self.conn.execute(
            RULE_SELECT + " WHERE cr.user_id = ? ORDER BY cr.id DESC", (user_id,)
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    def list_rules_paged(self, user_id, page=1, limit=10, filter_text="", sort="pattern", direction="desc"):
        where = "WHERE cr.user_id = ?"
        params = [user_id]
        if filter_text and filter_text.strip():
            where += " AND LOWER(cr.pattern) LIKE ?"
            params.append(f"%{filter_text.strip().lower()}%")
        sort_column = RULE_SORT_COLUMNS.get(sort, "cr.pattern")
        total = self.conn.execute(
            f"SELECT COUNT(*) AS count FROM categorization_rules cr {where}", tuple(params)
        ).fetchone()["count"]
        rows = self.conn.execute(
            RULE_SELECT
            + f" {where} ORDER BY {sort_column} {_sort_direction(direction)}, cr.id DESC LIMIT ? OFFSET ?",
            tuple(params + [limit, (page - 1) * limit]),
        ).fetchall()
        return {
            "rules": [row_to_dict(row) for row in rows],
            "totalItems": total,
            "currentPage": page,
            "totalPages": _page_count(total, limit),
        }

    def get_rule(self, user_id, rule_id):
        row = self.conn.execute(RULE_SELECT + " WHERE cr.id = ? AND cr.user_id = ?", (rule_id, user_id)).fetchone()
        if row is None:
            raise AccessDeniedError("Categorization rule not found or access denied.")
        return row_to_dict(row)

    def create_rule(self, user_id, pattern, category_id):
        self.get_category(user_id, category_id)
        rule_id = self.conn.insert(
            "INSERT INTO categorization_rules (user_id, pattern, category_id) VALUES (?, ?, ?)",
            (user_id, pattern, category_id),
        )
        return self.get_rule(user_id, rule_id)

    def update_rule(self, user_id, rule_id, pattern, category_id):
        self.get_rule(user_id, rule_id)
        self.get_category(user_id, category_id)
        self.conn.execute(
            "UPDATE categorization_rules SET pattern = ?, category_id = ? WHERE id = ? AND user_id = ?",
            (pattern, category_id, rule_id, user_id),
        )
        return self.get_rule(user_id, rule_id)

    def delete_rule(self, user_id, rule_id):
        cur = self.conn.execute(
            "DELETE FROM categorization_rules WHERE id = ? AND user_id = ?", (rule_id, user_id)
        )
        return cur.rowcount

    # transactions

    def list_transactions(self, user_id, account_id=None, description=None, start_date=None, end_date=None,
                          category_id=None, sort="date", direction="desc", page=1, limit=10):
        """Filtered, sorted listing. ``limit=None`` returns every matching row."""
        conditions = ["a.user_id = ?"]
        params = [user_id]
        if account_id:
            conditions.append("t.account_id = ?")
            params.append(account_id)
        if description:
            conditions.append("t.description LIKE ?")
            params.append(f"%{description}%")
        if start_date:
            conditions.append("t.date >= ?")
            params.append(start_date)
        if end_date:
            conditions.append("t.date <= ?")
            params.append(end_date)
        if category_id is not None:
            if str(category_id).lower() in {"null", ""}:
                conditions.append("t.category_id IS NULL")
            else:
                conditions.append("t.category_id = ?")
                params.append(int(category_id))

        base_sql = f"""
            FROM transactions t
            JOIN accounts a ON t.account_id = a.id
            LEFT JOIN categories c ON t.category_id = c.id
            WHERE {' AND '.join(conditions)}
        """
        total = self.conn.execute(f"SELECT COUNT(*) AS count {base_sql}", tuple(params)).fetchone()["count"]
        sort_column = TRANSACTION_SORT_COLUMNS.get(sort, "t.date")
        query = (
            f"SELECT t.*, a.name AS account_name, c.name AS category_name {base_sql}"
            f" ORDER BY {sort_column} {_sort_direction(direction)}, t.created_at DESC, t.id DESC"
        )
        query_params = list(params)
        if limit:
            query += " LIMIT ? OFFSET ?"
            query_params.extend([limit, (page - 1) * limit])
        rows = self.conn.execute(query, tuple(query_params)).fetchall()
        return {
            "transactions": [row_to_dict(row) for row in rows],
            "totalItems": total,
            "currentPage": page,
            "totalPages": _page_count(total, limit),
        }

    def get_transaction(self, user_id, transaction_id):
        row = self.conn.execute(
            """
            SELECT t.*, a.name AS account_name, c.name AS category_name
            FROM transactions t
            JOIN accounts a ON t.account_id = a.id
            LEFT JOIN categories c ON t.category_id = c.id
            WHERE t.id = ? AND a.user_id = ?
            """,
            (transaction_id, user_id),
        ).fetchone()
        if row is None:
            raise AccessDeniedError(f"Transaction with id {transaction_id} not found or access denied.")
        return row_to_dict(row)

    def insert_transaction(self, user_id, fields):
        self.get_account(user_id, fields["account_id"])
        category_id = fields.get("category_id")
        if category_id is not None:
            self.get_category(user_id, category_id)
        transaction_id = self.conn.insert(
            "INSERT INTO transactions (account_id, date, description, amount, category_id) VALUES (?, ?, ?, ?, ?)",
            (fields["account_id"], fields["date"], fields["description"], fields["amount"], category_id),
        )
        return self.get_transaction(user_id, transaction_id)

    def update_transaction(self, user_id, transaction_id, fields):
        current = self.get_transaction(user_id, transaction_id)
        account_id = fields.get("account_id", current["account_id"])
        if account_id != current["account_id"]:
            self.get_account(user_id, account_id)
        category_id = fields.get("category_id", current["category_id"])
        if category_id is not None and category_id != current["category_id"]:
            self.get_category(user_id, category_id)
        self.conn.execute(
            """
            UPDATE transactions
            SET account_id = ?, date = ?, description = ?, amount = ?, category_id = ?
            WHERE id = ?
            """,
            (
                account_id,
                fields.get("date", current["date"]),
                fields.get("description", current["description"]),
                fields.get("amount", current["amount"]),
                category_id,
                transaction_id,
            ),
        )
        return self.get_transaction(user_id, transaction_id)

    def update_transaction_category(self, transaction_id, category_id):
        cur = self.conn.execute(
            "UPDATE transactions SET category_id = ? WHERE id = ?", (category_id, transaction_id)
        )
        return cur.rowcount

    def update_transactions_category(self, user_id, transaction_ids, category_id):
        affected = 0
        for transaction_id in transaction_ids:
            cur = self.conn.execute(
                """
                UPDATE transactions SET category_id = ?
                WHERE id = ? AND account_id IN (SELECT id FROM accounts WHERE user_id = ?)
                """,
                (category_id, transaction_id, user_id),
            )
            affected += cur.rowcount
        return affected

    def list_uncategorized_transactions(self, user_id):
        rows = self.conn.execute(
            """
            SELECT t.id, t.description
            FROM transactions t
            JOIN accounts a ON t.account_id = a.id
            WHERE t.category_id IS NULL AND a.user_id = ?
            ORDER BY t.id ASC
            """,
            (user_id,),
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    def uncategorized_descriptions(self, user_id):
        rows = self.conn.execute(
            """
            SELECT DISTINCT t.description, t.date, t.amount
            FROM transactions t
            JOIN accounts a ON t.account_id = a.id
            WHERE t.category_id IS NULL AND t.description IS NOT NULL AND t.description != '' AND a.user_id = ?
            ORDER BY t.description ASC, t.date DESC
            """,
            (user_id,),
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    def delete_all_transactions(self, user_id):
        cur = self.conn.execute(
            "DELETE FROM transactions WHERE account_id IN (SELECT id FROM accounts WHERE user_id = ?)",
            (user_id,),
        )
        return cur.rowcount

    # reports

    def _report_filters(self, user_id, start_date=None, end_date=None, account_id=None):
        where = "WHERE a.user_id = ?"
        params = [user_id]
        if start_date:
            where += " AND t.date >= ?"
            params.append(start_date)
        if end_date:
            where += " AND t.date <= ?"
            params.append(end_date)
        if account_id:
            where += " AND t.account_id = ?"
            params.append(account_id)
        return where, params

    def spending_by_category(self, user_id, start_date=None, end_date=None, account_id=None, transaction_limit=100):
        """Net spending per category as positive totals, with that category's latest transactions.

        Transfer and income categories are left out, as are categories whose
        net amount is not negative.
        """
        where, params = self._report_filters(user_id, start_date, end_date, account_id)
        rows = self.conn.execute(
            f"""
            SELECT c.id AS category_id, c.name AS category_name,
                   SUM(t.amount) AS total, COUNT(t.id) AS transaction_count
            FROM transactions t
            JOIN categories c ON t.category_id = c.id
            JOIN accounts a ON t.account_id = a.id
            {where} AND LOWER(c.name) != 'transfer' AND LOWER(c.name) NOT LIKE 'income%'
            GROUP BY c.id, c.name
            HAVING SUM(t.amount) < 0
            ORDER BY total ASC
            """,
            tuple(params),
        ).fetchall()

        report = []
        for row in rows:
            transactions = self.conn.execute(
                f"""
                SELECT t.id, t.date, t.description, t.amount, a.name AS account_name
                FROM transactions t
                JOIN accounts a ON t.account_id = a.id
                {where} AND t.category_id = ?
                ORDER BY t.date DESC, t.created_at DESC, t.id DESC
                LIMIT ?
                """,
                tuple(params + [row["category_id"], transaction_limit]),
            ).fetchall()
            report.append(
                {
                    "category_id": row["category_id"],
                    "category_name": row["category_name"],
                    "total_spent": round(-float(row["total"]), 2),
                    "transaction_count": row["transaction_count"],
                    "transactions": [row_to_dict(tx) for tx in transactions],
                }
            )
        return report

    def spending_by_category_by_month(self, user_id, start_date=None, end_date=None, account_id=None):
        """Signed totals per category name and ``YYYY-MM``; only transfers are excluded."""
        where, params = self._report_filters(user_id, start_date, end_date, account_id)
        rows = self.conn.execute(
            f"""
            SELECT c.name AS category, SUBSTR(t.date, 1, 7) AS month, SUM(t.amount) AS total
            FROM transactions t
            JOIN categories c ON t.category_id = c.id
            JOIN accounts a ON t.account_id = a.id
            {where} AND LOWER(c.name) != 'transfer'
            GROUP BY c.name, SUBSTR(t.date, 1, 7)
            ORDER BY month ASC, total DESC
            """,
            tuple(params),
        ).fetchall()
        return [
            {"category": row["category"], "month": row["month"], "total": round(float(row["total"]), 2)}
            for row in rows
        ]

    def net_worth_trend(self, user_id, start_date=None, end_date=None):
        """Balance across all accounts at the end of each day that has activity.

        Transactions before ``start_date`` still count toward the balance.
        """
        opening = 0.0
        if start_date:
            row = self.conn.execute(
                """
                SELECT COALESCE(SUM(t.amount), 0) AS total
                FROM transactions t
                JOIN accounts a ON t.account_id = a.id
                WHERE a.user_id = ? AND t.date < ?
                """,
                (user_id, start_date),
            ).fetchone()
            opening = float(row["total"])

        where, params = self._report_filters(user_id, start_date, end_date)
        rows = self.conn.execute(
            f"""
            SELECT t.date, SUM(t.amount) AS total
            FROM transactions t
            JOIN accounts a ON t.account_id = a.id
            {where}
            GROUP BY t.date
            ORDER BY t.date ASC
            """,
            tuple(params),
        ).fetchall()

        balance = opening
        trend = []
        for row in rows:
            balance += float(row["total"])
            trend.append({"date": row["date"], "netWorth": round(balance, 2)})
        return trend


@contextmanager
def open_store(config):
    """One unit of work: connect, yield a ``Store``, commit or roll back, close."""
    conn = connect_db(config)
    try:
        store = Store(conn)
        yield store
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
