import json
import os
import sqlite3
from functools import wraps

import click
from flask import Flask, g, jsonify, request, session

from .csv_import import (
    DATE_CONFIDENCE_THRESHOLD,
    DATE_SAMPLE_LIMIT,
    ColumnMapping,
    Layout,
    force_import_candidates,
    reconcile_csv_import,
)
from .dates import COMMON_DATE_FORMATS, convert_date, detect_date_format, format_description
from .db import connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .errors import (
    AccessDeniedError,
    CategoryInUseError,
    DatabaseInitError,
    DuplicateRecordError,
    ValidationError,
)
from .rules import (
    apply_rules_to_all_uncategorized,
    bulk_categorize,
    find_categorization_conflicts,
    matching_rules_for_transaction,
    set_transaction_category,
)
from .store import DEFAULT_CATEGORIES, Store, open_store

DEMO_EMAIL = "demo@spendviz.app"


def _int_or_none(value):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Expected an integer, got {value!r}") from None


def _is_true(value):
    return value is True or str(value).strip().lower() in {"true", "1", "yes", "on"}


def seed_demo_data(store, category_names):
    """Create the demo user with an account, rules and a month of activity; safe to rerun."""
    user_id = store.ensure_user(DEMO_EMAIL, "Demo User")
    store.ensure_default_categories(user_id, category_names)
    categories = {row["name"]: row["id"] for row in store.list_categories(user_id)}
    accounts = store.list_accounts(user_id)
    account = accounts[0] if accounts else store.create_account(user_id, "Everyday Checking", "checking", "Demo Bank")
    if not store.list_rules_for_user(user_id):
        for pattern, category in [
            ("Payroll", "Income"),
            ("Rent", "Housing"),
            ("Grocery", "Food"),
            ("Uber", "Transportation"),
            ("Netflix", "Entertainment"),
        ]:
            if category in categories:
                store.create_rule(user_id, pattern, categories[category])
    if not store.list_transactions(user_id, account_id=account["id"], limit=1)["transactions"]:
        for date, description, amount in [
            ("2024-01-02", "PAYROLL ACME CORP", 2500.0),
            ("2024-01-03", "RENT JANUARY", -1200.0),
            ("2024-01-05", "Corner Grocery", -54.12),
            ("2024-01-06", "UBER TRIP 8841", -18.4),
            ("2024-01-09", "Netflix Payment", -15.99),
            ("2024-01-11", "Coffee Shop", -4.5),
        ]:
            store.insert_transaction(
                user_id,
                {"account_id": account["id"], "date": date, "description": description, "amount": amount},
            )
    return user_id


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "spendviz.sqlite"),
        DATE_SAMPLE_LIMIT=DATE_SAMPLE_LIMIT,
        DATE_CONFIDENCE_THRESHOLD=DATE_CONFIDENCE_THRESHOLD,
        MAX_CONTENT_LENGTH=16 * 1024 * 1024,
        DEFAULT_CATEGORIES=list(DEFAULT_CATEGORIES),
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"])

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except sqlite3.Error as exc:
                message = f"Unable to open database at {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def get_store():
        if "store" not in g:
            g.store = Store(get_db())
        return g.store

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (sqlite3.Error, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database at {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    app.get_db = get_db
    app.get_store = get_store
    app.init_db = init_db

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        click.echo("Initialized the database.")

    @app.cli.command("db-health")
    def db_health_command():
        click.echo(json.dumps(get_db_health(database_config()), indent=2, sort_keys=True))

    @app.cli.command("seed-demo")
    def seed_demo_command():
        init_db()
        with open_store(database_config()) as store:
            user_id = seed_demo_data(store, app.config["DEFAULT_CATEGORIES"])
        click.echo(f"Demo data ready for {DEMO_EMAIL} (user_id={user_id}).")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except sqlite3.Error as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.errorhandler(AccessDeniedError)
    def handle_access_denied(exc):
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(CategoryInUseError)
    @app.errorhandler(DuplicateRecordError)
    def handle_conflict(exc):
        return jsonify({"error": str(exc)}), 409

    @app.errorhandler(DatabaseInitError)
    def handle_db_init_error(exc):
        return jsonify({"error": str(exc)}), 500

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
            return jsonify({"error": message}), 500

        user_id = session.get("user_id")
        g.user = None
        if user_id is not None:
            g.user = get_store().get_user(user_id)

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return jsonify({"message": "Authentication required"}), 401
            return view(**kwargs)

        return wrapped_view

    def json_body():
        return request.get_json(silent=True) or {}

    # accounts

    @app.get("/api/accounts")
    @login_required
    def list_accounts():
        return jsonify(get_store().list_accounts(g.user["id"]))

    @app.post("/api/accounts")
    @login_required
    def create_account():
        payload = json_body()
        name = (payload.get("name") or "").strip()
        if not name:
            raise ValidationError("Account name is required.")
        store = get_store()
        account = store.create_account(g.user["id"], name, payload.get("type"), payload.get("institution"))
        store.commit()
        return jsonify(account), 201

    @app.put("/api/accounts/<int:account_id>")
    @login_required
    def update_account(account_id):
        payload = json_body()
        name = (payload.get("name") or "").strip()
        if not name:
            raise ValidationError("Account name is required.")
        store = get_store()
        account = store.update_account(g.user["id"], account_id, name, payload.get("type"), payload.get("institution"))
        store.commit()
        return jsonify(account)

    @app.delete("/api/accounts/<int:account_id>")
    @login_required
    def delete_account(account_id):
        store = get_store()
        store.delete_account(g.user["id"], account_id)
        store.commit()
        app.logger.info("Deleted account_id=%s for user_id=%s", account_id, g.user["id"])
        return "", 204

    @app.get("/api/accounts/<int:account_id>/csv-preset")
    @login_required
    def get_csv_preset(account_id):
        store = get_store()
        store.get_account(g.user["id"], account_id)
        return jsonify(store.get_csv_preset(g.user["id"], account_id))

    @app.post("/api/accounts/<int:account_id>/csv-preset")
    @login_required
    def save_csv_preset(account_id):
        payload = json_body()
        mapping = ColumnMapping.from_list(payload.get("mapping"))
        layout = payload.get("debitCreditLogic") or Layout.SINGLE.value
        if layout not in {item.value for item in Layout}:
            raise ValidationError(f"Unknown debit/credit layout: {layout!r}")
        date_format = payload.get("dateFormat")
        if date_format and date_format not in COMMON_DATE_FORMATS:
            raise ValidationError(f"Unsupported date format: {date_format!r}")
        store = get_store()
        preset = store.save_csv_preset(g.user["id"], account_id, mapping.to_list(), date_format, layout)
        store.commit()
        return jsonify(preset)

    # categories

    @app.get("/api/categories")
    @login_required
    def list_categories():
        store = get_store()
        categories = store.list_categories(g.user["id"])
        if not categories:
            store.ensure_default_categories(g.user["id"], app.config["DEFAULT_CATEGORIES"])
            store.commit()
            categories = store.list_categories(g.user["id"])
        return jsonify(categories)

    @app.get("/api/categories/paged")
    @login_required
    def list_categories_paged():
        args = request.args
        return jsonify(get_store().list_categories_paged(
            g.user["id"],
            page=_int_or_none(args.get("page")) or 1,
            limit=_int_or_none(args.get("limit")) or 10,
            filter_text=args.get("filter", ""),
            sort=args.get("sort", "name"),
            direction=args.get("direction", "asc"),
        ))

    @app.post("/api/categories")
    @login_required
    def create_category():
        payload = json_body()
        name = (payload.get("name") or "").strip()
        if not name:
            raise ValidationError("Category name is required.")
        store = get_store()
        category = store.create_category(g.user["id"], name, _int_or_none(payload.get("parent_id")))
        store.commit()
        return jsonify(category), 201

    @app.put("/api/categories/<int:category_id>")
    @login_required
    def update_category(category_id):
        payload = json_body()
        name = (payload.get("name") or "").strip()
        if not name:
            raise ValidationError("Category name is required.")
        store = get_store()
        category = store.update_category(g.user["id"], category_id, name, _int_or_none(payload.get("parent_id")))
        store.commit()
        return jsonify(category)

    @app.delete("/api/categories/<int:category_id>")
    @login_required
    def delete_category(category_id):
        store = get_store()
        store.delete_category(g.user["id"], category_id)
        store.commit()
        return "", 204

    # categorization rules

    def rule_payload():
        payload = json_body()
        pattern = (payload.get("pattern") or "").strip()
        category_id = _int_or_none(payload.get("category_id"))
        if not pattern or category_id is None:
            raise ValidationError("Pattern and category_id are required")
        return pattern, category_id

    @app.get("/api/categorization-rules")
    @login_required
    def list_rules():
        return jsonify(get_store().list_rules_for_user(g.user["id"]))

    @app.get("/api/categorization-rules/paged")
    @login_required
    def list_rules_paged():
        args = request.args
        return jsonify(get_store().list_rules_paged(
            g.user["id"],
            page=_int_or_none(args.get("page")) or 1,
            limit=_int_or_none(args.get("limit")) or 10,
            filter_text=args.get("filter", ""),
            sort=args.get("sort", "pattern"),
            direction=args.get("direction", "desc"),
        ))

    @app.post("/api/categorization-rules")
    @login_required
    def create_rule():
        pattern, category_id = rule_payload()
        store = get_store()
        rule = store.create_rule(g.user["id"], pattern, category_id)
        store.commit()
        return jsonify(rule), 201

    @app.put("/api/categorization-rules/<int:rule_id>")
    @login_required
    def update_rule(rule_id):
        pattern, category_id = rule_payload()
        store = get_store()
        rule = store.update_rule(g.user["id"], rule_id, pattern, category_id)
        store.commit()
        return jsonify(rule)

    @app.delete("/api/categorization-rules/<int:rule_id>")
    @login_required
    def delete_rule(rule_id):
        store = get_store()
        if store.delete_rule(g.user["id"], rule_id) == 0:
            return jsonify({"error": "Rule not found"}), 404
        store.commit()
        return "", 204

    # transactions

    @app.get("/api/transactions")
    @login_required
    def list_transactions():
        args = request.args
        return jsonify(get_store().list_transactions(
            g.user["id"],
            account_id=_int_or_none(args.get("account_id")),
            description=args.get("description") or None,
            start_date=args.get("startDate") or None,
            end_date=args.get("endDate") or None,
            category_id=args.get("category_id"),
            sort=args.get("sort", "date"),
            direction=args.get("direction", "desc"),
            page=_int_or_none(args.get("page")) or 1,
            limit=_int_or_none(args.get("limit")) or 10,
        ))

    @app.put("/api/transactions/<int:transaction_id>")
    @login_required
    def update_transaction(transaction_id):
        payload = json_body()
        required = ["account_id", "date", "description", "amount"]
        if any(payload.get(field) is None for field in required):
            raise ValidationError("Missing required fields: account_id, date, description, amount")
        date = convert_date(payload["date"], "YYYY-MM-DD")
        if date is None:
            raise ValidationError(f"Invalid date: {payload['date']}")
        try:
            amount = float(payload["amount"])
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid amount: {payload['amount']!r}") from None
        fields = {
            "account_id": _int_or_none(payload["account_id"]),
            "date": date,
            "description": str(payload["description"]),
            "amount": amount,
        }
        if "category_id" in payload:
            fields["category_id"] = _int_or_none(payload["category_id"])
        store = get_store()
        transaction = store.update_transaction(g.user["id"], transaction_id, fields)
        store.commit()
        return jsonify(transaction)

    @app.get("/api/transactions/<int:transaction_id>/matching-categories")
    @login_required
    def matching_categories(transaction_id):
        matches = matching_rules_for_transaction(get_store(), g.user["id"], transaction_id)
        return jsonify({"transactionId": transaction_id, "conflictingRules": matches})

    @app.put("/api/transactions/<int:transaction_id>/category")
    @login_required
    def set_category(transaction_id):
        payload = json_body()
        category_id = payload.get("categoryId", "missing")
        if category_id is not None and (isinstance(category_id, bool) or not isinstance(category_id, int)):
            raise ValidationError("Valid categoryId (number or null) is required")
        store = get_store()
        result = set_transaction_category(store, g.user["id"], transaction_id, category_id)
        store.commit()
        return jsonify({
            "transactionId": transaction_id,
            "categoryId": category_id,
            "affectedRows": result["affectedRows"],
            "message": "Transaction category updated",
        })

    @app.post("/api/transactions/apply-all-rules")
    @login_required
    def apply_all_rules():
        store = get_store()
        result = apply_rules_to_all_uncategorized(store, g.user["id"])
        store.commit()
        return jsonify(result)

    @app.post("/api/transactions/bulk-categorize")
    @login_required
    def bulk_categorize_route():
        payload = json_body()
        transaction_ids = payload.get("transactionIds")
        if not isinstance(transaction_ids, list) or not transaction_ids or "categoryId" not in payload:
            raise ValidationError("transactionIds (array) and categoryId are required")
        category_id = payload["categoryId"]
        if category_id is not None and (isinstance(category_id, bool) or not isinstance(category_id, int)):
            raise ValidationError("categoryId must be a number or null")
        store = get_store()
        result = bulk_categorize(store, g.user["id"], [_int_or_none(tid) for tid in transaction_ids], category_id)
        store.commit()
        return jsonify(result)

    @app.get("/api/transactions/uncategorized-descriptions")
    @login_required
    def uncategorized_descriptions():
        return jsonify(get_store().uncategorized_descriptions(g.user["id"]))

    @app.get("/api/transactions/categorization-conflicts")
    @login_required
    def categorization_conflicts():
        return jsonify(find_categorization_conflicts(get_store(), g.user["id"]))

    @app.delete("/api/transactions/all")
    @login_required
    def delete_all_transactions():
        if g.user["email"] == DEMO_EMAIL:
            return jsonify({"error": "This action is unavailable for the demo user."}), 403
        store = get_store()
        deleted = store.delete_all_transactions(g.user["id"])
        store.commit()
        app.logger.info("Deleted %s transactions for user_id=%s", deleted, g.user["id"])
        return jsonify({"success": True, "deleted": deleted})

    # csv import

    @app.post("/api/csv-import/detect-date-format")
    @login_required
    def detect_date_format_route():
        payload = json_body()
        samples = payload.get("samples")
        if not isinstance(samples, list):
            raise ValidationError("samples (array of strings) is required")
        max_samples = _int_or_none(payload.get("maxSamples"))
        if max_samples is None:
            max_samples = app.config["DATE_SAMPLE_LIMIT"]
        elif max_samples < 1:
            raise ValidationError("maxSamples must be a positive integer")
        detection = detect_date_format(samples, max_samples)
        if detection is not None:
            detection["description"] = format_description(detection["format"])
        return jsonify(detection)

    @app.post("/api/csv-import/import-csv")
    @login_required
    def import_csv():
        files = request.files.getlist("csvFiles")
        if not files:
            raise ValidationError("No file(s) uploaded.")
        account_id = _int_or_none(request.form.get("accountId"))
        if account_id is None:
            raise ValidationError("Invalid account ID")
        try:
            raw_mapping = json.loads(request.form.get("mapping") or "null")
        except json.JSONDecodeError:
            raise ValidationError("mapping must be a JSON array") from None
        mapping = ColumnMapping.from_list(raw_mapping)
        layout = request.form.get("debitCreditLogic") or Layout.SINGLE.value
        if layout not in {item.value for item in Layout}:
            raise ValidationError(f"Unknown debit/credit layout: {layout!r}")

        store = get_store()
        result = reconcile_csv_import(
            store,
            g.user["id"],
            account_id,
            [(upload.filename, upload.read()) for upload in files],
            mapping,
            has_header_row=_is_true(request.form.get("hasHeaderRow")),
            layout=layout,
            date_sample_limit=app.config["DATE_SAMPLE_LIMIT"],
            confidence_threshold=app.config["DATE_CONFIDENCE_THRESHOLD"],
        )
        store.commit()
        app.logger.info(
            "CSV import for user_id=%s account_id=%s: inserted=%s duplicates=%s errors=%s",
            g.user["id"],
            account_id,
            result["insertedCount"],
            result["duplicateCount"],
            len(result["errors"]),
        )
        return jsonify(result)

    @app.post("/api/csv-import/force-import-transactions")
    @login_required
    def force_import():
        payload = json_body()
        candidates = payload.get("transactions")
        if not isinstance(candidates, list) or not candidates:
            raise ValidationError("No transactions provided")
        store = get_store()
        result = force_import_candidates(
            store, g.user["id"], candidates, account_id=_int_or_none(payload.get("accountId"))
        )
        store.commit()
        return jsonify(result)

    # reports

    @app.get("/api/reports/spending-by-category")
    @login_required
    def spending_by_category():
        args = request.args
        return jsonify(get_store().spending_by_category(
            g.user["id"],
            start_date=args.get("startDate") or None,
            end_date=args.get("endDate") or None,
            account_id=_int_or_none(args.get("account_id")),
        ))

    @app.get("/api/reports/spending-by-category-by-month")
    @login_required
    def spending_by_category_by_month():
        args = request.args
        return jsonify(get_store().spending_by_category_by_month(
            g.user["id"],
            start_date=args.get("startDate") or None,
            end_date=args.get("endDate") or None,
            account_id=_int_or_none(args.get("account_id")),
        ))

    @app.get("/api/reports/net-worth-trend")
    @login_required
    def net_worth_trend():
        args = request.args
        return jsonify(get_store().net_worth_trend(
            g.user["id"],
            start_date=args.get("startDate") or None,
            end_date=args.get("endDate") or None,
        ))

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    return app
