"""CSV import: column mapping, amount normalization and duplicate detection.

Each uploaded file is handled on its own. A file whose dates cannot be
interpreted with enough confidence is rejected as a whole; a bad row only
costs that row. Every candidate transaction is checked against a set of
``date|description|amount`` keys seeded from the account's existing
transactions and grown as rows are inserted, so repeats inside the same
upload are caught too.
"""

import csv
import io
import logging
from enum import Enum

from .dates import CANONICAL_FORMAT, convert_date, detect_date_format, normalize_stored_date
from .db import INTEGRITY_ERRORS
from .errors import MappingError

logger = logging.getLogger(__name__)

DATE_SAMPLE_LIMIT = 20
DATE_CONFIDENCE_THRESHOLD = 0.8

MISSING_FIELDS_ERROR = "Missing required fields"
DATE_DETECTION_ERROR = (
    "Could not reliably detect date format in CSV. Please ensure all dates are consistent."
)
PARSE_ERROR = "Error parsing CSV file"


class FieldRole(str, Enum):
    IGNORE = "ignore"
    DATE = "date"
    DESCRIPTION = "description"
    AMOUNT = "amount"
    DEBIT = "debit"
    CREDIT = "credit"


AMOUNT_ROLES = (FieldRole.AMOUNT, FieldRole.DEBIT, FieldRole.CREDIT)


class Layout(str, Enum):
    SINGLE = "single"
    SPLIT = "split"


class ColumnMapping:
    """Role of each CSV column, by position."""

    def __init__(self, roles):
        self.roles = tuple(roles)

    @classmethod
    def from_list(cls, values):
        if not isinstance(values, (list, tuple)):
            raise MappingError("Column mapping must be a list of field roles.")
        roles = []
        for value in values:
            try:
                roles.append(FieldRole(str(value or "ignore").strip().lower()))
            except ValueError:
                raise MappingError(f"Unknown field role: {value!r}") from None

        assigned = [role for role in roles if role is not FieldRole.IGNORE]
        duplicated = sorted({role.value for role in assigned if assigned.count(role) > 1})
        if duplicated:
            raise MappingError(f"Each field may be mapped to one column only: {', '.join(duplicated)}")
        if FieldRole.DATE not in assigned or FieldRole.DESCRIPTION not in assigned:
            raise MappingError("Both a date column and a description column must be mapped.")
        if not any(role in assigned for role in AMOUNT_ROLES):
            raise MappingError("Map an amount column or a debit/credit column.")
        return cls(roles)

    def to_list(self):
        return [role.value for role in self.roles]

    def columns_for(self, role):
        return [idx for idx, mapped in enumerate(self.roles) if mapped is role]

    def check_column_count(self, column_count):
        """Raise ``MappingError`` if a mapped column is past the end of the file's rows."""
        out_of_range = [
            idx for idx, role in enumerate(self.roles) if role is not FieldRole.IGNORE and idx >= column_count
        ]
        if out_of_range:
            raise MappingError(
                f"Mapping refers to column(s) {out_of_range} but the file has {column_count} column(s)."
            )

    def extract(self, cells):
        """Mapped role -> raw cell text, for every mapped column present in ``cells``."""
        fields = {}
        for idx, role in enumerate(self.roles):
            if role is FieldRole.IGNORE or idx >= len(cells):
                continue
            fields[role] = cells[idx]
        return fields


def parse_money(value):
    text = ("" if value is None else str(value)).strip()
    if not text:
        return None
    cleaned = text.replace(",", "").replace("$", "")
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = f"-{cleaned[1:-1]}"
    try:
        return float(cleaned)
    except ValueError:
        return None


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def read_csv_rows(text):
    """Rows of stripped cells; rows with no content are dropped."""
    rows = []
    for raw_row in csv.reader(io.StringIO(text)):
        row = [cell.strip() for cell in raw_row]
        if any(row):
            rows.append(row)
    return rows


def format_amount(amount):
    amount = float(amount)
    if amount.is_integer():
        return str(int(amount))
    return repr(amount)


def dedup_key(date, description, amount):
    return f"{date}|{description}|{format_amount(amount)}"


def compute_amounts(fields, layout):
    """Signed amounts produced by one row as ``[(amount, split_type)]``.

    ``single`` yields exactly one amount (``amount`` if the cell has a value,
    else debit minus credit with missing values counting as zero) and raises
    ``ValueError`` for a non-numeric ``amount``. ``split`` yields a debit
    and/or a credit amount for every non-zero numeric cell, so a row can
    produce zero, one or two amounts.
    """
    layout = Layout(layout)
    if layout is Layout.SINGLE:
        raw_amount = fields.get(FieldRole.AMOUNT, "")
        if str(raw_amount).strip():
            amount = parse_money(raw_amount)
            if amount is None:
                raise ValueError(f"Invalid amount: {raw_amount}")
        else:
            debit = parse_money(fields.get(FieldRole.DEBIT)) or 0.0
            credit = parse_money(fields.get(FieldRole.CREDIT)) or 0.0
            amount = debit - credit
        return [(round(amount, 2), None)]

    amounts = []
    debit = parse_money(fields.get(FieldRole.DEBIT))
    if debit:
        amounts.append((-round(abs(debit), 2), "debit"))
    credit = parse_money(fields.get(FieldRole.CREDIT))
    if credit:
        amounts.append((round(abs(credit), 2), "credit"))
    return amounts


def collect_date_samples(rows, mapping, limit=DATE_SAMPLE_LIMIT):
    samples = []
    date_columns = mapping.columns_for(FieldRole.DATE)
    for row in rows[:limit]:
        for idx in date_columns:
            if idx < len(row) and row[idx]:
                samples.append(row[idx])
    return samples[:limit]


def _row_snapshot(header, cells):
    keys = header if header else [str(idx) for idx in range(len(cells))]
    snapshot = {}
    for idx, cell in enumerate(cells):
        key = keys[idx] if idx < len(keys) and keys[idx] else str(idx)
        snapshot[key] = cell
    return snapshot


def _mapped_data(fields, account_id, split_type=None):
    data = {role.value: value for role, value in fields.items()}
    data["account_id"] = account_id
    if split_type:
        data["_splitType"] = split_type
    return data


class _FileReport:
    def __init__(self, file_name):
        self.file_name = file_name
        self.row_count = 0
        self.imported = 0
        self.duplicates = 0
        self.errors = []

    def error(self, message, row=None):
        self.errors.append({"row": row or {}, "error": message, "file": self.file_name})

    def summary(self):
        return {
            "fileName": self.file_name,
            "rowCount": self.row_count,
            "importedCount": self.imported,
            "duplicateCount": self.duplicates,
            "errorCount": len(self.errors),
            "errors": self.errors,
        }


def seed_dedup_keys(store, user_id, account_id):
    existing = store.list_transactions(user_id, account_id=account_id, limit=None)["transactions"]
    return {
        dedup_key(normalize_stored_date(tx["date"]), tx["description"], tx["amount"])
        for tx in existing
    }


def reconcile_csv_import(store, user_id, account_id, files, mapping, has_header_row=False,
                         layout=Layout.SINGLE, date_sample_limit=DATE_SAMPLE_LIMIT,
                         confidence_threshold=DATE_CONFIDENCE_THRESHOLD):
    """Import ``files`` (``[(file_name, bytes)]``) into ``account_id``.

    Returns the combined result plus a per-file summary. Access to the
    account is checked up front and raises ``AccessDeniedError``; every other
    problem is recorded against its file or row.
    """
    if not isinstance(mapping, ColumnMapping):
        mapping = ColumnMapping.from_list(mapping)
    layout = Layout(layout)
    store.get_account(user_id, account_id)

    known_keys = seed_dedup_keys(store, user_id, account_id)
    inserted_count = 0
    duplicates = []
    errors = []
    detected_date_format = None
    file_summaries = []

    for file_name, content in files:
        report = _FileReport(file_name)
        try:
            date_format = _import_file(
                store, user_id, account_id, content, mapping, has_header_row, layout,
                date_sample_limit, confidence_threshold, known_keys, duplicates, report,
            )
            if date_format and detected_date_format is None:
                detected_date_format = date_format
        finally:
            inserted_count += report.imported
            errors.extend(report.errors)
            file_summaries.append(report.summary())
            logger.info(
                "Imported %s into account_id=%s: rows=%s inserted=%s duplicates=%s errors=%s",
                file_name,
                account_id,
                report.row_count,
                report.imported,
                report.duplicates,
                len(report.errors),
            )

    return {
        "insertedCount": inserted_count,
        "duplicateCount": len(duplicates),
        "duplicates": duplicates,
        "errors": errors,
        "detectedDateFormat": detected_date_format,
        "files": file_summaries,
    }


def _import_file(store, user_id, account_id, content, mapping, has_header_row, layout,
                 date_sample_limit, confidence_threshold, known_keys, duplicates, report):
    text = decode_csv_bytes(content) if isinstance(content, bytes) else content
    if text is None:
        logger.warning("Could not decode %s", report.file_name)
        report.error(PARSE_ERROR)
        return None
    try:
        rows = read_csv_rows(text)
    except csv.Error as exc:
        logger.warning("Could not parse %s: %s", report.file_name, exc)
        report.error(PARSE_ERROR)
        return None

    header = rows[0] if has_header_row and rows else None
    data_rows = rows[1:] if has_header_row else rows
    report.row_count = len(data_rows)
    if not rows:
        logger.warning("Rejected %s: no rows", report.file_name)
        report.error(DATE_DETECTION_ERROR)
        return None

    try:
        mapping.check_column_count(len(rows[0]))
    except MappingError as exc:
        logger.warning("Mapping does not fit %s: %s", report.file_name, exc)
        report.error(str(exc))
        return None

    detection = detect_date_format(collect_date_samples(data_rows, mapping, date_sample_limit), date_sample_limit)
    if detection is None or detection["confidence"] < confidence_threshold:
        logger.warning("Rejected %s: date detection %s", report.file_name, detection)
        report.error(DATE_DETECTION_ERROR)
        return None
    date_format = detection["format"]

    for cells in data_rows:
        snapshot = _row_snapshot(header, cells)
        fields = mapping.extract(cells)
        if (
            not fields.get(FieldRole.DATE)
            or not fields.get(FieldRole.DESCRIPTION)
            or not any(role in fields for role in AMOUNT_ROLES)
        ):
            report.error(MISSING_FIELDS_ERROR, snapshot)
            continue

        ymd_date = convert_date(fields[FieldRole.DATE], date_format)
        if ymd_date is None:
            report.error(f"Invalid date: {fields[FieldRole.DATE]}", snapshot)
            continue

        try:
            amounts = compute_amounts(fields, layout)
        except ValueError as exc:
            report.error(str(exc), snapshot)
            continue

        description = fields[FieldRole.DESCRIPTION]
        for amount, split_type in amounts:
            key = dedup_key(ymd_date, description, amount)
            if key in known_keys:
                duplicates.append(
                    {
                        "mappedData": _mapped_data(fields, account_id, split_type),
                        "debitCreditLogic": layout.value,
                        "finalDateFormat": date_format,
                    }
                )
                report.duplicates += 1
                logger.debug("Duplicate candidate %s", key)
                continue
            try:
                with store.savepoint("import_row"):
                    store.insert_transaction(
                        user_id,
                        {"account_id": account_id, "date": ymd_date, "description": description, "amount": amount},
                    )
            except INTEGRITY_ERRORS as exc:
                report.error(str(exc), snapshot)
                continue
            known_keys.add(key)
            report.imported += 1

    return date_format


def _force_amount(data, layout, split_type):
    if layout is Layout.SPLIT:
        if split_type == "debit":
            value = parse_money(data.get("debit"))
            return None if value is None else -round(abs(value), 2)
        if split_type == "credit":
            value = parse_money(data.get("credit"))
            return None if value is None else round(abs(value), 2)
        return None
    fields = {role: data[role.value] for role in AMOUNT_ROLES if data.get(role.value) is not None}
    try:
        return compute_amounts(fields, Layout.SINGLE)[0][0]
    except ValueError:
        return None


def force_import_candidates(store, user_id, candidates, account_id=None):
    """Insert previously flagged duplicates without the duplicate check.

    Candidates that can no longer be interpreted are skipped, as are rows the
    database itself rejects as duplicates. Inserting into an account the
    user does not own raises ``AccessDeniedError``.
    """
    inserted = 0
    for candidate in candidates:
        data = candidate.get("mappedData") or candidate
        try:
            layout = Layout(candidate.get("debitCreditLogic") or Layout.SINGLE.value)
        except ValueError:
            logger.warning("Skipping forced candidate with unknown layout %r", candidate.get("debitCreditLogic"))
            continue
        target_account = data.get("account_id", account_id)
        if target_account is None:
            continue
        ymd_date = convert_date(data.get("date"), candidate.get("finalDateFormat") or CANONICAL_FORMAT)
        if ymd_date is None:
            continue
        amount = _force_amount(data, layout, data.get("_splitType"))
        if amount is None:
            continue
        try:
            with store.savepoint("force_import"):
                store.insert_transaction(
                    user_id,
                    {
                        "account_id": int(target_account),
                        "date": ymd_date,
                        "description": str(data.get("description", "")),
                        "amount": amount,
                    },
                )
        except INTEGRITY_ERRORS as exc:
            logger.warning("Skipping forced candidate rejected by storage: %s", exc)
            continue
        inserted += 1
    return {"insertedCount": inserted}
