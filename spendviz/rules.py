"""Pattern-based categorization: ranking rule matches and resolving ties.

A rule matches a description in one of four ways, from most to least
specific. When the best rank is shared by two or more rules the
transaction is a conflict and is left for the user, even if the tied rules
agree on the category.
"""

import logging
import re
from enum import IntEnum

logger = logging.getLogger(__name__)


class MatchType(IntEnum):
    EXACT = 0
    PREFIX = 1
    WORD = 2
    SUBSTRING = 3
    NO_MATCH = 99


STATUS_UNCATEGORIZED = "uncategorized"
STATUS_CATEGORIZED = "categorized"
STATUS_CONFLICT = "conflict"


def _normalize(value):
    return (value or "").strip().lower()


def match_type(pattern, description):
    """Rank how ``pattern`` matches ``description`` (case-insensitive, trimmed)."""
    p = _normalize(pattern)
    d = _normalize(description)
    if not p:
        return MatchType.NO_MATCH
    if p == d:
        return MatchType.EXACT
    if d.startswith(p):
        return MatchType.PREFIX
    if re.search(rf"\b{re.escape(p)}\b", d):
        return MatchType.WORD
    if p in d:
        return MatchType.SUBSTRING
    return MatchType.NO_MATCH


def matching_rules(description, rules):
    """Every rule that matches ``description``, newest rule first.

    ``rules`` are mappings with ``id``, ``pattern``, ``category_id`` and
    ``category_name``.
    """
    matches = []
    for rule in sorted(rules, key=lambda r: r["id"], reverse=True):
        rank = match_type(rule["pattern"], description)
        if rank == MatchType.NO_MATCH:
            continue
        matches.append(
            {
                "rule_id": rule["id"],
                "category_id": rule["category_id"],
                "category_name": rule.get("category_name"),
                "pattern": rule["pattern"],
                "matchType": int(rank),
            }
        )
    return matches


def best_matches(matches):
    if not matches:
        return {"bestMatches": [], "bestType": None}
    best_type = min(match["matchType"] for match in matches)
    return {
        "bestMatches": [match for match in matches if match["matchType"] == best_type],
        "bestType": best_type,
    }


def resolve(matches):
    """Decide one transaction: no match, a single best match, or a conflict."""
    best = best_matches(matches)
    tied = best["bestMatches"]
    if not tied:
        status = STATUS_UNCATEGORIZED
    elif len(tied) == 1:
        status = STATUS_CATEGORIZED
    else:
        status = STATUS_CONFLICT
    return {
        "status": status,
        "match": tied[0] if status == STATUS_CATEGORIZED else None,
        "bestMatches": tied,
        "bestType": best["bestType"],
    }


def _has_description(transaction):
    description = transaction.get("description")
    return isinstance(description, str) and description.strip() != ""


def matching_rules_for_transaction(store, user_id, transaction_id):
    transaction = store.get_transaction(user_id, transaction_id)
    if not _has_description(transaction):
        return []
    return matching_rules(transaction["description"], store.list_rules_for_user(user_id))


def set_transaction_category(store, user_id, transaction_id, category_id):
    """Manual assignment; never consults the rules."""
    store.get_transaction(user_id, transaction_id)
    if category_id is not None:
        store.get_category(user_id, category_id)
    affected = store.update_transaction_category(transaction_id, category_id)
    return {"transactionId": transaction_id, "categoryId": category_id, "affectedRows": affected}


def bulk_categorize(store, user_id, transaction_ids, category_id):
    if category_id is not None:
        store.get_category(user_id, category_id)
    affected = store.update_transactions_category(user_id, transaction_ids, category_id)
    return {"affectedRows": affected, "categoryId": category_id}


def apply_rules_to_all_uncategorized(store, user_id):
    """Categorize every uncategorized transaction that has exactly one best rule.

    Only ``category_id IS NULL`` rows are considered, so running it twice
    leaves the second run with nothing new to assign.
    """
    rules = store.list_rules_for_user(user_id)
    categorized = 0
    conflicts = 0
    for transaction in store.list_uncategorized_transactions(user_id):
        if not _has_description(transaction):
            continue
        decision = resolve(matching_rules(transaction["description"], rules))
        if decision["status"] == STATUS_CATEGORIZED:
            store.update_transaction_category(transaction["id"], decision["match"]["category_id"])
            categorized += 1
        elif decision["status"] == STATUS_CONFLICT:
            logger.debug(
                "Transaction %s has %d rules tied at match type %s",
                transaction["id"],
                len(decision["bestMatches"]),
                decision["bestType"],
            )
            conflicts += 1

    logger.info("Applied rules for user_id=%s: categorized=%s conflicts=%s", user_id, categorized, conflicts)
    return {"categorized": categorized, "conflicts": conflicts}


def find_categorization_conflicts(store, user_id):
    rules = store.list_rules_for_user(user_id)
    conflicts = []
    for transaction in store.list_uncategorized_transactions(user_id):
        if not _has_description(transaction):
            continue
        decision = resolve(matching_rules(transaction["description"], rules))
        if decision["status"] != STATUS_CONFLICT:
            continue
        conflicts.append(
            {
                "transactionId": transaction["id"],
                "transactionDescription": transaction["description"],
                "conflictingRules": [
                    {
                        "id": match["rule_id"],
                        "pattern": match["pattern"],
                        "category_id": match["category_id"],
                        "category_name": match["category_name"],
                        "matchType": match["matchType"],
                    }
                    for match in decision["bestMatches"]
                ],
            }
        )
    return conflicts
