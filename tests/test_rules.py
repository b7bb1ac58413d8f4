import pytest

from spendviz.errors import AccessDeniedError
from spendviz.rules import (
    STATUS_CATEGORIZED,
    STATUS_CONFLICT,
    STATUS_UNCATEGORIZED,
    MatchType,
    apply_rules_to_all_uncategorized,
    best_matches,
    find_categorization_conflicts,
    match_type,
    matching_rules,
    matching_rules_for_transaction,
    resolve,
    set_transaction_category,
)


def rule(rule_id, pattern, category_id, category_name=None):
    return {"id": rule_id, "pattern": pattern, "category_id": category_id, "category_name": category_name}


@pytest.mark.parametrize(
    ("pattern", "description", "expected"),
    [
        ("Uber", "uber", MatchType.EXACT),
        ("  Uber ", "UBER", MatchType.EXACT),
        ("Amazon", "AMAZON MKTPLACE", MatchType.PREFIX),
        ("Amazon", "PAID AMAZON TODAY", MatchType.WORD),
        ("flix", "Netflix Payment", MatchType.SUBSTRING),
        ("Spotify", "Netflix Payment", MatchType.NO_MATCH),
        ("", "Netflix Payment", MatchType.NO_MATCH),
    ],
)
def test_match_type_ranks(pattern, description, expected):
    assert match_type(pattern, description) == expected


def test_pattern_with_regex_characters_is_escaped():
    assert match_type("a.b", "paid axb today") == MatchType.NO_MATCH
    assert match_type("c++", "bought c++ book") == MatchType.SUBSTRING
    assert match_type("(coffee)", "shop (coffee) 12") == MatchType.SUBSTRING


def test_more_specific_rule_wins_without_conflict():
    rules = [rule(1, "Netflix", 10, "Streaming"), rule(2, "flix", 20, "Movies")]

    decision = resolve(matching_rules("Netflix Payment", rules))

    assert decision["status"] == STATUS_CATEGORIZED
    assert decision["bestType"] == MatchType.PREFIX
    assert decision["match"]["category_id"] == 10


def test_tied_exact_matches_are_a_conflict():
    rules = [rule(1, "Uber", 10, "Transport"), rule(2, "Uber", 20, "Food")]

    decision = resolve(matching_rules("Uber", rules))

    assert decision["status"] == STATUS_CONFLICT
    assert decision["bestType"] == MatchType.EXACT
    assert decision["match"] is None
    assert {match["category_id"] for match in decision["bestMatches"]} == {10, 20}


def test_tied_matches_on_same_category_still_conflict():
    rules = [rule(1, "Uber", 10), rule(2, "uber", 10)]

    assert resolve(matching_rules("UBER", rules))["status"] == STATUS_CONFLICT


def test_no_match_leaves_transaction_uncategorized():
    decision = resolve(matching_rules("Rent", [rule(1, "Uber", 10)]))

    assert decision == {"status": STATUS_UNCATEGORIZED, "match": None, "bestMatches": [], "bestType": None}


def test_matching_rules_lists_newest_rule_first():
    rules = [rule(1, "coffee", 10), rule(3, "shop", 20), rule(2, "nothing", 30)]

    matches = matching_rules("Coffee Shop", rules)

    assert [match["rule_id"] for match in matches] == [3, 1]
    assert all(isinstance(match["matchType"], int) for match in matches)


def test_best_matches_edge_cases():
    assert best_matches([]) == {"bestMatches": [], "bestType": None}

    single = [{"rule_id": 1, "category_id": 10, "pattern": "x", "matchType": 3}]
    assert best_matches(single) == {"bestMatches": single, "bestType": 3}


def _insert(store, user_id, account, description, amount=-10.0, date="2024-01-05"):
    return store.insert_transaction(
        user_id,
        {"account_id": account["id"], "date": date, "description": description, "amount": amount},
    )["id"]


def test_apply_rules_categorizes_and_counts_conflicts(store, user_id, account):
    food = store.create_category(user_id, "Food")
    transport = store.create_category(user_id, "Transport")
    store.create_rule(user_id, "Grocery", food["id"])
    store.create_rule(user_id, "Uber", transport["id"])
    store.create_rule(user_id, "Uber", food["id"])

    grocery_id = _insert(store, user_id, account, "Grocery Outlet")
    uber_id = _insert(store, user_id, account, "Uber")
    other_id = _insert(store, user_id, account, "Rent")

    result = apply_rules_to_all_uncategorized(store, user_id)

    assert result == {"categorized": 1, "conflicts": 1}
    assert store.get_transaction(user_id, grocery_id)["category_id"] == food["id"]
    assert store.get_transaction(user_id, uber_id)["category_id"] is None
    assert store.get_transaction(user_id, other_id)["category_id"] is None

    assert apply_rules_to_all_uncategorized(store, user_id) == {"categorized": 0, "conflicts": 1}


def test_apply_rules_never_touches_categorized_transactions(store, user_id, account):
    food = store.create_category(user_id, "Food")
    misc = store.create_category(user_id, "Misc")
    store.create_rule(user_id, "Coffee", food["id"])
    tx_id = _insert(store, user_id, account, "Coffee")
    set_transaction_category(store, user_id, tx_id, misc["id"])

    assert apply_rules_to_all_uncategorized(store, user_id) == {"categorized": 0, "conflicts": 0}
    assert store.get_transaction(user_id, tx_id)["category_id"] == misc["id"]


def test_conflict_report_lists_tied_rules(store, user_id, account):
    food = store.create_category(user_id, "Food")
    transport = store.create_category(user_id, "Transport")
    first = store.create_rule(user_id, "Uber", transport["id"])
    second = store.create_rule(user_id, "Uber", food["id"])
    store.create_rule(user_id, "Ub", food["id"])
    tx_id = _insert(store, user_id, account, "Uber")

    conflicts = find_categorization_conflicts(store, user_id)

    assert len(conflicts) == 1
    assert conflicts[0]["transactionId"] == tx_id
    assert conflicts[0]["transactionDescription"] == "Uber"
    assert [item["id"] for item in conflicts[0]["conflictingRules"]] == [second["id"], first["id"]]
    assert {item["category_name"] for item in conflicts[0]["conflictingRules"]} == {"Food", "Transport"}
    assert all(item["matchType"] == MatchType.EXACT for item in conflicts[0]["conflictingRules"])


def test_rules_are_scoped_to_their_owner(store, user_id, account):
    other_user = store.ensure_user("bob@example.com", "Bob")
    other_category = store.create_category(other_user, "Bob Food")
    store.create_rule(other_user, "Coffee", other_category["id"])
    tx_id = _insert(store, user_id, account, "Coffee")

    assert matching_rules_for_transaction(store, user_id, tx_id) == []
    assert apply_rules_to_all_uncategorized(store, user_id) == {"categorized": 0, "conflicts": 0}
    with pytest.raises(AccessDeniedError):
        matching_rules_for_transaction(store, other_user, tx_id)
    with pytest.raises(AccessDeniedError):
        set_transaction_category(store, user_id, tx_id, other_category["id"])


def test_manual_assignment_ignores_rules(store, user_id, account):
    food = store.create_category(user_id, "Food")
    store.create_rule(user_id, "Coffee", food["id"])
    tx_id = _insert(store, user_id, account, "Coffee")

    result = set_transaction_category(store, user_id, tx_id, None)

    assert result == {"transactionId": tx_id, "categoryId": None, "affectedRows": 1}
    assert store.get_transaction(user_id, tx_id)["category_id"] is None
