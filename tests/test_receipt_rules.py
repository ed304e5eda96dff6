import pytest

from venue.receipts.rules import (
    build_rule_suggestion,
    coerce_expense_category,
    derive_direction,
    get_transaction_direction,
    guess_amount_value,
    is_incoming_only,
    parse_statement_csv,
    parse_statement_date,
    rule_matches,
    select_best_rule,
)


def _rule(**overrides):
    rule = {
        "name": "Booker",
        "match_description": None,
        "match_transaction_type": None,
        "match_direction": "both",
        "match_min_amount": None,
        "match_max_amount": None,
        "is_active": True,
    }
    rule.update(overrides)
    return rule


def _tx(details="CARD PAYMENT TO BOOKER LTD", amount_in=None, amount_out=42.0, transaction_type="DEB"):
    return {
        "details": details,
        "transaction_type": transaction_type,
        "amount_in": amount_in,
        "amount_out": amount_out,
    }


def test_any_keyword_matches_case_insensitively():
    rule = _rule(match_description="brakes, booker ,bidfood")

    assert rule_matches(rule, _tx())
    assert not rule_matches(rule, _tx(details="SKY DIGITAL"))


def test_transaction_type_is_a_substring_check():
    rule = _rule(match_transaction_type="deb")

    assert rule_matches(rule, _tx(transaction_type="DEBIT CARD"))
    assert not rule_matches(rule, _tx(transaction_type="DD"))
    assert not rule_matches(rule, _tx(transaction_type=None))


@pytest.mark.parametrize(
    "direction, tx, expected",
    [
        ("both", _tx(), True),
        ("out", _tx(), True),
        ("in", _tx(), False),
        ("in", _tx(amount_in=10.0, amount_out=None), True),
        ("out", _tx(amount_in=10.0, amount_out=None), False),
    ],
)
def test_direction_check(direction, tx, expected):
    assert rule_matches(_rule(match_direction=direction), tx) is expected


def test_amount_bounds_are_inclusive():
    rule = _rule(match_min_amount=10, match_max_amount=42)

    assert rule_matches(rule, _tx(amount_out=42.0))
    assert rule_matches(rule, _tx(amount_out=10.0))
    assert not rule_matches(rule, _tx(amount_out=42.01))
    assert not rule_matches(rule, _tx(amount_out=9.99))


def test_inactive_rule_never_matches():
    assert not rule_matches(_rule(is_active=False), _tx())


def test_most_specific_rule_wins_and_ties_go_to_oldest():
    broad = _rule(name="broad", match_description="booker")
    narrow = _rule(name="narrow", match_description="booker", match_direction="out")
    twin = _rule(name="twin", match_description="ltd", match_direction="out")

    assert select_best_rule([broad, narrow, twin], _tx())["name"] == "narrow"
    assert select_best_rule([twin, narrow], _tx())["name"] == "twin"
    assert select_best_rule([broad], _tx(details="SKY")) is None


def test_direction_and_amount_helpers():
    incoming = {"amount_in": 25.0, "amount_out": None}
    both = {"amount_in": 5.0, "amount_out": 3.0}
    outgoing = {"amount_in": None, "amount_out": 7.5}

    assert get_transaction_direction(incoming) == "in"
    assert get_transaction_direction(both) == "in"
    assert get_transaction_direction(outgoing) == "out"
    assert is_incoming_only(incoming)
    assert not is_incoming_only(both)
    assert guess_amount_value(outgoing) == 7.5
    assert guess_amount_value({"amount_in": None, "amount_out": None}) == 0.0


@pytest.mark.parametrize(
    "amount_in, amount_out, expected",
    [(None, 10.0, "out"), (10.0, None, "in"), (5.0, 5.0, "out"), (8.0, 3.0, "in"), (None, None, "in")],
)
def test_derive_direction(amount_in, amount_out, expected):
    assert derive_direction(amount_in, amount_out) == expected


def test_coerce_expense_category():
    assert coerce_expense_category("  drinks stock ") == "Drinks Stock"
    assert coerce_expense_category("Groceries") is None
    assert coerce_expense_category(None) is None


def test_rule_suggestion_uses_first_three_long_tokens():
    suggestion = build_rule_suggestion(
        _tx(details="CARD PAYMENT TO BOOKER-LTD 12/03 XX"), vendor_name="Booker"
    )

    assert suggestion["suggested_name"] == "Booker auto-tag"
    assert suggestion["match_description"] == "card,payment,bookerltd"
    assert suggestion["direction"] == "out"
    assert suggestion["amount_value"] == 42.0
    assert suggestion["set_expense_category"] is None


def test_no_suggestion_without_classification():
    assert build_rule_suggestion(_tx()) is None


@pytest.mark.parametrize(
    "value, expected",
    [
        ("03/02/2026", "2026-02-03"),
        ("2026-02-03", "2026-02-03"),
        ("31/02/2026", None),
        ("yesterday", None),
        ("", None),
    ],
)
def test_parse_statement_date(value, expected):
    assert parse_statement_date(value) == expected


def test_parse_statement_csv_skips_unusable_rows():
    content = (
        "\ufeffDate,Details,Transaction Type,In,Out,Balance\n"
        "03/02/2026,CARD PAYMENT TO  BOOKER LTD,DEB,,\"1,042.50\",900.00\n"
        "04/02/2026,TAKINGS,CR,350.00,,1250.00\n"
        "05/02/2026,NO AMOUNT,DEB,,,1250.00\n"
        "not a date,BROKEN,DEB,,1.00,1249.00\n"
        "06/02/2026,,DEB,,1.00,1249.00\n"
    ).encode("utf-8")

    rows = parse_statement_csv(content)

    assert [r["details"] for r in rows] == ["CARD PAYMENT TO BOOKER LTD", "TAKINGS"]
    assert rows[0]["transaction_date"] == "2026-02-03"
    assert rows[0]["amount_out"] == 1042.5
    assert rows[0]["amount_in"] is None
    assert rows[1]["transaction_type"] == "CR"
    assert len(rows[0]["dedupe_hash"]) == 64


def test_identical_lines_share_a_dedupe_hash():
    line = "03/02/2026,SKY DIGITAL,DD,,45.00,800.00\n"
    header = "Date,Details,Transaction Type,In,Out,Balance\n"

    first = parse_statement_csv(header + line)
    second = parse_statement_csv(header + line + line.replace("45.00", "46.00"))

    assert first[0]["dedupe_hash"] == second[0]["dedupe_hash"]
    assert second[0]["dedupe_hash"] != second[1]["dedupe_hash"]


def test_parse_statement_csv_reads_windows_1252_exports():
    content = (
        b"Date,Details,Transaction Type,In,Out,Balance\n"
        b"01/03/2026,CAF\xc9 NERO,DEB,,\xa34.50,100\n"
        b"02/03/2026,UNDEFINED \x81 BYTE,DEB,,1.00,99\n"
    )

    rows = parse_statement_csv(content)

    assert [r["details"] for r in rows] == ["CAFÉ NERO", "UNDEFINED � BYTE"]
    assert rows[0]["amount_out"] == 4.5
