"""
Pure helpers for the receipts workspace: rule matching, direction and amount
inference, classification normalisation, rule suggestions and bank-statement
CSV parsing. Nothing here touches the database.
"""

import csv
import hashlib
import io
import re
from datetime import date
from typing import Iterable, Iterator, Optional, Sequence, TypeVar

from .schemas import EXPENSE_CATEGORIES, VENDOR_NAME_MAX_LENGTH

T = TypeVar("T")

CSV_COLUMNS = ("Date", "Details", "Transaction Type", "In", "Out", "Balance")

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")
_WHITESPACE = re.compile(r"\s+")


# ── Direction / amounts ──────────────────────────────────────────


def _positive(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def get_transaction_direction(tx: dict) -> str:
    """Any money in makes a transaction incoming; everything else is outgoing."""
    return "in" if _positive(tx.get("amount_in")) else "out"


def derive_direction(amount_in: Optional[float], amount_out: Optional[float]) -> str:
    """Direction from a pair of amounts where both may be set (group averages)."""
    in_value = amount_in or 0
    out_value = amount_out or 0
    if out_value > 0 and out_value >= in_value:
        return "out"
    if in_value > 0:
        return "in"
    return "out" if out_value > in_value else "in"


def is_incoming_only(tx: dict) -> bool:
    return _positive(tx.get("amount_in")) and not _positive(tx.get("amount_out"))


def guess_amount_value(tx: dict) -> float:
    if _positive(tx.get("amount_in")):
        return float(tx["amount_in"])
    if _positive(tx.get("amount_out")):
        return float(tx["amount_out"])
    return 0.0


def round_currency(value: float) -> float:
    return round(float(value or 0), 2)


# ── Classification values ────────────────────────────────────────


def normalize_vendor(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed[:VENDOR_NAME_MAX_LENGTH] if trimmed else None


def coerce_expense_category(value) -> Optional[str]:
    """Map a free-text category onto the canonical list (case-insensitive)."""
    if not isinstance(value, str):
        return None
    needle = value.strip().lower()
    for option in EXPENSE_CATEGORIES:
        if option.lower() == needle:
            return option
    return None


# ── Rule matching ────────────────────────────────────────────────


def rule_keywords(rule: dict) -> list[str]:
    raw = rule.get("match_description") or ""
    return [k.strip().lower() for k in raw.split(",") if k.strip()]


def rule_matches(rule: dict, tx: dict) -> bool:
    """
    True when an active rule accepts the transaction:
    - any keyword is a case-insensitive substring of `details`
    - `match_transaction_type`, when set, is a substring of the type
    - direction is `both` or equal to the transaction's direction
    - the amount falls inside the optional min/max bounds
    """
    if not rule.get("is_active", True):
        return False

    keywords = rule_keywords(rule)
    if keywords:
        details = (tx.get("details") or "").lower()
        if not any(keyword in details for keyword in keywords):
            return False

    type_needle = (rule.get("match_transaction_type") or "").strip().lower()
    if type_needle and type_needle not in (tx.get("transaction_type") or "").lower():
        return False

    rule_direction = rule.get("match_direction") or "both"
    if rule_direction != "both" and rule_direction != get_transaction_direction(tx):
        return False

    amount = guess_amount_value(tx)
    min_amount = rule.get("match_min_amount")
    max_amount = rule.get("match_max_amount")
    if min_amount is not None and amount < min_amount:
        return False
    if max_amount is not None and amount > max_amount:
        return False

    return True


def rule_specificity(rule: dict) -> int:
    score = 0
    if rule_keywords(rule):
        score += 1
    if (rule.get("match_transaction_type") or "").strip():
        score += 1
    if (rule.get("match_direction") or "both") != "both":
        score += 1
    if rule.get("match_min_amount") is not None:
        score += 1
    if rule.get("match_max_amount") is not None:
        score += 1
    return score


def select_best_rule(rules: Sequence[dict], tx: dict) -> Optional[dict]:
    """
    Most specific matching rule. `rules` must be ordered oldest first so
    ties go to the oldest rule.
    """
    best = None
    best_score = -1
    for rule in rules:
        if not rule_matches(rule, tx):
            continue
        score = rule_specificity(rule)
        if score > best_score:
            best, best_score = rule, score
    return best


# ── Rule suggestion ──────────────────────────────────────────────


def build_rule_suggestion(
    tx: dict,
    vendor_name: Optional[str] = None,
    expense_category: Optional[str] = None,
) -> Optional[dict]:
    """Draft a rule from a manual classification, or None if nothing was set."""
    if not vendor_name and not expense_category:
        return None

    details = (tx.get("details") or "").strip()
    keywords = [
        token
        for token in (_NON_ALNUM.sub("", t).lower() for t in details.split())
        if len(token) >= 4
    ][:3]

    return {
        "suggested_name": f"{vendor_name or expense_category} auto-tag",
        "match_description": ",".join(keywords) or None,
        "direction": get_transaction_direction(tx),
        "amount_value": guess_amount_value(tx),
        "details": details,
        "transaction_type": tx.get("transaction_type"),
        "set_vendor_name": vendor_name,
        "set_expense_category": expense_category,
    }


# ── CSV import ───────────────────────────────────────────────────


def sanitize_text(value: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", (value or "").strip())


def parse_statement_date(value: Optional[str]) -> Optional[str]:
    """`dd/mm/yyyy` or ISO `yyyy-mm-dd` → ISO date string."""
    trimmed = (value or "").strip()
    if not trimmed:
        return None

    parts = trimmed.split("/")
    if len(parts) == 3:
        try:
            day, month, year = (int(p) for p in parts)
            return date(year, month, day).isoformat()
        except ValueError:
            return None

    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", trimmed):
        try:
            return date.fromisoformat(trimmed).isoformat()
        except ValueError:
            return None

    return None


def parse_currency(value: Optional[str]) -> Optional[float]:
    cleaned = (value or "").replace(",", "").replace("£", "").strip()
    if not cleaned:
        return None
    try:
        return round(float(cleaned), 2)
    except ValueError:
        return None


def _hash_part(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def transaction_hash(row: dict) -> str:
    parts = [
        row["transaction_date"],
        row["details"],
        row.get("transaction_type") or "",
        _hash_part(row.get("amount_in")),
        _hash_part(row.get("amount_out")),
        _hash_part(row.get("balance")),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def details_hash(details: str) -> str:
    return hashlib.sha256(details.encode("utf-8")).hexdigest()[:24]


def decode_statement(content: bytes) -> str:
    """UTF-8 (with or without BOM), falling back to Windows-1252 exports."""
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("cp1252", errors="replace")


def parse_statement_csv(content: bytes | str) -> list[dict]:
    """
    Parse a bank-statement export into transaction rows.

    Rows without details, without a parseable date, or with neither an
    In nor an Out amount are skipped.
    """
    text = decode_statement(content) if isinstance(content, bytes) else content
    reader = csv.DictReader(io.StringIO(text))
    if reader.fieldnames:
        reader.fieldnames = [name.strip() for name in reader.fieldnames]

    rows = []
    for record in reader:
        details = sanitize_text(record.get("Details"))
        if not details:
            continue

        transaction_date = parse_statement_date(record.get("Date"))
        if not transaction_date:
            continue

        amount_in = parse_currency(record.get("In"))
        amount_out = parse_currency(record.get("Out"))
        if not amount_in and not amount_out:
            continue

        row = {
            "transaction_date": transaction_date,
            "details": details,
            "transaction_type": sanitize_text(record.get("Transaction Type")) or None,
            "amount_in": amount_in,
            "amount_out": amount_out,
            "balance": parse_currency(record.get("Balance")),
        }
        row["dedupe_hash"] = transaction_hash(row)
        rows.append(row)

    return rows


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size <= 0:
        return
    for index in range(0, len(items), size):
        yield items[index:index + size]


def unique(values: Iterable[T]) -> list[T]:
    return list(dict.fromkeys(values))
