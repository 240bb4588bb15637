from __future__ import annotations

import csv
import hashlib
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from io import StringIO
from pathlib import PurePath
from typing import Callable, NamedTuple, Optional, Union

from rapidfuzz.distance import Levenshtein

from models import (
    DEFAULT_CATEGORY,
    DEFAULT_SUBCATEGORY,
    SUBCATEGORIES,
    Category,
    Direction,
)
from schemas import ParsedTransaction

SUPPORTED_EXTENSIONS = (".csv", ".tsv", ".txt")
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d.%m.%Y", "%d-%m-%Y")
CANDIDATE_DELIMITERS = (";", "\t", ",")
MAX_PREAMBLE_LINES = 5
MERCHANT_MAX_LENGTH = 30


class ParseError(ValueError):
    pass


@dataclass(frozen=True)
class RowSkipped:
    row_number: int
    reason: str


@dataclass
class ParsedStatement:
    format: str
    transactions: list[ParsedTransaction] = field(default_factory=list)
    skipped: list[RowSkipped] = field(default_factory=list)
    preamble_lines: int = 0


class Classification(NamedTuple):
    category: Category
    subcategory: str
    merchant: str


# First match wins; a None merchant keeps the cleaned label.
MERCHANT_RULES: list[tuple[re.Pattern[str], Category, str, Optional[str]]] = [
    (re.compile(p, re.I), c, s, m)
    for p, c, s, m in [
        (r"VIREMENT.*SALAIRE|\bSALAIRE\b", Category.income, "Salary", "Salary"),
        (r"\bDGFIP\b|FINANCES PUBLIQUES", Category.income, "Refunds", "Tax Refund"),
        (r"\bCAF\b|\bCPAM\b", Category.income, "Benefits", None),
        (r"\bEDF\b", Category.housing, "Utilities", "EDF Electricity"),
        (r"VEOLIA|GENERALE DES EAUX", Category.housing, "Utilities", "Veolia Water"),
        (r"\bLOYER\b|\bRENT\b", Category.housing, "Rent", "Rent"),
        (r"LEROY MERLIN|\bADEO\b", Category.housing, "Repairs", "Leroy Merlin"),
        (r"\bIKEA\b", Category.housing, "Furniture", "Ikea"),
        (r"\bALDI\b", Category.food, "Groceries", "Aldi"),
        (r"LECLERC", Category.food, "Groceries", "E.Leclerc"),
        (r"CARREFOUR", Category.food, "Groceries", "Carrefour"),
        (r"\bLIDL\b", Category.food, "Groceries", "Lidl"),
        (r"\bPICARD\b", Category.food, "Groceries", "Picard"),
        (r"MONOPRIX|FRANPRIX", Category.food, "Groceries", "Monoprix"),
        (r"MC ?DONALD", Category.food, "Fast Food", "McDonald's"),
        (r"\bKFC\b", Category.food, "Fast Food", "KFC"),
        (r"BURGER KING", Category.food, "Fast Food", "Burger King"),
        (r"UBER.*EATS", Category.food, "Delivery", "Uber Eats"),
        (r"DELIVEROO", Category.food, "Delivery", "Deliveroo"),
        (r"RESTAURANT|\bRESTO\b", Category.food, "Restaurants", None),
        (r"BOULANGERIE|FOURNIL|\bLEVAIN\b", Category.food, "Coffee & Bakery", "Bakery"),
        (r"STARBUCKS", Category.food, "Coffee & Bakery", "Starbucks"),
        (r"NAVIGO|COMUTITRES", Category.transport, "Public Transit", "Navigo Pass"),
        (r"\bRATP\b|\bSNCF\b", Category.transport, "Public Transit", None),
        (r"\bTOTAL\b|\bSHELL\b|\bESSO\b|\bBP\b", Category.transport, "Fuel", "Gas Station"),
        (r"\bUBER\b(?!.*EATS)", Category.transport, "Ride-hailing", "Uber"),
        (r"\bBOLT\b", Category.transport, "Ride-hailing", "Bolt"),
        (r"\bAPRR\b|\bSANEF\b|VINCI AUTO", Category.transport, "Parking", "Toll"),
        (r"PARKING|PAYBYPHONE", Category.transport, "Parking", "Parking"),
        (r"AMAZON PRIME", Category.bills, "Subscriptions", "Amazon Prime"),
        (r"AMAZON|\bAMZN\b", Category.shopping, "Online", "Amazon"),
        (r"\bFNAC\b|\bDARTY\b", Category.shopping, "Electronics", "Fnac Darty"),
        (r"\bZARA\b|H&M|PRIMARK", Category.shopping, "Clothing", "Clothing Store"),
        (r"DECATHLON|INTERSPORT", Category.shopping, "Clothing", "Sports Store"),
        (r"SEPHORA", Category.shopping, "Beauty", "Sephora"),
        (r"FREE MOBILE", Category.bills, "Phone", "Free Mobile"),
        (r"FREE.*HAUT.*DEBIT|FREE TELECOM", Category.bills, "Internet", "Free Internet"),
        (r"SPOTIFY", Category.bills, "Subscriptions", "Spotify"),
        (r"NETFLIX", Category.bills, "Subscriptions", "Netflix"),
        (r"DISNEY ?PLUS|DISNEY\+", Category.bills, "Subscriptions", "Disney+"),
        (r"\bADOBE\b", Category.bills, "Software", "Adobe"),
        (r"INTERETS DEBITEURS|FRAIS BANCAIRES|COTISATION", Category.bills, "Bank Fees", None),
        (r"\bMAIF\b|\bMATMUT\b|SOGESSUR|\bAXA\b", Category.bills, "Insurance", None),
        (r"PHARMACIE|\bPHIE\b", Category.health, "Pharmacy", "Pharmacy"),
        (r"DOCTOLIB|DOCTEUR|MEDECIN", Category.health, "Doctor", None),
        (r"PATHE|CINEMA|\bUGC\b", Category.entertainment, "Cinema", "Cinema"),
        (r"DISNEYLAND|PARC ASTERIX", Category.entertainment, "Events", None),
        (r"STEAM|PLAYSTATION|NINTENDO", Category.entertainment, "Games", None),
        (r"CRECHE|HALTE.?GARDERIE|REGIE ENFANCE", Category.family, "Childcare", "Childcare"),
        (r"PRESSING|LAVERIE", Category.services, "Laundry", None),
        (r"IMPOT|TAXE FONCIERE", Category.taxes, "Income Tax", "Taxes"),
        (r"\bAMENDE\b|\bANTAI\b", Category.taxes, "Fines", "Fine"),
        (r"VIR(EMENT)? (EUROPEEN|INSTANTANE) EMIS", Category.transfers, "To Others", "Transfer Out"),
        (r"VIR(EMENT)? RECU", Category.transfers, "From Others", "Transfer In"),
        (r"RETRAIT DAB|RETRAIT ATM", Category.transfers, "To Others", "ATM Withdrawal"),
    ]
]

# Labels found in enriched ("historical") exports, keyed by (category, subcategory).
CATEGORY_MAP: dict[tuple[str, str], tuple[Category, str]] = {
    ("income", "salary"): (Category.income, "Salary"),
    ("income", "meal allowance"): (Category.income, "Benefits"),
    ("income", "refunds"): (Category.income, "Refunds"),
    ("income", "insurance reimbursement"): (Category.income, "Refunds"),
    ("income", "tax refund"): (Category.income, "Refunds"),
    ("income", "other income"): (Category.income, "Other"),
    ("housing", "repairs & maintenance"): (Category.housing, "Repairs"),
    ("housing", "home improvement"): (Category.housing, "Repairs"),
    ("housing", "furniture & home goods"): (Category.housing, "Furniture"),
    ("housing", "furniture & appliances"): (Category.housing, "Furniture"),
    ("food", "groceries (local/ethnic)"): (Category.food, "Groceries"),
    ("food", "convenience & snacks"): (Category.food, "Groceries"),
    ("food", "fast food"): (Category.food, "Fast Food"),
    ("food", "restaurant"): (Category.food, "Restaurants"),
    ("food", "bakery & coffee"): (Category.food, "Coffee & Bakery"),
    ("food", "delivery & meal prep"): (Category.food, "Delivery"),
    ("transport", "parking & tolls"): (Category.transport, "Parking"),
    ("transport", "car services"): (Category.transport, "Car Service"),
    ("transport", "car admin"): (Category.transport, "Insurance"),
    ("shopping", "online shopping"): (Category.shopping, "Online"),
    ("shopping", "clothing & accessories"): (Category.shopping, "Clothing"),
    ("shopping", "local retail"): (Category.shopping, "Retail"),
    ("shopping", "electronics & media"): (Category.shopping, "Electronics"),
    ("shopping", "bnpl (klarna)"): (Category.shopping, "Online"),
    ("shopping", "beauty & personal items"): (Category.shopping, "Beauty"),
    ("bills & subscriptions", "direct debit"): (Category.bills, "Subscriptions"),
    ("bills & subscriptions", "insurance"): (Category.bills, "Insurance"),
    ("bills & subscriptions", "mobile"): (Category.bills, "Phone"),
    ("bills & subscriptions", "streaming & music"): (Category.bills, "Subscriptions"),
    ("bills & subscriptions", "digital subscriptions"): (Category.bills, "Subscriptions"),
    ("bills & subscriptions", "software"): (Category.bills, "Software"),
    ("bills & subscriptions", "bank fees & interest"): (Category.bills, "Bank Fees"),
    ("health", "doctor & medical"): (Category.health, "Doctor"),
    ("health", "optical"): (Category.health, "Doctor"),
    ("entertainment", "attractions / cinema"): (Category.entertainment, "Events"),
    ("entertainment", "theme park"): (Category.entertainment, "Events"),
    ("entertainment", "leisure activities"): (Category.entertainment, "Hobbies"),
    ("services", "general services"): (Category.services, "Other"),
    ("services", "laundry / dry cleaning"): (Category.services, "Laundry"),
    ("personal care", "hair & grooming"): (Category.services, "Other"),
    ("lifestyle", "fitness"): (Category.entertainment, "Sports"),
    ("education", "training"): (Category.family, "Education"),
    ("transfers", "transfer out"): (Category.transfers, "To Others"),
    ("transfers", "transfer in"): (Category.transfers, "From Others"),
    ("transfers", "savings transfer"): (Category.transfers, "To Savings"),
    ("transfers", "cheque payment"): (Category.transfers, "To Others"),
    ("taxes & government", "fines"): (Category.taxes, "Fines"),
    ("cash", "atm withdrawal"): (Category.transfers, "To Others"),
    ("finance", "installments / bnpl"): (Category.bills, "Subscriptions"),
    ("travel", "tours & activities"): (Category.entertainment, "Events"),
}

PAYMENT_METHOD_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"CARTE X\d+", re.I), "card"),
    (re.compile(r"VIR(EMENT)?\b.*(EUROPEEN|INSTANTANE|RECU)", re.I), "transfer"),
    (re.compile(r"PRELEVEMENT", re.I), "direct_debit"),
    (re.compile(r"RETRAIT DAB|RETRAIT ATM", re.I), "cash"),
    (re.compile(r"CHEQUE", re.I), "check"),
]

_CARD_PREFIX = re.compile(r"^CARTE\s+X\d+\s+\d{1,2}/\d{1,2}\s*", re.I)
_DIRECT_DEBIT = re.compile(r"^PRELEVEMENT EUROPE.*$", re.I)
_TRAILING_REFERENCE = re.compile(r"\s+\d+.*$")
_NON_WORD = re.compile(r"[^\w]+")
_WHITESPACE = re.compile(r"\s+")


# -- value parsing ----------------------------------------------------------


def parse_date(value: str) -> date:
    text = (value or "").strip().strip('"')
    if not text:
        raise ValueError("Missing date")
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date '{text}'")


def parse_amount(value: str) -> int:
    """Parse a statement amount into signed cents.

    Handles "-1 234,56 EUR", "1'234.56", "12,50-" and "€ 3.00".
    """
    text = (value or "").strip().strip('"')
    if not text:
        raise ValueError("Missing amount")
    clean = re.sub(r"(?i)eur|€|\$", "", text)
    clean = re.sub(r"[\s\u00a0\u202f']", "", clean)
    negative = False
    if clean.endswith("-"):
        negative = True
        clean = clean[:-1]
    if clean.startswith("(") and clean.endswith(")"):
        negative = True
        clean = clean[1:-1]
    if clean.startswith("+"):
        clean = clean[1:]
    elif clean.startswith("-"):
        negative = not negative
        clean = clean[1:]

    if "," in clean and "." in clean:
        decimal_sep = "," if clean.rfind(",") > clean.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        clean = clean.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif clean.count(",") == 1:
        clean = clean.replace(",", ".")
    elif clean.count(",") > 1:
        clean = clean.replace(",", "")
    elif clean.count(".") > 1:
        clean = clean.replace(".", "")

    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount '{text}'") from exc
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return -cents if negative else cents


# -- merchants and classification --------------------------------------------


def clean_merchant_label(label: str) -> str:
    text = _WHITESPACE.sub(" ", (label or "").strip())
    text = _CARD_PREFIX.sub("", text)
    if _DIRECT_DEBIT.match(text):
        return "Direct Debit"
    text = _TRAILING_REFERENCE.sub("", text).strip()
    return text[:MERCHANT_MAX_LENGTH].strip()


def display_merchant(label: str) -> str:
    cleaned = clean_merchant_label(label)
    if not cleaned:
        return "Unknown"
    if cleaned.isupper() or cleaned.islower():
        return cleaned.title()
    return cleaned


def merchant_key(name: str) -> str:
    """Case-folded, punctuation-free form used for fingerprints and matching."""
    return _NON_WORD.sub(" ", (name or "").casefold()).strip()


def fingerprint(account_id: int, day: date, amount_cents: int, merchant: str) -> str:
    payload = f"{account_id}|{day.isoformat()}|{amount_cents}|{merchant_key(merchant)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def classify_label(label: str, detail: str = "") -> Classification:
    text = f"{label or ''} {detail or ''}"
    for pattern, category, subcategory, merchant in MERCHANT_RULES:
        if pattern.search(text):
            return Classification(
                category, subcategory, merchant or display_merchant(label)
            )
    return Classification(DEFAULT_CATEGORY, DEFAULT_SUBCATEGORY, display_merchant(label))


def _default_subcategory(category: Category, raw_subcategory: str) -> str:
    options = SUBCATEGORIES[category]
    wanted = raw_subcategory.strip().casefold()
    for option in options:
        if option.casefold() == wanted:
            return option
    return options[0]


def resolve_category(raw_category: str, raw_subcategory: str = "") -> tuple[Category, str]:
    cat = (raw_category or "").strip().casefold()
    sub = (raw_subcategory or "").strip().casefold()
    if not cat:
        return DEFAULT_CATEGORY, DEFAULT_SUBCATEGORY
    mapped = CATEGORY_MAP.get((cat, sub))
    if mapped:
        return mapped

    for category in Category:
        name = category.value.casefold()
        if cat == name or name in cat:
            return category, _default_subcategory(category, raw_subcategory or "")

    best_distance: Optional[int] = None
    best: list[Category] = []
    for category in Category:
        dist = int(Levenshtein.distance(cat, category.value.casefold()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [category]
        elif dist == best_distance:
            best.append(category)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0], _default_subcategory(best[0], raw_subcategory or "")
    return DEFAULT_CATEGORY, DEFAULT_SUBCATEGORY


def detect_payment_method(label: str) -> str:
    for pattern, method in PAYMENT_METHOD_RULES:
        if pattern.search(label or ""):
            return method
    return "other"


# -- file level ---------------------------------------------------------------


def decode_content(raw: Union[bytes, str]) -> str:
    if isinstance(raw, str):
        text = raw.lstrip("\ufeff")
    else:
        if b"\x00" in raw:
            raise ParseError("File is not a text statement export")
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = raw.decode("latin-1")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def normalize_header(name: str) -> str:
    folded = unicodedata.normalize("NFKD", (name or "").strip().strip('"'))
    ascii_only = folded.encode("ascii", "ignore").decode("ascii").casefold()
    return re.sub(r"[^a-z0-9]", "", ascii_only)


@dataclass(frozen=True)
class ColumnLayout:
    name: str
    required: dict[str, tuple[str, ...]]
    optional: dict[str, tuple[str, ...]]

    def resolve(self, headers: list[str]) -> Optional[dict[str, int]]:
        index = {h: i for i, h in reversed(list(enumerate(headers))) if h}
        columns: dict[str, int] = {}
        for role, aliases in self.required.items():
            found = next((index[a] for a in aliases if a in index), None)
            if found is None:
                return None
            columns[role] = found
        for role, aliases in self.optional.items():
            found = next((index[a] for a in aliases if a in index), None)
            if found is not None:
                columns[role] = found
        return columns


LAYOUTS: tuple[ColumnLayout, ...] = (
    ColumnLayout(
        "historical",
        required={
            "date": ("date",),
            "amount": ("amount",),
            "direction": ("direction",),
            "merchant": ("merchant",),
            "category": ("category",),
        },
        optional={
            "value_date": ("valuedate",),
            "balance": ("balanceafter", "balance"),
            "subcategory": ("subcategory",),
            "description": ("description",),
            "payment_method": ("paymentmethod",),
        },
    ),
    ColumnLayout(
        "bank",
        required={
            "date": ("datedeloperation", "dateoperation", "datedoperation"),
            "label": ("libelle",),
            "amount": ("montantdeloperation", "montant", "montantdoperation"),
        },
        optional={
            "value_date": ("datedevaleur", "datevaleur"),
            "detail": ("detaildelecriture", "detail", "detaildecriture"),
            "currency": ("devise",),
        },
    ),
    ColumnLayout(
        "debit_credit",
        required={
            "date": ("date", "transactiondate", "bookingdate", "dateoperation"),
            "debit": ("debit", "withdrawal", "withdrawals", "debitamount"),
            "credit": ("credit", "deposit", "deposits", "creditamount"),
        },
        optional={
            "value_date": ("valuedate", "datedevaleur"),
            "balance": ("balance", "runningbalance", "solde"),
            "description": ("description", "label", "libelle", "details", "memo"),
            "merchant": ("merchant", "payee"),
            "category": ("category",),
        },
    ),
)


def _pick_delimiter(line: str) -> Optional[str]:
    counts = {d: line.count(d) for d in CANDIDATE_DELIMITERS}
    best = max(CANDIDATE_DELIMITERS, key=lambda d: counts[d])
    return best if counts[best] else None


def _split(line: str, delimiter: str) -> list[str]:
    return next(csv.reader([line], delimiter=delimiter), [])


def detect_format(lines: list[str]) -> tuple[ColumnLayout, dict[str, int], str, int]:
    """Find the header within the first lines and match it to a known layout."""
    for offset, line in enumerate(lines[: MAX_PREAMBLE_LINES + 1]):
        delimiter = _pick_delimiter(line)
        if delimiter is None:
            continue
        headers = [normalize_header(h) for h in _split(line, delimiter)]
        for layout in LAYOUTS:
            columns = layout.resolve(headers)
            if columns is not None:
                return layout, columns, delimiter, offset
    preview = lines[0][:80] if lines else ""
    raise ParseError(
        f"Unrecognized statement header; expected a date, amount and label column (got '{preview}')"
    )


def _cell(row: list[str], columns: dict[str, int], role: str) -> str:
    idx = columns.get(role)
    if idx is None or idx >= len(row):
        return ""
    return (row[idx] or "").strip()


def _optional_date(value: str) -> Optional[date]:
    return parse_date(value) if value else None


def _optional_amount(value: str) -> Optional[int]:
    return parse_amount(value) if value else None


def _row_bank(row, columns, account_id, row_number) -> ParsedTransaction:
    label = _cell(row, columns, "label")
    detail = _cell(row, columns, "detail")
    day = parse_date(_cell(row, columns, "date"))
    amount = parse_amount(_cell(row, columns, "amount"))
    category, subcategory, merchant = classify_label(label, detail)
    return _build(
        row_number,
        account_id,
        day,
        _optional_date(_cell(row, columns, "value_date")),
        amount,
        merchant,
        merchant_original=label or detail,
        description=detail or label,
        category=category,
        subcategory=subcategory,
        payment_method=detect_payment_method(label),
        balance=None,
    )


def _row_historical(row, columns, account_id, row_number) -> ParsedTransaction:
    day = parse_date(_cell(row, columns, "date"))
    amount = abs(parse_amount(_cell(row, columns, "amount")))
    direction = _cell(row, columns, "direction").casefold()
    if direction in {"debit", "d", "out", "dr"}:
        amount = -amount
    elif direction not in {"credit", "c", "in", "cr"}:
        raise ValueError(f"Unknown direction '{direction}'")
    raw_merchant = _cell(row, columns, "merchant")
    description = _cell(row, columns, "description")
    category, subcategory = resolve_category(
        _cell(row, columns, "category"), _cell(row, columns, "subcategory")
    )
    merchant = raw_merchant.strip() or display_merchant(description)
    return _build(
        row_number,
        account_id,
        day,
        _optional_date(_cell(row, columns, "value_date")),
        amount,
        merchant[:MERCHANT_MAX_LENGTH] if merchant else "Unknown",
        merchant_original=raw_merchant or description,
        description=description,
        category=category,
        subcategory=subcategory,
        payment_method=_cell(row, columns, "payment_method") or detect_payment_method(description),
        balance=_optional_amount(_cell(row, columns, "balance")),
    )


def _row_debit_credit(row, columns, account_id, row_number) -> ParsedTransaction:
    day = parse_date(_cell(row, columns, "date"))
    debit_raw = _cell(row, columns, "debit")
    credit_raw = _cell(row, columns, "credit")
    if not debit_raw and not credit_raw:
        raise ValueError("Missing amount")
    amount = 0
    if credit_raw:
        amount += abs(parse_amount(credit_raw))
    if debit_raw:
        amount -= abs(parse_amount(debit_raw))
    description = _cell(row, columns, "description")
    raw_merchant = _cell(row, columns, "merchant")
    label = raw_merchant or description
    classification = classify_label(label, description if raw_merchant else "")
    raw_category = _cell(row, columns, "category")
    if raw_category:
        category, subcategory = resolve_category(raw_category)
    else:
        category, subcategory = classification.category, classification.subcategory
    return _build(
        row_number,
        account_id,
        day,
        _optional_date(_cell(row, columns, "value_date")),
        amount,
        classification.merchant,
        merchant_original=label,
        description=description or label,
        category=category,
        subcategory=subcategory,
        payment_method=detect_payment_method(label),
        balance=_optional_amount(_cell(row, columns, "balance")),
    )


def _build(
    row_number: int,
    account_id: int,
    day: date,
    value_date: Optional[date],
    amount: int,
    merchant: str,
    *,
    merchant_original: str,
    description: str,
    category: Category,
    subcategory: str,
    payment_method: str,
    balance: Optional[int],
) -> ParsedTransaction:
    return ParsedTransaction(
        row_number=row_number,
        account_id=account_id,
        date=day,
        value_date=value_date or day,
        amount_cents=amount,
        direction=Direction.for_amount(amount),
        merchant=merchant,
        merchant_original=merchant_original or merchant,
        description=description,
        category=category,
        subcategory=subcategory,
        payment_method=payment_method,
        statement_balance_cents=balance,
        fingerprint=fingerprint(account_id, day, amount, merchant),
    )


ROW_NORMALIZERS: dict[str, Callable[..., ParsedTransaction]] = {
    "bank": _row_bank,
    "historical": _row_historical,
    "debit_credit": _row_debit_credit,
}


def check_filename(filename: Optional[str]) -> None:
    if not filename:
        return
    suffix = PurePath(filename).suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        allowed = ", ".join(SUPPORTED_EXTENSIONS)
        raise ParseError(f"Unsupported file type '{suffix or filename}'; expected {allowed}")


def parse_statement(
    content: Union[bytes, str],
    account_id: int,
    filename: Optional[str] = None,
) -> ParsedStatement:
    """Normalize every row of a statement export for one account.

    Header-level problems raise ParseError. Rows whose date or amount cannot
    be read are collected as RowSkipped and the rest of the file still parses.
    Row numbers count data rows from 1, after the header.
    """
    check_filename(filename)
    text = decode_content(content)
    lines = text.split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    leading = 0
    while leading < len(lines) and not lines[leading].strip():
        leading += 1
    lines = lines[leading:]
    if not lines:
        raise ParseError("File is empty")

    layout, columns, delimiter, offset = detect_format(lines)
    normalize_row = ROW_NORMALIZERS[layout.name]
    result = ParsedStatement(format=layout.name, preamble_lines=offset)

    reader = csv.reader(StringIO("\n".join(lines[offset + 1 :])), delimiter=delimiter)
    for row_number, row in enumerate(reader, start=1):
        if not any((cell or "").strip() for cell in row):
            continue
        try:
            result.transactions.append(normalize_row(row, columns, account_id, row_number))
        except ValueError as exc:
            result.skipped.append(RowSkipped(row_number=row_number, reason=str(exc)))
    return result
