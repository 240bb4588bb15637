from datetime import date

import pytest

from models import Category, Direction
from statement_parser import (
    ParseError,
    classify_label,
    clean_merchant_label,
    detect_payment_method,
    fingerprint,
    merchant_key,
    parse_amount,
    parse_date,
    parse_statement,
    resolve_category,
)


BANK_EXPORT = (
    "Compte courant;FR76 3000 4000 0500 0012 3456 789\n"
    "Solde au 31/03/2024;1 234,56\n"
    "Date de l'opération;Date de valeur;Libellé;Détail de l'écriture;Montant de l'opération;Devise\n"
    "05/03/2024;05/03/2024;CARTE X1234 04/03 CARREFOUR CITY;CARTE X1234 04/03 CARREFOUR CITY PARIS;-45,20;EUR\n"
    "01/03/2024;01/03/2024;VIREMENT SALAIRE MARS;VIR SEPA ACME;2 500,00;EUR\n"
    "\n"
    "02/03/2024;;PRELEVEMENT EUROPEEN 123 NETFLIX;NETFLIX.COM;-13,49;EUR\n"
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("-1 234,56 EUR", -123456),
        ("1'234.56", 123456),
        ("1.234,56", 123456),
        ("1,234.56", 123456),
        ("12,50-", -1250),
        ("(3.00)", -300),
        ("€ 3", 300),
        ("+7,5", 750),
        ("0,005", 1),
    ],
)
def test_parse_amount_variants(raw, expected):
    assert parse_amount(raw) == expected


def test_parse_amount_rejects_garbage():
    with pytest.raises(ValueError):
        parse_amount("twelve")
    with pytest.raises(ValueError):
        parse_amount("")


def test_parse_date_accepts_known_formats():
    for raw in ("2024-03-05", "05/03/2024", "05.03.2024", "05-03-2024"):
        assert parse_date(raw) == date(2024, 3, 5)
    with pytest.raises(ValueError):
        parse_date("32/13/2024")


def test_bank_export_with_preamble():
    statement = parse_statement(BANK_EXPORT, account_id=1, filename="releve.csv")

    assert statement.format == "bank"
    assert statement.preamble_lines == 2
    assert statement.skipped == []
    assert [t.row_number for t in statement.transactions] == [1, 2, 4]

    groceries, salary, netflix = statement.transactions
    assert groceries.amount_cents == -4520
    assert groceries.direction == Direction.debit
    assert groceries.merchant == "Carrefour"
    assert groceries.category == Category.food
    assert groceries.subcategory == "Groceries"
    assert groceries.payment_method == "card"

    assert salary.amount_cents == 250000
    assert salary.direction == Direction.credit
    assert salary.category == Category.income
    assert salary.subcategory == "Salary"

    assert netflix.merchant == "Netflix"
    assert netflix.category == Category.bills
    assert netflix.payment_method == "direct_debit"
    assert netflix.value_date == date(2024, 3, 2)


def test_historical_export_maps_categories_and_balances():
    content = (
        "date,amount,direction,merchant,category,subcategory,balance_after\n"
        "2024-01-02,12.50,debit,Boulangerie Paul,Food,Bakery & Coffee,987.50\n"
        "2024-01-03,40.00,credit,Dupont,Transfers,Transfer In,1027.50\n"
    )
    statement = parse_statement(content, account_id=3)

    assert statement.format == "historical"
    bakery, transfer = statement.transactions
    assert bakery.amount_cents == -1250
    assert bakery.category == Category.food
    assert bakery.subcategory == "Coffee & Bakery"
    assert bakery.statement_balance_cents == 98750
    assert transfer.amount_cents == 4000
    assert transfer.subcategory == "From Others"


def test_historical_unknown_direction_is_skipped():
    content = (
        "date,amount,direction,merchant,category\n"
        "2024-01-02,12.50,sideways,Shop,Shopping\n"
        "2024-01-03,5.00,debit,Shop,Shopping\n"
    )
    statement = parse_statement(content, account_id=1)
    assert len(statement.transactions) == 1
    assert statement.skipped[0].row_number == 1
    assert "direction" in statement.skipped[0].reason


def test_debit_credit_layout():
    content = (
        "Date,Description,Debit,Credit,Balance\n"
        "2024-02-01,SPOTIFY AB,9.99,,90.01\n"
        "2024-02-03,VIR RECU DUPONT,,50.00,140.01\n"
        "not-a-date,BROKEN,1.00,,\n"
    )
    statement = parse_statement(content, account_id=1, filename="export.CSV")

    assert statement.format == "debit_credit"
    spotify, transfer = statement.transactions
    assert spotify.amount_cents == -999
    assert spotify.merchant == "Spotify"
    assert spotify.statement_balance_cents == 9001
    assert transfer.amount_cents == 5000
    assert transfer.category == Category.transfers
    assert [s.row_number for s in statement.skipped] == [3]


def test_latin1_bytes_are_decoded():
    raw = "Date;Description;Debit;Credit\n2024-02-01;Boutique Lumière;4,50;\n".encode("latin-1")
    statement = parse_statement(raw, account_id=1)
    assert statement.transactions[0].merchant == "Boutique Lumière"
    assert statement.transactions[0].amount_cents == -450


def test_file_level_errors():
    with pytest.raises(ParseError):
        parse_statement("", account_id=1)
    with pytest.raises(ParseError):
        parse_statement("foo;bar\n1;2\n", account_id=1)
    with pytest.raises(ParseError):
        parse_statement(b"PK\x03\x04\x00\x00", account_id=1)
    with pytest.raises(ParseError):
        parse_statement(BANK_EXPORT, account_id=1, filename="releve.pdf")


def test_resolve_category_fallbacks():
    assert resolve_category("Food", "Fast Food") == (Category.food, "Fast Food")
    assert resolve_category("fod") == (Category.food, "Groceries")
    assert resolve_category("Bills & Subscriptions", "Mobile") == (Category.bills, "Phone")
    assert resolve_category("Xyzzy") == (Category.services, "Other")
    assert resolve_category("") == (Category.services, "Other")


def test_classify_and_clean_labels():
    assert clean_merchant_label("CARTE X9876 12/01 PICARD 1234") == "PICARD"
    assert clean_merchant_label("PRELEVEMENT EUROPEEN 998877 FOO") == "Direct Debit"
    assert classify_label("CARTE X1 01/02 UBER EATS").merchant == "Uber Eats"
    assert classify_label("UBER TRIP").merchant == "Uber"
    unknown = classify_label("SOME SMALL SHOP")
    assert unknown.category == Category.services
    assert unknown.merchant == "Some Small Shop"
    assert detect_payment_method("RETRAIT DAB 01/02") == "cash"
    assert detect_payment_method("something else") == "other"


def test_fingerprint_is_stable_across_merchant_spelling():
    day = date(2024, 1, 2)
    assert merchant_key("BOULANGERIE  paul!") == "boulangerie paul"
    assert fingerprint(1, day, -1250, "Boulangerie Paul") == fingerprint(
        1, day, -1250, "BOULANGERIE  paul!"
    )
    assert fingerprint(1, day, -1250, "Boulangerie Paul") != fingerprint(
        2, day, -1250, "Boulangerie Paul"
    )
    assert fingerprint(1, day, -1250, "Boulangerie Paul") != fingerprint(
        1, day, -1251, "Boulangerie Paul"
    )
