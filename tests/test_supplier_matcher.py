import pytest

from services.supplier_matcher import SupplierMatcher, name_similarity


@pytest.fixture()
def suppliers(db):
    rows = [
        ("Acme Building Supplies Ltd", "ACME01", 1, None),
        ("Northern Timber Co", "NTC", 1, None),
        ("Old Supplier", "OLD", 0, None),
        ("Deleted Supplier", "DEL", 1, "2024-01-01T00:00:00"),
    ]
    for name, code, active, deleted in rows:
        db.execute_insert(
            "INSERT INTO suppliers (name, code, is_active, deleted_at) VALUES (?, ?, ?, ?)",
            (name, code, active, deleted),
        )
    return SupplierMatcher(db)


def test_similarity_ignores_case_and_whitespace():
    assert name_similarity("  ACME ", "acme") == 1.0


def test_code_match_wins(suppliers):
    result = suppliers.find_supplier({"supplierCode": " acme01 ", "supplierName": "Northern Timber Co"})
    assert result["match_method"] == "code"
    assert result["supplier"]["name"] == "Acme Building Supplies Ltd"


def test_fuzzy_name_match(suppliers):
    result = suppliers.find_supplier({"supplier_name": "Acme Building Supplies Limited"})
    assert result["match_method"] == "name_fuzzy"
    assert result["supplier"]["code"] == "ACME01"
    assert result["error"] is None


def test_inactive_and_deleted_suppliers_ignored(suppliers):
    assert suppliers.match_by_code("OLD") is None
    assert suppliers.match_by_code("DEL") is None


def test_no_match_reports_both_identifiers(suppliers):
    result = suppliers.find_supplier({"account_number": "ZZZ", "vendor": "Completely Different"})
    assert result["supplier"] is None
    assert result["error"] == 'No matching supplier found for code "ZZZ" or name "Completely Different"'


def test_no_identifiers(suppliers):
    assert suppliers.find_supplier({"total": "10.00"})["error"].startswith("No supplier identifier")
    assert suppliers.find_supplier(None)["error"] == "No parsed data provided"
