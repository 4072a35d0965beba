from datetime import datetime, timezone

from models.portal_models import PortalSettings
from services.document_retention import (
    calculate_document_retention_dates,
    calculate_retention_expiry_date,
    get_retention_start_date,
    should_delete_document,
)


def test_expiry_is_midnight_of_expiry_day():
    expiry = calculate_retention_expiry_date(30, "2024-01-10T15:30:00", tz="UTC")
    assert expiry == datetime(2024, 2, 9, 0, 0, tzinfo=timezone.utc)


def test_expiry_midnight_in_local_zone():
    # 23:30 UTC on 31 May is already 1 June in London
    expiry = calculate_retention_expiry_date(1, "2024-05-31T23:30:00", tz="Europe/London")
    assert expiry.isoformat() == "2024-06-02T00:00:00+01:00"


def test_no_period_means_no_expiry():
    assert calculate_retention_expiry_date(None, "2024-01-10T00:00:00") is None
    assert calculate_retention_expiry_date(0, "2024-01-10T00:00:00") is None


def test_start_date_by_trigger():
    invoice = {"issue_date": "2023-12-01T00:00:00", "created_at": "2024-01-05T10:00:00"}
    statement = {"period_end": "2023-11-30T00:00:00", "created_at": "2024-01-05T10:00:00"}

    assert get_retention_start_date(invoice, "invoice_date").day == 1
    assert get_retention_start_date(statement, "invoice_date").month == 11
    assert get_retention_start_date(invoice, "upload_date").day == 5
    assert get_retention_start_date(None, "upload_date") is None


def test_invoice_date_falls_back_to_upload_date():
    start = get_retention_start_date({"created_at": "2024-01-05T10:00:00"}, "invoice_date")
    assert start == datetime(2024, 1, 5, 10, 0, tzinfo=timezone.utc)


def test_should_delete_document():
    settings = PortalSettings(document_retention_period=30)
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)

    assert should_delete_document({"retention_expiry_date": "2024-02-29T00:00:00"}, settings, now)
    assert not should_delete_document({"retention_expiry_date": "2024-03-02T00:00:00"}, settings, now)
    assert not should_delete_document(
        {"retention_expiry_date": "2024-02-01T00:00:00", "deleted_at": "2024-02-02T00:00:00"}, settings, now)
    assert not should_delete_document({"retention_expiry_date": None}, settings, now)
    assert not should_delete_document({"retention_expiry_date": "2024-02-01T00:00:00"}, PortalSettings(), now)


def test_retention_dates_disabled():
    dates = calculate_document_retention_dates({"created_at": "2024-01-01T00:00:00"}, PortalSettings())
    assert dates == {"retention_start_date": None, "retention_expiry_date": None}
