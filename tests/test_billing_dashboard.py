"""Tests for dashboard data helpers."""

import logging
from datetime import date

import pytest

from billing_dashboard import (
    billing_period_from_log,
    customer_totals,
    find_billing_logs,
    ledger_rows,
    load_billing_log,
    read_detail_workbook,
)
from billing_engine import calculate_board_billing, write_billing_outputs


@pytest.fixture
def billing_files(tmp_path, fake_board):
    billing = calculate_board_billing(fake_board, "1", 7, 2025, today=date(2025, 8, 15))
    return write_billing_outputs(billing, tmp_path, logging.getLogger("test"))


def test_find_billing_logs(tmp_path, billing_files) -> None:
    """Logs are discovered and their period read from the filename."""

    logs = find_billing_logs(tmp_path / "storage_billing_log")
    assert logs == [billing_files["billing_log"]]
    assert billing_period_from_log(logs[0]) == "2025.07"


def test_customer_totals(billing_files) -> None:
    """Customer totals are largest first."""

    totals = customer_totals(load_billing_log(billing_files["billing_log"]))
    assert list(totals["Customer"]) == ["Acme", "Globex"]
    assert list(totals["Amount"]) == [113.0, 36.0]
    assert list(totals["Lots"]) == [2, 1]


def test_read_detail_workbook(billing_files) -> None:
    """Detail workbooks read back as row dicts."""

    acme = next(p for p in billing_files["customer_details"] if p.parent.name == "Acme")
    rows = read_detail_workbook(acme)
    assert [str(row["ITEM_ID"]) for row in rows] == ["101", "102"]


def test_ledger_rows() -> None:
    """Ledger entries become table rows, newest key first."""

    rows = ledger_rows({"runs": {"1:2025-06": {"status": "completed"}, "1:2025-07": {"status": "failed"}}})
    assert [row["Board / Period"] for row in rows] == ["1:2025-07", "1:2025-06"]
    assert rows[0]["Status"] == "failed"
