"""Tests for board-level billing aggregation and output files."""

import logging
from datetime import date

import pandas as pd
import pytest
from openpyxl import load_workbook

from billing_engine import (
    aggregate_board,
    build_column_map,
    calculate_billing_for_month,
    calculate_board_billing,
    extract_storage_item,
    summarize_months,
    write_billing_outputs,
)
from conftest import STANDARD_COLUMNS

TODAY = date(2025, 8, 15)


def test_board_total_is_sum_of_items(fake_board) -> None:
    """The board total equals the per-item amounts added up."""

    column_map = build_column_map(STANDARD_COLUMNS)
    billing = aggregate_board(fake_board.items, 7, 2025, today=TODAY, column_map=column_map)
    expected = sum(
        calculate_billing_for_month(extract_storage_item(raw, column_map), 7, 2025, today=TODAY).amount
        for raw in fake_board.items
    )
    assert billing.total_amount == expected
    assert billing.total_amount == pytest.approx(93.0 + 20.0 + 36.0)
    assert billing.item_count == 3
    assert billing.billable_count == 3
    assert billing.fail_count == 0


def test_bad_date_does_not_abort_batch(fake_board, make_item) -> None:
    """A malformed receipt date bills zero while the rest still total correctly."""

    items = fake_board.items + [make_item("999", "Broken", received="not-a-date", cbm=5, rate=5)]
    billing = aggregate_board(items, 7, 2025, today=TODAY, column_map=build_column_map(STANDARD_COLUMNS))
    broken = next(r for r in billing.per_item if r.item_id == "999")
    assert broken.amount == 0
    assert broken.status == "missing_data"
    assert billing.total_amount == pytest.approx(149.0)


def test_unusable_item_recorded_as_failure(fake_board) -> None:
    """Items that cannot be read at all are recorded and excluded."""

    items = fake_board.items + [{"name": "no id", "column_values": []}, "garbage"]
    billing = aggregate_board(items, 7, 2025, today=TODAY, column_map=build_column_map(STANDARD_COLUMNS))
    assert billing.fail_count == 2
    assert billing.item_count == 3
    assert billing.failures[0].item_name == "no id"
    assert billing.total_amount == pytest.approx(149.0)


def test_group_by_customer_keeps_order(fake_board) -> None:
    """Results group by customer in board order."""

    billing = calculate_board_billing(fake_board, "1", 7, 2025, today=TODAY)
    grouped = billing.by_customer()
    assert list(grouped) == ["Acme", "Globex"]
    assert [r.item_id for r in grouped["Acme"]] == ["101", "102"]


def test_invalid_month_raises(fake_board) -> None:
    """A bad month is rejected up front rather than failing every item."""

    with pytest.raises(ValueError):
        aggregate_board(fake_board.items, 0, 2025, today=TODAY)


def test_summarize_months(fake_board) -> None:
    """Multi-month summary totals every requested month."""

    summary = summarize_months(fake_board, "1", [(6, 2025), (7, 2025)], today=TODAY)
    assert summary["month_count"] == 2
    assert summary["total_items"] == 6
    june, july = summary["results"]
    assert summary["total_billing"] == pytest.approx(june.total_amount + july.total_amount)
    # Boxes B: received June 20, bills June 20-30.
    assert june.total_amount == pytest.approx(11 * 1 * 2)


def test_write_billing_outputs(tmp_path, fake_board) -> None:
    """The billing log and customer detail workbooks land in the expected folders."""

    billing = calculate_board_billing(fake_board, "1", 7, 2025, today=TODAY)
    paths = write_billing_outputs(billing, tmp_path, logging.getLogger("test"))

    log_path = tmp_path / "storage_billing_log" / "2025.07_Storage_Billing.csv"
    assert paths["billing_log"] == log_path
    df = pd.read_csv(log_path)
    assert len(df) == 3
    assert df["amount"].sum() == pytest.approx(149.0)

    acme = tmp_path / "customer_details" / "Acme" / "Acme - 2025.07.xlsx"
    assert acme in paths["customer_details"]
    wb = load_workbook(acme, read_only=True)
    rows = list(wb["Storage Detail"].iter_rows(values_only=True))
    wb.close()
    assert len(rows) == 3
