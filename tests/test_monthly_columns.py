"""Tests for monthly billing column resolution and write-back."""

from datetime import date

import pytest

from board_client import BoardApiError
from conftest import STANDARD_COLUMNS, FakeBoardClient
from monthly_columns import (
    ColumnNotFound,
    ResolvedColumn,
    ensure_monthly_column,
    format_amount,
    handle_board_event,
    monthly_column_title,
    recalculate_all,
    resolve_monthly_column,
    update_bill_dates,
    update_monthly_column,
    validate_board,
    write_amount,
)

TODAY = date(2025, 8, 15)


def test_monthly_column_title() -> None:
    """Titles read '<Month> <Year> Billing'."""

    assert monthly_column_title(7, 2025) == "July 2025 Billing"


@pytest.mark.parametrize(
    "title",
    [
        "July 2025 Billing",
        "july 2025 billing",
        "Jul 2025 Billing",
        "July 2025",
        "Billing - July (2025)",
        "Jul2025 Billing",
        "July2025",
    ],
)
def test_resolve_tolerates_title_variants(title: str) -> None:
    """Exact, normalized, short-month and loose titles all resolve."""

    columns = [{"id": "x", "title": "Notes"}, {"id": "july", "title": title}]
    found = resolve_monthly_column(columns, 7, 2025)
    assert isinstance(found, ResolvedColumn)
    assert found.column_id == "july"


def test_resolve_prefers_exact_title() -> None:
    """An exact title wins over a looser match earlier on the board."""

    columns = [{"id": "loose", "title": "July 2025"}, {"id": "exact", "title": "July 2025 Billing"}]
    assert resolve_monthly_column(columns, 7, 2025).column_id == "exact"


def test_resolve_does_not_match_other_year() -> None:
    """Missing columns come back as a structured result."""

    found = resolve_monthly_column([{"id": "j24", "title": "July 2024 Billing"}], 7, 2025)
    assert isinstance(found, ColumnNotFound)
    assert found.expected_title == "July 2025 Billing"
    assert found.available_titles == ("July 2024 Billing",)


def test_ensure_creates_missing_column() -> None:
    """A missing month column is created once."""

    board = FakeBoardClient()
    column = ensure_monthly_column(board, "1", 7, 2025)
    assert column.created
    assert board.created[0]["title"] == "July 2025 Billing"
    assert board.created[0]["type"] == "numbers"
    again = ensure_monthly_column(board, "1", 7, 2025)
    assert again.column_id == column.column_id
    assert len(board.created) == 1


def test_ensure_tolerates_duplicate_error() -> None:
    """A create racing another writer falls back to the existing column."""

    board = FakeBoardClient()
    board.create_error = "Column already exists"
    stale_columns = board.get_columns("1")
    board.columns.append({"id": "late", "title": "July 2025 Billing", "type": "numbers"})
    assert ensure_monthly_column(board, "1", 7, 2025, columns=stale_columns).column_id == "late"


def test_ensure_propagates_other_errors() -> None:
    """Unrelated create failures are raised."""

    board = FakeBoardClient()
    board.create_error = "permission denied"
    with pytest.raises(BoardApiError):
        ensure_monthly_column(board, "1", 7, 2025)


@pytest.mark.parametrize("amount, expected", [(0, "0"), (0.001, "0"), (93, "93.00"), (100.005, "100.01")])
def test_format_amount(amount: float, expected: str) -> None:
    """Zero writes '0'; everything else has two decimals."""

    assert format_amount(amount) == expected


def test_write_is_idempotent() -> None:
    """Writing the same amount twice leaves the same cell value."""

    board = FakeBoardClient()
    write_amount(board, "1", "101", "col", 93.0)
    snapshot = dict(board.cells)
    write_amount(board, "1", "101", "col", 93.0)
    assert board.cells == snapshot
    assert board.cells[("101", "col")] == "93.00"


def test_write_falls_back_to_multi_column_update() -> None:
    """A rejected single write is retried once as a multi-column update."""

    board = FakeBoardClient()
    board.fail_simple.add("101")
    outcome = write_amount(board, "1", "101", "col", 12.5)
    assert outcome.ok
    assert outcome.method == "multiple"
    assert board.cells[("101", "col")] == "12.50"


def test_write_reports_double_failure() -> None:
    """When both writes fail the outcome says so instead of raising."""

    board = FakeBoardClient()
    board.fail_simple.add("101")
    board.fail_multiple.add("101")
    outcome = write_amount(board, "1", "101", "col", 12.5)
    assert not outcome.ok
    assert "multi write rejected" in outcome.error


def test_update_monthly_column(fake_board, make_item) -> None:
    """Every lot gets its July amount; lots without inputs are skipped."""

    fake_board.items.append(make_item("300", "No inputs"))
    update = update_monthly_column(fake_board, "1", 7, 2025, today=TODAY)
    column_id = update.column.column_id
    assert update.column.created
    assert fake_board.cells[("101", column_id)] == "93.00"
    assert fake_board.cells[("102", column_id)] == "20.00"
    assert fake_board.cells[("201", column_id)] == "36.00"
    assert ("300", column_id) not in fake_board.cells
    assert update.writes.success_count == 3
    assert update.writes.skipped_count == 1
    assert update.writes.fail_count == 0


def test_update_reports_partial_failure(fake_board) -> None:
    """One failing item is counted without stopping the others."""

    fake_board.fail_simple.add("102")
    fake_board.fail_multiple.add("102")
    update = update_monthly_column(fake_board, "1", 7, 2025, today=TODAY)
    assert update.writes.success_count == 2
    assert update.writes.fail_count == 1
    assert update.writes.failures[0].item_id == "102"


def test_update_without_create(fake_board) -> None:
    """With creation disabled a missing column means no writes."""

    update = update_monthly_column(fake_board, "1", 7, 2025, today=TODAY, create_missing=False)
    assert isinstance(update.column, ColumnNotFound)
    assert fake_board.writes == []
    assert update.billing.total_amount == pytest.approx(149.0)


def test_recalculate_all_stops_between_months(fake_board) -> None:
    """A stop request is honoured before the next month starts."""

    calls = []

    def should_stop() -> bool:
        calls.append(1)
        return len(calls) > 3

    run = recalculate_all(fake_board, "1", 2025, today=TODAY, should_stop=should_stop)
    assert run.cancelled
    assert [u.month for u in run.updates] == [1, 2, 3]


def test_recalculate_all_full_year(fake_board) -> None:
    """Without a stop request all twelve months are written."""

    run = recalculate_all(fake_board, "1", 2025, today=TODAY)
    assert not run.cancelled
    assert len(run.updates) == 12
    assert len(fake_board.created) == 12


def test_validate_board_reports_missing_columns() -> None:
    """Required billing columns are reported when absent."""

    report = validate_board([{"id": "name", "title": "Name", "type": "name"}, {"id": "c", "title": "CBM", "type": "numbers"}])
    assert not report["is_valid"]
    assert report["missing_columns"] == ["Date Received", "Rate per CBM/Day"]
    assert "Add missing columns: Date Received, Rate per CBM/Day" in report["recommendations"]
    assert "Add more monthly billing columns for future months" in report["recommendations"]


def test_validate_standard_board() -> None:
    """The standard board has every required column."""

    columns = STANDARD_COLUMNS + [{"id": f"m{i}", "title": f"{monthly_column_title(i, 2025)}"} for i in range(1, 13)]
    report = validate_board(columns)
    assert report["is_valid"]
    assert len(report["monthly_columns"]) == 12
    assert report["recommendations"] == []
    assert report["found_columns"]["CBM"]["id"] == "numbers5__1"


def test_update_bill_dates(fake_board) -> None:
    """Bill Date is filled with receipt date plus free days."""

    fake_board.columns.append({"id": "bill_date", "title": "Bill Date", "type": "date"})
    summary = update_bill_dates(fake_board, "1")
    assert summary.success_count == 3
    assert fake_board.cells[("201", "bill_date")] == "2025-07-20"


def test_update_bill_dates_skips_unreadable_items(fake_board) -> None:
    """One unreadable lot is counted as failed; the rest still get dates."""

    fake_board.columns.append({"id": "bill_date", "title": "Bill Date", "type": "date"})
    fake_board.items.append({"id": "999", "name": "Broken", "column_values": "garbage"})
    summary = update_bill_dates(fake_board, "1")
    assert summary.success_count == 3
    assert summary.fail_count == 1
    assert summary.failures[0].item_id == "999"
    assert ("999", "bill_date") not in fake_board.cells


def test_handle_update_event_rebills_item(fake_board) -> None:
    """A column change rebills the item for the current month."""

    event = {"type": "update_column_value", "boardId": 1, "pulseId": 101, "columnId": "numbers5__1"}
    outcome = handle_board_event(fake_board, event, today=date(2025, 7, 10))
    assert outcome["handled"]
    assert outcome["billableDays"] == 10
    column_id = fake_board.created[0]["id"]
    assert fake_board.cells[("101", column_id)] == "30.00"


def test_handle_event_ignores_billing_column_changes(fake_board) -> None:
    """Our own write-back does not trigger another write."""

    fake_board.columns.append({"id": "jul", "title": "July 2025 Billing", "type": "numbers"})
    event = {"type": "UPDATE_COLUMN_VALUE", "boardId": 1, "pulseId": 101, "columnId": "jul"}
    outcome = handle_board_event(fake_board, event, today=date(2025, 7, 10))
    assert not outcome["handled"]
    assert fake_board.writes == []


def test_handle_delete_and_unknown_events(fake_board) -> None:
    """Deletes are logged only; unknown events are ignored."""

    assert handle_board_event(fake_board, {"type": "DELETE_ITEM", "boardId": 1, "pulseId": 101})["reason"] == "item deleted"
    assert not handle_board_event(fake_board, {"type": "CREATE_UPDATE"})["handled"]
    assert fake_board.writes == []


def test_handle_flat_event_shape(fake_board) -> None:
    """eventType/itemId keys are read like type/pulseId."""

    event = {"eventType": "UPDATE_COLUMN_VALUE", "boardId": 1, "itemId": 101, "columnId": "numbers5__1"}
    outcome = handle_board_event(fake_board, event, today=date(2025, 7, 10))
    assert outcome["handled"]
    assert outcome["itemId"] == "101"
    assert outcome["billableDays"] == 10


def test_receipt_date_change_rewrites_bill_date(fake_board) -> None:
    """Changing Date Received or Free Days refreshes the Bill Date cell."""

    fake_board.columns.append({"id": "bill_date", "title": "Bill Date", "type": "date"})
    event = {"type": "UPDATE_COLUMN_VALUE", "boardId": 1, "pulseId": 201, "columnId": "numeric_mkqfs7n9"}
    outcome = handle_board_event(fake_board, event, today=date(2025, 7, 25))
    assert outcome["billDate"] == "2025-07-20"
    assert outcome["billDateWritten"] is True
    assert fake_board.cells[("201", "bill_date")] == "2025-07-20"


def test_other_column_change_leaves_bill_date(fake_board) -> None:
    """A CBM change rebills without touching Bill Date."""

    fake_board.columns.append({"id": "bill_date", "title": "Bill Date", "type": "date"})
    event = {"type": "UPDATE_COLUMN_VALUE", "boardId": 1, "pulseId": 201, "columnId": "numbers5__1"}
    outcome = handle_board_event(fake_board, event, today=date(2025, 7, 25))
    assert "billDate" not in outcome
    assert ("201", "bill_date") not in fake_board.cells
