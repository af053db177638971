#!/usr/bin/env python3
"""Monthly billing columns on the storage board.

Every calendar month has a numbers column titled "<Month> <Year> Billing".
This module finds (or creates) that column, writes each item's monthly amount
into it and keeps the supporting board columns tidy:

- update:          calculate one month and write it back
- recalculate-all: rewrite all twelve months of a year
- validate:        report which billing columns exist on a board
- bill-dates:      fill the Bill Date column with each lot's billing start
"""

from __future__ import annotations

import argparse
import calendar
import logging
import re
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from billing_engine import (
    COLUMN_TITLE_ALIASES,
    REQUIRED_FIELDS,
    STANDARD_COLUMN_IDS,
    BillingEngineError,
    BillingResult,
    BoardBilling,
    ItemProcessingError,
    aggregate_board,
    billing_start_date,
    build_column_map,
    calculate_billing_for_month,
    extract_storage_item,
    key,
    normalize_column_name,
    round2,
    utc_today,
)
from board_client import BoardApiError, BoardClient, client_from_env

logger = logging.getLogger("monthly_columns")

MONTHLY_COLUMN_TYPE = "numbers"
MONTHLY_COLUMN_SETTINGS = {"currency": "GBP", "precision": 2}
DEFAULT_WRITE_CONCURRENCY = 10
MIN_MONTHLY_COLUMNS = 12
BILL_DATE_TITLES = ["Bill Date", "Billing Start Date"]
BILL_DATE_SOURCE_FIELDS = ("date_received", "free_days")
EXISTING_COLUMN_MARKERS = ("already exists", "duplicate")

BOARD_EVENT_RECALCULATE = {"UPDATE_COLUMN_VALUE", "CREATE_ITEM", "UPDATE_ITEM"}
BOARD_EVENT_DELETE = "DELETE_ITEM"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ResolvedColumn:
    column_id: str
    title: str
    created: bool = False


@dataclass(frozen=True)
class ColumnNotFound:
    """No monthly column matches; returned, never raised."""

    month: int
    year: int
    expected_title: str
    available_titles: Tuple[str, ...] = ()


@dataclass
class WriteOutcome:
    item_id: str
    ok: bool
    value: str
    method: Optional[str] = None
    error: Optional[str] = None


@dataclass
class WriteSummary:
    success_count: int = 0
    fail_count: int = 0
    skipped_count: int = 0
    failures: List[WriteOutcome] = field(default_factory=list)

    def add(self, outcome: WriteOutcome) -> None:
        if outcome.ok:
            self.success_count += 1
        else:
            self.fail_count += 1
            self.failures.append(outcome)


@dataclass
class MonthlyColumnUpdate:
    board_id: str
    month: int
    year: int
    billing: BoardBilling
    column: Union[ResolvedColumn, ColumnNotFound]
    writes: WriteSummary = field(default_factory=WriteSummary)

    @property
    def column_found(self) -> bool:
        return isinstance(self.column, ResolvedColumn)


@dataclass
class RecalculationRun:
    board_id: str
    year: int
    updates: List[MonthlyColumnUpdate] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_amount(self) -> float:
        return sum(update.billing.total_amount for update in self.updates)


# ---------------------------------------------------------------------------
# Column resolution
# ---------------------------------------------------------------------------
def monthly_column_title(month: int, year: int) -> str:
    """E.g. 'July 2025 Billing'."""
    return f"{calendar.month_name[int(month)]} {int(year)} Billing"


def resolve_monthly_column(
    columns: Sequence[Mapping[str, Any]],
    month: int,
    year: int,
) -> Union[ResolvedColumn, ColumnNotFound]:
    """Find the billing column for a month.

    Tries, in order: the exact title, "<month> <year> billing", "<month> <year>",
    then any title holding both the month name (full or short) and the year.
    """
    expected = monthly_column_title(month, year)
    full_name = calendar.month_name[int(month)].lower()
    short_name = calendar.month_abbr[int(month)].lower()
    year_token = str(int(year))

    normalized = [
        (normalize_column_name(col.get("title", "")), key(col.get("id")), key(col.get("title")))
        for col in columns
    ]

    for _, column_id, title in normalized:
        if title == expected:
            return ResolvedColumn(column_id=column_id, title=title)

    candidates = [
        {f"{name}_{year_token}_billing" for name in (full_name, short_name)},
        {f"{name}_{year_token}" for name in (full_name, short_name)},
    ]
    for wanted in candidates:
        for norm, column_id, title in normalized:
            if norm in wanted:
                return ResolvedColumn(column_id=column_id, title=title)

    for norm, column_id, title in normalized:
        if year_token in norm and (full_name in norm or short_name in norm):
            return ResolvedColumn(column_id=column_id, title=title)

    return ColumnNotFound(
        month=int(month),
        year=int(year),
        expected_title=expected,
        available_titles=tuple(title for _, _, title in normalized),
    )


def ensure_monthly_column(
    client: BoardClient,
    board_id: str,
    month: int,
    year: int,
    columns: Optional[Sequence[Mapping[str, Any]]] = None,
) -> ResolvedColumn:
    """Resolve the month's column, creating it when missing."""
    if columns is None:
        columns = client.get_columns(board_id)
    found = resolve_monthly_column(columns, month, year)
    if isinstance(found, ResolvedColumn):
        return found

    title = found.expected_title
    try:
        created = client.create_column(board_id, title, MONTHLY_COLUMN_TYPE, MONTHLY_COLUMN_SETTINGS)
    except BoardApiError as exc:
        message = str(exc).lower()
        if not any(marker in message for marker in EXISTING_COLUMN_MARKERS):
            raise
        logger.warning("Column '%s' already exists on board %s, re-reading columns", title, board_id)
        again = resolve_monthly_column(client.get_columns(board_id), month, year)
        if isinstance(again, ResolvedColumn):
            return again
        raise
    return ResolvedColumn(column_id=key(created.get("id")), title=key(created.get("title")) or title, created=True)


# ---------------------------------------------------------------------------
# Write-back
# ---------------------------------------------------------------------------
def format_amount(amount: float) -> str:
    """Board value for an amount; zero is written as '0', never blank."""
    rounded = round2(amount)
    if rounded == 0:
        return "0"
    return f"{rounded:.2f}"


def write_value(client: BoardClient, board_id: str, item_id: str, column_id: str, value: str) -> WriteOutcome:
    """Set one cell, falling back to a multi-column update once."""
    try:
        client.update_column_value(board_id, item_id, column_id, value)
        return WriteOutcome(item_id=item_id, ok=True, value=value, method="simple")
    except BoardApiError as exc:
        logger.warning("Write to item %s failed, retrying as multi-column update: %s", item_id, exc)

    try:
        client.update_multiple_column_values(board_id, item_id, {column_id: value})
        return WriteOutcome(item_id=item_id, ok=True, value=value, method="multiple")
    except BoardApiError as exc:
        logger.error("Write to item %s failed: %s", item_id, exc)
        return WriteOutcome(item_id=item_id, ok=False, value=value, error=str(exc))


def write_amount(client: BoardClient, board_id: str, item_id: str, column_id: str, amount: float) -> WriteOutcome:
    return write_value(client, board_id, item_id, column_id, format_amount(amount))


def _write_all(
    client: BoardClient,
    board_id: str,
    column_id: str,
    values: Sequence[Tuple[str, str]],
    concurrency: int,
    summary: WriteSummary,
) -> WriteSummary:
    batch_size = max(1, int(concurrency))
    with ThreadPoolExecutor(max_workers=batch_size) as pool:
        for start in range(0, len(values), batch_size):
            batch = values[start : start + batch_size]
            futures = [
                pool.submit(write_value, client, board_id, item_id, column_id, value) for item_id, value in batch
            ]
            for future in futures:
                summary.add(future.result())
    return summary


def write_monthly_amounts(
    client: BoardClient,
    board_id: str,
    column_id: str,
    results: Iterable[BillingResult],
    concurrency: int = DEFAULT_WRITE_CONCURRENCY,
) -> WriteSummary:
    """Write every calculated amount into the monthly column.

    Items without the inputs needed for billing are skipped, not zeroed.
    """
    summary = WriteSummary()
    values: List[Tuple[str, str]] = []
    for result in results:
        if result.status == "missing_data":
            summary.skipped_count += 1
            continue
        values.append((result.item_id, format_amount(result.amount)))
    _write_all(client, board_id, column_id, values, concurrency, summary)
    logger.info(
        "Wrote %d value(s) to column %s on board %s: %d failed, %d skipped",
        summary.success_count,
        column_id,
        board_id,
        summary.fail_count,
        summary.skipped_count,
    )
    return summary


# ---------------------------------------------------------------------------
# Board operations
# ---------------------------------------------------------------------------
def update_monthly_column(
    client: BoardClient,
    board_id: str,
    month: int,
    year: int,
    today: Optional[date] = None,
    create_missing: bool = True,
    concurrency: int = DEFAULT_WRITE_CONCURRENCY,
) -> MonthlyColumnUpdate:
    """Calculate one month for the board and write it to the month's column."""
    columns = client.get_columns(board_id)
    items = client.get_items(board_id)
    billing = aggregate_board(
        items,
        month,
        year,
        today=today,
        column_map=build_column_map(columns),
        board_id=str(board_id),
    )

    column: Union[ResolvedColumn, ColumnNotFound]
    if create_missing:
        column = ensure_monthly_column(client, board_id, month, year, columns=columns)
    else:
        column = resolve_monthly_column(columns, month, year)

    update = MonthlyColumnUpdate(board_id=str(board_id), month=int(month), year=int(year), billing=billing, column=column)
    if isinstance(column, ColumnNotFound):
        logger.warning("No '%s' column on board %s; nothing written", column.expected_title, board_id)
        return update

    update.writes = write_monthly_amounts(client, board_id, column.column_id, billing.per_item, concurrency)
    return update


def recalculate_all(
    client: BoardClient,
    board_id: str,
    year: int,
    today: Optional[date] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> RecalculationRun:
    """Rewrite January through December; stop requests are honoured between months."""
    run = RecalculationRun(board_id=str(board_id), year=int(year))
    for month in range(1, 13):
        if should_stop is not None and should_stop():
            logger.warning("Recalculation of board %s stopped before %s %d", board_id, calendar.month_name[month], year)
            run.cancelled = True
            break
        run.updates.append(update_monthly_column(client, board_id, month, year, today=today))
    return run


def _find_column(columns: Sequence[Mapping[str, Any]], field_name: str) -> Optional[Mapping[str, Any]]:
    aliases = {normalize_column_name(alias) for alias in COLUMN_TITLE_ALIASES[field_name]}
    for column in columns:
        if normalize_column_name(column.get("title", "")) in aliases:
            return column
    standard_id = STANDARD_COLUMN_IDS.get(field_name)
    for column in columns:
        if standard_id and key(column.get("id")) == standard_id:
            return column
    return None


def validate_board(columns: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Report which billing columns a board has."""
    found: Dict[str, Dict[str, str]] = {}
    missing: List[str] = []
    for field_name, aliases in COLUMN_TITLE_ALIASES.items():
        column = _find_column(columns, field_name)
        if column is not None:
            found[aliases[0]] = {
                "id": key(column.get("id")),
                "title": key(column.get("title")),
                "type": key(column.get("type")),
            }
        elif field_name in REQUIRED_FIELDS:
            missing.append(aliases[0])

    monthly = [
        key(column.get("title"))
        for column in columns
        if "billing" in str(column.get("title", "")).lower()
        and re.search(r"\b20\d{2}\b", str(column.get("title", "")))
    ]

    recommendations: List[str] = []
    if missing:
        recommendations.append(f"Add missing columns: {', '.join(missing)}")
    if len(monthly) < MIN_MONTHLY_COLUMNS:
        recommendations.append("Add more monthly billing columns for future months")

    return {
        "is_valid": not missing,
        "found_columns": found,
        "missing_columns": missing,
        "monthly_columns": monthly,
        "total_columns": len(columns),
        "recommendations": recommendations,
    }


def _bill_date_column(columns: Sequence[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    wanted = {normalize_column_name(title) for title in BILL_DATE_TITLES}
    return next(
        (col for col in columns if normalize_column_name(col.get("title", "")) in wanted),
        None,
    )


def update_bill_dates(
    client: BoardClient,
    board_id: str,
    concurrency: int = DEFAULT_WRITE_CONCURRENCY,
) -> WriteSummary:
    """Write each lot's billing start date into the Bill Date column."""
    columns = client.get_columns(board_id)
    bill_date_column = _bill_date_column(columns)
    if bill_date_column is None:
        raise BillingEngineError(f"Board {board_id} has no {' or '.join(BILL_DATE_TITLES)} column")

    column_map = build_column_map(columns)
    summary = WriteSummary()
    values: List[Tuple[str, str]] = []
    for raw_item in client.get_items(board_id):
        try:
            item = extract_storage_item(raw_item, column_map)
        except ItemProcessingError as exc:
            item_id = key(raw_item.get("id")) if isinstance(raw_item, Mapping) else ""
            logger.warning("Skipping bill date for item %s: %s", item_id or "<unknown>", exc)
            summary.add(WriteOutcome(item_id=item_id, ok=False, value="", error=str(exc)))
            continue
        start = billing_start_date(item.date_received, item.free_days)
        if start is None:
            summary.skipped_count += 1
            continue
        values.append((item.id, start.isoformat()))

    _write_all(client, board_id, key(bill_date_column.get("id")), values, concurrency, summary)
    logger.info("Updated bill dates on board %s: %d written, %d failed", board_id, summary.success_count, summary.fail_count)
    return summary


def handle_board_event(client: BoardClient, event: Mapping[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    """React to a board webhook by rebilling the touched item for the current month.

    Accepts both the board's ``type``/``pulseId`` keys and the flat
    ``eventType``/``itemId`` form. A change to the receipt date or free days
    also rewrites the item's Bill Date when the board has that column.
    """
    event_type = key(event.get("type") or event.get("eventType")).upper()
    board_id = key(event.get("boardId"))
    item_id = key(event.get("pulseId") or event.get("itemId"))

    if event_type == BOARD_EVENT_DELETE:
        logger.info("Item %s deleted from board %s", item_id, board_id)
        return {"handled": False, "eventType": event_type, "reason": "item deleted"}
    if event_type not in BOARD_EVENT_RECALCULATE:
        logger.debug("Ignoring board event %s", event_type or "<none>")
        return {"handled": False, "eventType": event_type, "reason": "unsupported event"}
    if not board_id or not item_id:
        return {"handled": False, "eventType": event_type, "reason": "missing board or item id"}

    if today is None:
        today = utc_today()
    columns = client.get_columns(board_id)

    changed_column = key(event.get("columnId"))
    if changed_column:
        changed_title = next((key(col.get("title")) for col in columns if key(col.get("id")) == changed_column), "")
        if "billing" in changed_title.lower():
            # Our own write-back fires this event too.
            return {"handled": False, "eventType": event_type, "reason": "billing column change"}

    raw_item = client.get_item(board_id, item_id)
    if raw_item is None:
        logger.warning("Board event for unknown item %s on board %s", item_id, board_id)
        return {"handled": False, "eventType": event_type, "reason": "item not found"}

    column_map = build_column_map(columns)
    item = extract_storage_item(raw_item, column_map)
    result = calculate_billing_for_month(item, today.month, today.year, today=today)
    column = ensure_monthly_column(client, board_id, today.month, today.year, columns=columns)
    outcome = write_amount(client, board_id, item.id, column.column_id, result.amount)
    logger.info("Rebilled item %s for %s: %.2f", item.id, column.title, result.amount)

    response = {
        "handled": True,
        "eventType": event_type,
        "itemId": item.id,
        "amount": round2(result.amount),
        "billableDays": result.billable_days,
        "written": outcome.ok,
    }

    start_columns = {column_map.get(name) for name in BILL_DATE_SOURCE_FIELDS} - {None}
    bill_date_column = _bill_date_column(columns)
    if changed_column in start_columns and bill_date_column is not None:
        start = billing_start_date(item.date_received, item.free_days)
        if start is not None:
            bill_date = write_value(client, board_id, item.id, key(bill_date_column.get("id")), start.isoformat())
            logger.info("Bill date for item %s set to %s", item.id, start.isoformat())
            response["billDate"] = start.isoformat()
            response["billDateWritten"] = bill_date.ok
    return response


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Maintain monthly billing columns on a storage board.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    update = sub.add_parser("update", help="Calculate one month and write it to the board.")
    update.add_argument("--board-id", required=True)
    update.add_argument("--month", type=int, default=None, help="Calendar month 1-12 (default: current).")
    update.add_argument("--year", type=int, default=None, help="Year (default: current).")
    update.add_argument("--no-create", action="store_true", help="Do not create a missing month column.")

    recalc = sub.add_parser("recalculate-all", help="Rewrite every month of a year.")
    recalc.add_argument("--board-id", required=True)
    recalc.add_argument("--year", type=int, default=None, help="Year (default: current).")

    validate = sub.add_parser("validate", help="Report billing column presence.")
    validate.add_argument("--board-id", required=True)

    bill_dates = sub.add_parser("bill-dates", help="Fill the Bill Date column.")
    bill_dates.add_argument("--board-id", required=True)
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    today = utc_today()

    try:
        client = client_from_env()
        if args.command == "update":
            update = update_monthly_column(
                client,
                args.board_id,
                args.month or today.month,
                args.year or today.year,
                today=today,
                create_missing=not args.no_create,
            )
            if not update.column_found:
                return 2
            if update.writes.fail_count:
                logger.warning("%d write(s) failed", update.writes.fail_count)
        elif args.command == "recalculate-all":
            run = recalculate_all(client, args.board_id, args.year or today.year, today=today)
            logger.info("Recalculated %d month(s), total %.2f", len(run.updates), run.total_amount)
        elif args.command == "validate":
            report = validate_board(client.get_columns(args.board_id))
            for title, column in report["found_columns"].items():
                logger.info("Found %s -> %s (%s)", title, column["id"], column["type"])
            for title in report["missing_columns"]:
                logger.warning("Missing column: %s", title)
            for line in report["recommendations"]:
                logger.info("Recommendation: %s", line)
            return 0 if report["is_valid"] else 2
        elif args.command == "bill-dates":
            update_bill_dates(client, args.board_id)
    except (BillingEngineError, BoardApiError, ValueError) as exc:
        logger.error("%s", exc)
        return 2
    except Exception:
        logger.exception("Unexpected failure while updating board columns.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
