#!/usr/bin/env python3
"""Build monthly storage rental billing from the storage board.

Each board item is a storage lot. For a target month the engine:
1. Reads the lot's receipt date, free days, move-out date, CBM and rate columns.
2. Works out the billing start date (date received + free days).
3. Intersects [billing start, move-out or today] with the month window and
   counts the billable days, both endpoints inclusive.
4. Prices the lot at billable days x CBM x rate per CBM per day.
5. Write:
   - ./outputs/storage_billing_log/{YYYY.MM}_Storage_Billing.csv
   - ./outputs/customer_details/{Customer}/{Customer} - YYYY.MM.xlsx
"""

from __future__ import annotations

import argparse
import calendar
import json
import logging
import math
import os
import re
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

try:
    import pandas as pd
except ImportError as exc:  # pragma: no cover - import guard for runtime setup
    raise SystemExit(
        "Missing dependency: pandas/openpyxl. Install with: python3 -m pip install pandas openpyxl"
    ) from exc

try:
    import xlsxwriter  # noqa: F401
except ImportError as exc:  # pragma: no cover - import guard for runtime setup
    raise SystemExit(
        "Missing dependency: xlsxwriter. Install with: python3 -m pip install xlsxwriter"
    ) from exc

from board_client import BoardApiError, BoardClient, client_from_env


class BillingEngineError(Exception):
    """Raised when input data or configuration is invalid."""


class ItemProcessingError(BillingEngineError):
    """Raised when a single board item cannot be turned into a storage lot."""


logger = logging.getLogger("billing_engine")

DEFAULT_OUTPUTS_DIR = Path(os.getenv("BILLING_OUTPUTS_DIR", "outputs"))
BILLING_LOG_DIRNAME = "storage_billing_log"
CUSTOMER_DETAILS_DIRNAME = "customer_details"

# Column kinds drive how raw payloads are decoded.
FIELD_KINDS = {
    "date_received": "date",
    "free_days": "number",
    "cbm": "number",
    "rate": "number",
    "date_out": "date",
    "status": "label",
    "customer": "text",
    "customer_email": "text",
}

# Board columns are matched by title first; hand-made boards vary.
COLUMN_TITLE_ALIASES = {
    "date_received": ["Date Received", "Received Date", "Date In"],
    "free_days": ["Free Days", "Free Storage Days"],
    "cbm": ["CBM", "Volume CBM"],
    "rate": ["Rate per CBM/Day", "Rate per CBM per Day", "Rate/CBM/Day", "Rate"],
    "date_out": ["Date Out", "Scan Out Date", "Scanned Out Date"],
    "status": ["Status", "Scan Out"],
    "customer": ["Customer Name", "Customer"],
    "customer_email": ["Customer Email", "Email"],
}

# Column ids of the standard storage board, used when a title is not found.
STANDARD_COLUMN_IDS = {
    "date_received": "date__1",
    "free_days": "numeric_mkqfs7n9",
    "cbm": "numbers5__1",
    "rate": "numeric_mkqfs5t6",
    "date_out": "date0__1",
    "status": "status5__1",
}

REQUIRED_FIELDS = ["date_received", "cbm", "rate"]

PREFERRED_OUTPUT_COLUMNS = [
    "BILLING_MONTH",
    "ITEM_ID",
    "ITEM_NAME",
    "CUSTOMER",
    "DATE_RECEIVED",
    "FREE_DAYS",
    "BILLING_START_DATE",
    "DATE_OUT",
    "CBM",
    "RATE_PER_CBM_DAY",
    "effective_start",
    "effective_end",
    "billable_days",
    "amount",
    "calc_status",
]

CUSTOMER_DETAIL_INTEGER_COLUMNS = ["FREE_DAYS", "billable_days"]
CUSTOMER_DETAIL_FINANCIAL_COLUMNS = ["RATE_PER_CBM_DAY", "amount"]


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------
def normalize_column_name(column: Any) -> str:
    """Normalize a column name to lower snake_case."""
    raw = str(column).strip().lower()
    normalized = re.sub(r"[^a-z0-9]+", "_", raw)
    return normalized.strip("_")


def is_missing(value: Any) -> bool:
    """Null-like check that works across pandas/numpy/native types."""
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def key(value: Any) -> str:
    """String trim helper used for item and customer keys."""
    if is_missing(value):
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        numeric = float(value)
        if numeric.is_integer():
            return str(int(numeric))
    return str(value).strip()


def round2(value: Any) -> float:
    """Round to 2 decimals, half up."""
    number = parse_number(value)
    if number is None:
        return 0.0
    return float(Decimal(str(number)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def parse_number(value: Any) -> Optional[float]:
    """Coerce numeric/currency text to a finite float, or None."""
    if is_missing(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    s = str(value).replace(",", "").strip()
    s = s.lstrip("£$€").strip()
    if not s:
        return None
    try:
        number = float(s)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_date(value: Any) -> Optional[date]:
    """Parse board date forms (ISO date or datetime, M/D/YYYY, pandas Timestamp)."""
    if is_missing(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    s = str(value).strip()
    if not s or re.fullmatch(r"-?\d+(\.\d+)?", s):
        return None

    iso = re.match(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$", s)
    if iso:
        try:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        except ValueError:
            return None

    mdy = re.fullmatch(r"(\d{1,2})/(\d{1,2})/(\d{4})", s)
    if mdy:
        try:
            return date(int(mdy.group(3)), int(mdy.group(1)), int(mdy.group(2)))
        except ValueError:
            return None

    try:
        parsed = pd.to_datetime(s, errors="coerce")
    except (ValueError, OverflowError):
        return None
    if pd.isna(parsed):
        return None
    return parsed.date()


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def month_end(day: date) -> date:
    """Return last calendar day for the month containing the provided date."""
    if day.month == 12:
        first_next = date(day.year + 1, 1, 1)
    else:
        first_next = date(day.year, day.month + 1, 1)
    return first_next - timedelta(days=1)


def month_window(month: int, year: int) -> Tuple[date, date]:
    """First and last day of a calendar month (month is 1-12)."""
    if not 1 <= int(month) <= 12:
        raise ValueError(f"Month must be between 1 and 12, got {month}")
    first_day = date(int(year), int(month), 1)
    return first_day, month_end(first_day)


def month_label(month: int, year: int) -> str:
    """E.g. 'July 2025'."""
    return f"{calendar.month_name[int(month)]} {int(year)}"


def previous_month(today: date) -> Tuple[int, int]:
    """(month, year) of the month before today's."""
    last = today.replace(day=1) - timedelta(days=1)
    return last.month, last.year


def iter_months(start: date, end: date) -> Iterator[Tuple[int, int]]:
    """Yield (year, month) from start's month through end's month inclusive."""
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield year, month
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1


def sanitize_customer_name(name: Any) -> str:
    """Build filesystem-safe customer token for detail folders."""
    s = key(name)
    if not s:
        return "UnknownCustomer"
    s = s.replace("/", "").replace("\\", "")
    s = re.sub(r"\s+", "_", s)
    s = re.sub(r"[^A-Za-z0-9_.-]", "", s)
    return s or "UnknownCustomer"


def safe_customer_display_name(name: Any) -> str:
    """Build readable, filesystem-safe customer name for detail filenames."""
    s = key(name)
    if not s:
        return "Unknown Customer"
    s = s.replace("/", " ").replace("\\", " ")
    s = re.sub(r"[^A-Za-z0-9 ._-]", "", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s or "Unknown Customer"


# ---------------------------------------------------------------------------
# Column value extraction
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class DateValue:
    value: date


@dataclass(frozen=True)
class NumberValue:
    value: float


@dataclass(frozen=True)
class TextValue:
    value: str


@dataclass(frozen=True)
class Absent:
    def __bool__(self) -> bool:
        return False


ABSENT = Absent()

ColumnValue = Union[DateValue, NumberValue, TextValue, Absent]


def _decode_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except (ValueError, TypeError):
            return value
    return value


def _extract_date(raw: Any, text: Any) -> ColumnValue:
    candidates = [raw.get("date") if isinstance(raw, Mapping) else raw, text]
    for candidate in candidates:
        parsed = parse_date(candidate) if not isinstance(candidate, Mapping) else None
        if parsed is not None:
            return DateValue(parsed)
    return ABSENT


def _extract_number(raw: Any, text: Any) -> ColumnValue:
    candidates = [raw.get("number") if isinstance(raw, Mapping) else raw, text]
    for candidate in candidates:
        parsed = parse_number(candidate) if not isinstance(candidate, (Mapping, list)) else None
        if parsed is not None:
            return NumberValue(parsed)
    return ABSENT


def _extract_text(raw: Any, text: Any) -> ColumnValue:
    candidates: List[Any] = []
    if isinstance(raw, Mapping):
        label = raw.get("label")
        candidates.append(label.get("text") if isinstance(label, Mapping) else label)
        candidates.append(raw.get("text"))
    elif not isinstance(raw, list):
        candidates.append(raw)
    candidates.append(text)
    for candidate in candidates:
        value = key(candidate) if not isinstance(candidate, (Mapping, list)) else ""
        if value:
            return TextValue(value)
    return ABSENT


def extract_column_value(payload: Any, kind: str) -> ColumnValue:
    """Decode one raw column payload into a typed value.

    Accepts the board API shape ``{"id", "value", "text"}`` (value is a JSON
    string) as well as an already decoded value such as ``{"date": "2025-07-01"}``.
    Malformed input is reported as ABSENT, never raised.
    """
    if payload is None:
        return ABSENT
    if isinstance(payload, Mapping) and ("value" in payload or "text" in payload):
        raw = _decode_json(payload.get("value"))
        text = payload.get("text")
    else:
        raw = _decode_json(payload)
        text = None

    if kind == "date":
        return _extract_date(raw, text)
    if kind == "number":
        return _extract_number(raw, text)
    if kind in {"text", "label"}:
        return _extract_text(raw, text)
    raise ValueError(f"Unknown column kind: {kind}")


def as_date(value: ColumnValue) -> Optional[date]:
    return value.value if isinstance(value, DateValue) else None


def as_number(value: ColumnValue) -> Optional[float]:
    return value.value if isinstance(value, NumberValue) else None


def as_text(value: ColumnValue) -> Optional[str]:
    if isinstance(value, TextValue):
        return value.value
    if isinstance(value, NumberValue):
        return key(value.value)
    if isinstance(value, DateValue):
        return value.value.isoformat()
    return None


def build_column_map(columns: Iterable[Mapping[str, Any]]) -> Dict[str, str]:
    """Map storage item fields to board column ids by title aliases."""
    by_title: Dict[str, str] = {}
    for column in columns:
        title = normalize_column_name(column.get("title", ""))
        column_id = key(column.get("id"))
        if title and column_id and title not in by_title:
            by_title[title] = column_id

    column_map: Dict[str, str] = {}
    for field_name, aliases in COLUMN_TITLE_ALIASES.items():
        for alias in aliases:
            column_id = by_title.get(normalize_column_name(alias))
            if column_id:
                column_map[field_name] = column_id
                break
        else:
            if field_name in STANDARD_COLUMN_IDS:
                column_map[field_name] = STANDARD_COLUMN_IDS[field_name]
    return column_map


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
@dataclass
class StorageItem:
    """One storage lot (board row)."""

    id: str
    name: str
    customer: str = ""
    date_received: Optional[date] = None
    free_days: Optional[float] = None
    date_out: Optional[date] = None
    cbm: Optional[float] = None
    rate_per_cbm_per_day: Optional[float] = None
    status: Optional[str] = None
    customer_email: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.customer:
            self.customer = self.name


@dataclass
class BillingResult:
    item_id: str
    item_name: str
    customer: str
    month: int
    year: int
    billable_days: int = 0
    amount: float = 0.0
    effective_start: Optional[date] = None
    effective_end: Optional[date] = None
    billing_start: Optional[date] = None
    date_received: Optional[date] = None
    date_out: Optional[date] = None
    cbm: Optional[float] = None
    rate: Optional[float] = None
    free_days: Optional[float] = None
    status: str = "ok"

    def to_row(self) -> Dict[str, Any]:
        """Flat row for the billing log."""
        return {
            "BILLING_MONTH": f"{self.year:04d}.{self.month:02d}",
            "ITEM_ID": self.item_id,
            "ITEM_NAME": self.item_name,
            "CUSTOMER": self.customer,
            "DATE_RECEIVED": self.date_received.isoformat() if self.date_received else "",
            "FREE_DAYS": self.free_days if self.free_days is not None else 0,
            "BILLING_START_DATE": self.billing_start.isoformat() if self.billing_start else "",
            "DATE_OUT": self.date_out.isoformat() if self.date_out else "Active",
            "CBM": self.cbm if self.cbm is not None else 0,
            "RATE_PER_CBM_DAY": self.rate if self.rate is not None else 0,
            "effective_start": self.effective_start.isoformat() if self.effective_start else "",
            "effective_end": self.effective_end.isoformat() if self.effective_end else "",
            "billable_days": self.billable_days,
            "amount": round2(self.amount),
            "calc_status": self.status,
        }


@dataclass
class TotalBilling:
    item_id: str
    total_days: int = 0
    total_amount: float = 0.0
    months: List[BillingResult] = field(default_factory=list)


@dataclass
class ItemFailure:
    item_id: str
    item_name: str
    error: str


@dataclass
class BoardBilling:
    """Billing for every item on a board for one month."""

    month: int
    year: int
    board_id: Optional[str] = None
    per_item: List[BillingResult] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)

    @property
    def total_amount(self) -> float:
        return sum(result.amount for result in self.per_item)

    @property
    def item_count(self) -> int:
        return len(self.per_item)

    @property
    def billable_count(self) -> int:
        return sum(1 for result in self.per_item if result.billable_days > 0)

    @property
    def fail_count(self) -> int:
        return len(self.failures)

    @property
    def billing_period(self) -> str:
        return f"{self.year:04d}.{self.month:02d}"

    def by_customer(self) -> Dict[str, List[BillingResult]]:
        return group_by_customer(self.per_item)


def extract_storage_item(raw_item: Any, column_map: Optional[Mapping[str, str]] = None) -> StorageItem:
    """Turn a raw board item into a StorageItem.

    ``column_values`` may be the API list of ``{"id", "value", "text"}`` or a
    mapping of column id to decoded value.
    """
    if column_map is None:
        column_map = STANDARD_COLUMN_IDS
    if not isinstance(raw_item, Mapping):
        raise ItemProcessingError(f"Board item is not an object: {raw_item!r}")
    item_id = key(raw_item.get("id"))
    if not item_id:
        raise ItemProcessingError("Board item has no id")

    column_values = raw_item.get("column_values") or []
    if isinstance(column_values, Mapping):
        by_id = {str(col_id): payload for col_id, payload in column_values.items()}
    elif isinstance(column_values, list):
        by_id = {
            str(payload["id"]): payload
            for payload in column_values
            if isinstance(payload, Mapping) and payload.get("id")
        }
    else:
        raise ItemProcessingError(f"Item {item_id} has unreadable column values")

    values: Dict[str, ColumnValue] = {}
    for field_name, kind in FIELD_KINDS.items():
        column_id = column_map.get(field_name)
        values[field_name] = extract_column_value(by_id.get(column_id), kind) if column_id else ABSENT

    name = key(raw_item.get("name"))
    return StorageItem(
        id=item_id,
        name=name,
        customer=as_text(values["customer"]) or name,
        date_received=as_date(values["date_received"]),
        free_days=as_number(values["free_days"]),
        date_out=as_date(values["date_out"]),
        cbm=as_number(values["cbm"]),
        rate_per_cbm_per_day=as_number(values["rate"]),
        status=as_text(values["status"]),
        customer_email=as_text(values["customer_email"]),
    )


# ---------------------------------------------------------------------------
# Billing period calculator
# ---------------------------------------------------------------------------
def billing_start_date(date_received: Optional[date], free_days: Optional[float]) -> Optional[date]:
    """Date received plus free days; None without a receipt date."""
    if date_received is None:
        return None
    days = int(free_days or 0)
    if days < 0:
        # Negative free days are kept: they pull billing before receipt.
        logger.debug("Negative free days (%d) moves billing start before %s", days, date_received)
    return date_received + timedelta(days=days)


def calculate_billing_for_month(
    item: StorageItem,
    month: int,
    year: int,
    today: Optional[date] = None,
) -> BillingResult:
    """Billable days and amount for one storage lot in one calendar month.

    Both endpoints count. For the running month the window ends today unless
    the lot was already scanned out. Missing receipt date, CBM or rate gives a
    zero result with no effective window; inactive lots keep the computed
    window with zero days.
    """
    if today is None:
        today = utc_today()
    first_day, last_day = month_window(month, year)
    start = billing_start_date(item.date_received, item.free_days)

    result = BillingResult(
        item_id=item.id,
        item_name=item.name,
        customer=item.customer,
        month=int(month),
        year=int(year),
        billing_start=start,
        date_received=item.date_received,
        date_out=item.date_out,
        cbm=item.cbm,
        rate=item.rate_per_cbm_per_day,
        free_days=item.free_days,
    )

    if start is None or not item.cbm or not item.rate_per_cbm_per_day:
        result.status = "missing_data"
        return result

    effective_start = max(start, first_day)
    if item.date_out is not None and item.date_out <= last_day:
        effective_end = item.date_out
    elif (today.year, today.month) == (int(year), int(month)):
        effective_end = today
    else:
        effective_end = last_day
    result.effective_start = effective_start
    result.effective_end = effective_end

    if effective_start > last_day or (item.date_out is not None and item.date_out < first_day):
        result.status = "inactive"
        return result

    billable_days = max(0, (effective_end - effective_start).days + 1)
    if billable_days == 0:
        result.status = "inactive"
        return result

    result.billable_days = billable_days
    result.amount = billable_days * item.cbm * item.rate_per_cbm_per_day
    return result


def calculate_total_billing(item: StorageItem, today: Optional[date] = None) -> TotalBilling:
    """All-time billing, summed month by month from billing start to move-out (or today)."""
    if today is None:
        today = utc_today()
    total = TotalBilling(item_id=item.id)
    start = billing_start_date(item.date_received, item.free_days)
    if start is None or not item.cbm or not item.rate_per_cbm_per_day:
        return total

    end = item.date_out or today
    for year, month in iter_months(start, end):
        monthly = calculate_billing_for_month(item, month, year, today=today)
        total.months.append(monthly)
        total.total_days += monthly.billable_days
        total.total_amount += monthly.amount
    return total


# ---------------------------------------------------------------------------
# Board aggregation
# ---------------------------------------------------------------------------
def _item_identity(raw_item: Any) -> Tuple[str, str]:
    if isinstance(raw_item, StorageItem):
        return raw_item.id, raw_item.name
    if isinstance(raw_item, Mapping):
        return key(raw_item.get("id")), key(raw_item.get("name"))
    return "", ""


def group_by_customer(results: Iterable[BillingResult]) -> Dict[str, List[BillingResult]]:
    """Group billing results by customer, keeping board order."""
    grouped: Dict[str, List[BillingResult]] = {}
    for result in results:
        grouped.setdefault(key(result.customer) or "Unknown Customer", []).append(result)
    return grouped


def aggregate_board(
    items: Iterable[Any],
    month: int,
    year: int,
    today: Optional[date] = None,
    column_map: Optional[Mapping[str, str]] = None,
    board_id: Optional[str] = None,
) -> BoardBilling:
    """Bill every item for one month; a broken item is recorded and skipped."""
    if today is None:
        today = utc_today()
    month_window(month, year)
    billing = BoardBilling(month=int(month), year=int(year), board_id=board_id)

    for raw_item in items:
        try:
            if isinstance(raw_item, StorageItem):
                item = raw_item
            else:
                item = extract_storage_item(raw_item, column_map)
            result = calculate_billing_for_month(item, month, year, today=today)
        except Exception as exc:
            item_id, item_name = _item_identity(raw_item)
            logger.warning("Skipping item %s (%s): %s", item_id or "?", item_name or "?", exc)
            billing.failures.append(ItemFailure(item_id=item_id, item_name=item_name, error=str(exc)))
            continue
        billing.per_item.append(result)

    logger.info(
        "Calculated %s billing for %d item(s), %d billable, %d failed. Total: %.2f",
        month_label(month, year),
        billing.item_count,
        billing.billable_count,
        billing.fail_count,
        billing.total_amount,
    )
    return billing


def calculate_board_billing(
    client: BoardClient,
    board_id: str,
    month: int,
    year: int,
    today: Optional[date] = None,
) -> BoardBilling:
    """Fetch the board and aggregate one month."""
    columns = client.get_columns(board_id)
    column_map = build_column_map(columns)
    items = client.get_items(board_id)
    logger.info("Loaded %d item(s) from board %s", len(items), board_id)
    return aggregate_board(items, month, year, today=today, column_map=column_map, board_id=str(board_id))


def summarize_months(
    client: BoardClient,
    board_id: str,
    months: Sequence[Tuple[int, int]],
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Aggregate several (month, year) pairs and total them."""
    columns = client.get_columns(board_id)
    column_map = build_column_map(columns)
    items = client.get_items(board_id)
    results = [
        aggregate_board(items, month, year, today=today, column_map=column_map, board_id=str(board_id))
        for month, year in months
    ]
    return {
        "results": results,
        "total_billing": sum(r.total_amount for r in results),
        "total_items": sum(r.item_count for r in results),
        "month_count": len(results),
    }


# ---------------------------------------------------------------------------
# Output files
# ---------------------------------------------------------------------------
def order_columns(rows: List[Dict[str, Any]]) -> List[str]:
    """Build stable output column order with preferred columns first."""
    present = set()
    for row in rows:
        present.update(row.keys())

    ordered = [col for col in PREFERRED_OUTPUT_COLUMNS if col in present]
    extras = sorted(col for col in present if col not in ordered)
    return ordered + extras


def write_billing_outputs(billing: BoardBilling, outputs_dir: Path, logger: logging.Logger) -> Dict[str, Any]:
    """Write the billing log CSV and one detail workbook per customer."""
    rows = [result.to_row() for result in billing.per_item]
    master_df = pd.DataFrame(rows, columns=order_columns(rows) or PREFERRED_OUTPUT_COLUMNS)

    history_path = outputs_dir / BILLING_LOG_DIRNAME
    history_path.mkdir(parents=True, exist_ok=True)
    log_file_path = history_path / f"{billing.billing_period}_Storage_Billing.csv"
    master_df.to_csv(log_file_path, index=False)
    logger.info("Wrote storage billing log: %s", log_file_path)

    customer_dir = outputs_dir / CUSTOMER_DETAILS_DIRNAME
    detail_paths: List[Path] = []
    billable_df = master_df[pd.to_numeric(master_df["billable_days"], errors="coerce").fillna(0) > 0]
    for customer, group in billable_df.groupby("CUSTOMER", dropna=False):
        customer_folder_path = customer_dir / sanitize_customer_name(customer)
        customer_folder_path.mkdir(parents=True, exist_ok=True)
        file_path = customer_folder_path / f"{safe_customer_display_name(customer)} - {billing.billing_period}.xlsx"

        detail_df = group.copy()
        for col_name in CUSTOMER_DETAIL_INTEGER_COLUMNS + CUSTOMER_DETAIL_FINANCIAL_COLUMNS:
            detail_df[col_name] = pd.to_numeric(detail_df[col_name], errors="coerce").fillna(0)

        with pd.ExcelWriter(file_path, engine="xlsxwriter") as writer:
            sheet_name = "Storage Detail"
            detail_df.to_excel(writer, index=False, sheet_name=sheet_name)

            workbook = writer.book
            worksheet = writer.sheets[sheet_name]
            fmt_int = workbook.add_format({"num_format": "0"})
            fmt_money = workbook.add_format({"num_format": "#,##0.00"})

            for col_idx, col_name in enumerate(detail_df.columns):
                col_fmt = None
                if col_name in CUSTOMER_DETAIL_INTEGER_COLUMNS:
                    col_fmt = fmt_int
                elif col_name in CUSTOMER_DETAIL_FINANCIAL_COLUMNS:
                    col_fmt = fmt_money
                worksheet.set_column(col_idx, col_idx, 18, col_fmt)

        detail_paths.append(file_path)
        logger.info("Wrote customer detail file: %s", file_path)

    return {"billing_log": log_file_path, "customer_details": detail_paths}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    """CLI parser."""
    parser = argparse.ArgumentParser(
        description="Calculate monthly storage billing for a board and write the billing log."
    )
    parser.add_argument("--board-id", required=True, help="Storage board id.")
    parser.add_argument(
        "--month",
        type=int,
        default=None,
        help="Calendar month 1-12 (default: current month).",
    )
    parser.add_argument("--year", type=int, default=None, help="Year (default: current year).")
    parser.add_argument(
        "--today",
        default=None,
        metavar="YYYY-MM-DD",
        help="Evaluation date used as the end of the running month (default: today, UTC).",
    )
    parser.add_argument(
        "--outputs-dir",
        default=str(DEFAULT_OUTPUTS_DIR),
        help="Output directory for the billing log and customer detail files.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    """Program entrypoint."""
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    run_logger = logging.getLogger("billing_engine")

    today = parse_date(args.today) if args.today else utc_today()
    if today is None:
        run_logger.error("Invalid --today value: %s", args.today)
        return 2
    month = args.month or today.month
    year = args.year or today.year

    try:
        client = client_from_env()
        billing = calculate_board_billing(client, args.board_id, month, year, today=today)
        write_billing_outputs(billing, Path(args.outputs_dir).resolve(), run_logger)
    except (BillingEngineError, BoardApiError, ValueError) as exc:
        run_logger.error("%s", exc)
        return 2
    except Exception:
        run_logger.exception("Unexpected failure while building billing files.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
