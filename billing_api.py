#!/usr/bin/env python3
"""HTTP service for the storage billing board app.

Routes mirror the board app's calls. Requests and responses use the app's wire
format: camelCase keys and zero-based months (0 = January). Every success is
``{"success": true, ...}``; failures are ``{"error": ..., "message": ...}``.

Run:
    python3 billing_api.py --port 3000
"""

from __future__ import annotations

import argparse
import hmac
import logging
import os
import sys
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from billing_engine import (
    BillingEngineError,
    BillingResult,
    BoardBilling,
    build_column_map,
    calculate_billing_for_month,
    calculate_board_billing,
    calculate_total_billing,
    extract_storage_item,
    key,
    month_label,
    previous_month,
    round2,
    summarize_months,
    utc_today,
)
from board_client import BoardApiError, BoardClient, BoardNotFound, client_from_env
from invoice_engine import Invoice, generate_monthly_invoices
from monthly_columns import (
    ColumnNotFound,
    handle_board_event,
    recalculate_all,
    update_bill_dates,
    update_monthly_column,
    validate_board,
)

logger = logging.getLogger("billing_api")

AVAILABLE_MONTHS_BACK = 12
AVAILABLE_MONTHS_FORWARD = 12
MIN_YEAR = 1
MAX_YEAR = 9999


class RequestError(Exception):
    """Client-side error carried to the response envelope."""

    def __init__(self, status_code: int, error: str, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.message = message
        self.extra = extra


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------
class BoardRequest(BaseModel):
    boardId: Optional[Union[int, str]] = None


class MonthRef(BaseModel):
    month: Optional[int] = None
    year: Optional[int] = None


class MonthRequest(BoardRequest, MonthRef):
    pass


class ItemRequest(MonthRequest):
    itemId: Optional[Union[int, str]] = None


class SummaryRequest(BoardRequest):
    months: Optional[List[MonthRef]] = None


class ColumnUpdateRequest(MonthRequest):
    createMissing: bool = True


class RecalculateRequest(BoardRequest):
    year: Optional[int] = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
def get_board_client() -> BoardClient:
    return client_from_env()


def get_today() -> date:
    return utc_today()


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------
def _board_id(payload: BoardRequest) -> str:
    board_id = key(payload.boardId)
    if not board_id:
        raise RequestError(400, "Board ID is required", "Please provide a boardId")
    return board_id


def _year(year: Optional[int], default: int) -> int:
    if year is None:
        return default
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise RequestError(400, "Invalid year", f"year must be between {MIN_YEAR} and {MAX_YEAR}")
    return year


def _target_month(payload: MonthRef, default: Tuple[int, int]) -> Tuple[int, int]:
    """(month 1-12, year) from a zero-based wire month."""
    if payload.month is None:
        month = default[0]
    elif 0 <= payload.month <= 11:
        month = payload.month + 1
    else:
        raise RequestError(400, "Invalid month", "month must be between 0 (January) and 11 (December)")
    return month, _year(payload.year, default[1])


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def result_to_dict(result: BillingResult) -> Dict[str, Any]:
    return {
        "itemId": result.item_id,
        "itemName": result.item_name,
        "customer": result.customer,
        "month": result.month - 1,
        "year": result.year,
        "billableDays": result.billable_days,
        "amount": round2(result.amount),
        "effectiveStart": _iso(result.effective_start),
        "effectiveEnd": _iso(result.effective_end),
        "billingStartDate": _iso(result.billing_start),
        "dateReceived": _iso(result.date_received),
        "dateOut": _iso(result.date_out),
        "cbm": result.cbm,
        "rate": result.rate,
        "freeDays": result.free_days,
        "status": result.status,
    }


def billing_to_dict(billing: BoardBilling) -> Dict[str, Any]:
    return {
        "boardId": billing.board_id,
        "month": billing.month - 1,
        "year": billing.year,
        "monthName": month_label(billing.month, billing.year),
        "results": [result_to_dict(result) for result in billing.per_item],
        "totalBilling": round2(billing.total_amount),
        "itemCount": billing.item_count,
        "billableCount": billing.billable_count,
        "failCount": billing.fail_count,
        "failures": [
            {"itemId": failure.item_id, "itemName": failure.item_name, "error": failure.error}
            for failure in billing.failures
        ],
    }


def invoice_to_dict(invoice: Invoice) -> Dict[str, Any]:
    return {
        "invoiceNumber": invoice.invoice_number,
        "customer": invoice.customer,
        "customerEmail": invoice.customer_email,
        "billingPeriod": invoice.billing_period,
        "invoiceDate": invoice.invoice_date.isoformat(),
        "dueDate": invoice.due_date.isoformat(),
        "lines": [
            {
                "itemId": line.item_id,
                "description": line.description,
                "billableDays": line.billable_days,
                "amount": round2(line.amount),
            }
            for line in invoice.lines
        ],
        "subtotal": round2(invoice.subtotal),
        "vat": invoice.vat,
        "total": round2(invoice.total),
    }


def _monthly_billing_response(billing: BoardBilling) -> Dict[str, Any]:
    return {
        "success": True,
        "message": f"Billing calculated for {month_label(billing.month, billing.year)}",
        **billing_to_dict(billing),
    }


# ---------------------------------------------------------------------------
# Billing routes
# ---------------------------------------------------------------------------
billing_router = APIRouter(prefix="/billing", tags=["billing"])


@billing_router.post("/calculate-monthly")
def calculate_monthly(
    payload: MonthRequest,
    client: BoardClient = Depends(get_board_client),
    today: date = Depends(get_today),
):
    board_id = _board_id(payload)
    month, year = _target_month(payload, (today.month, today.year))
    billing = calculate_board_billing(client, board_id, month, year, today=today)
    return _monthly_billing_response(billing)


@billing_router.post("/calculate-current-month")
def calculate_current_month(
    payload: BoardRequest,
    client: BoardClient = Depends(get_board_client),
    today: date = Depends(get_today),
):
    board_id = _board_id(payload)
    billing = calculate_board_billing(client, board_id, today.month, today.year, today=today)
    return _monthly_billing_response(billing)


@billing_router.post("/calculate-last-month")
def calculate_last_month(
    payload: BoardRequest,
    client: BoardClient = Depends(get_board_client),
    today: date = Depends(get_today),
):
    board_id = _board_id(payload)
    month, year = previous_month(today)
    billing = calculate_board_billing(client, board_id, month, year, today=today)
    return _monthly_billing_response(billing)


@billing_router.post("/calculate-item")
def calculate_item(
    payload: ItemRequest,
    client: BoardClient = Depends(get_board_client),
    today: date = Depends(get_today),
):
    board_id = _board_id(payload)
    item_id = key(payload.itemId)
    if not item_id:
        raise RequestError(400, "Item ID is required", "Please provide an itemId")
    month, year = _target_month(payload, (today.month, today.year))

    raw_item = client.get_item(board_id, item_id)
    if raw_item is None:
        raise RequestError(404, "Item not found", f"Item {item_id} was not found on board {board_id}")
    item = extract_storage_item(raw_item, build_column_map(client.get_columns(board_id)))
    result = calculate_billing_for_month(item, month, year, today=today)
    total = calculate_total_billing(item, today=today)
    return {
        "success": True,
        "message": f"Billing calculated for item {item.id}",
        "result": result_to_dict(result),
        "totalBilling": {
            "totalDays": total.total_days,
            "totalAmount": round2(total.total_amount),
            "monthCount": len(total.months),
        },
    }


@billing_router.post("/summary-multiple-months")
def summary_multiple_months(
    payload: SummaryRequest,
    client: BoardClient = Depends(get_board_client),
    today: date = Depends(get_today),
):
    board_id = _board_id(payload)
    if not payload.months:
        raise RequestError(400, "Months are required", "Please provide a non-empty months list")
    months: List[Tuple[int, int]] = []
    for entry in payload.months:
        if entry.month is None:
            raise RequestError(400, "Invalid month", "Each entry needs a month and year")
        months.append(_target_month(entry, (today.month, today.year)))

    summary = summarize_months(client, board_id, months, today=today)
    return {
        "success": True,
        "message": f"Billing summarized for {summary['month_count']} month(s)",
        "results": [billing_to_dict(billing) for billing in summary["results"]],
        "totalBilling": round2(summary["total_billing"]),
        "totalItems": summary["total_items"],
        "monthCount": summary["month_count"],
    }


@billing_router.post("/update-monthly-column")
def update_monthly_column_route(
    payload: ColumnUpdateRequest,
    client: BoardClient = Depends(get_board_client),
    today: date = Depends(get_today),
):
    board_id = _board_id(payload)
    month, year = _target_month(payload, (today.month, today.year))
    create_missing = payload.createMissing

    update = update_monthly_column(client, board_id, month, year, today=today, create_missing=create_missing)
    if isinstance(update.column, ColumnNotFound):
        raise RequestError(
            404,
            "Column not found",
            f"No '{update.column.expected_title}' column on board {board_id}",
            expectedTitle=update.column.expected_title,
        )
    return {
        "success": True,
        "message": f"Updated {update.column.title}",
        "columnId": update.column.column_id,
        "columnTitle": update.column.title,
        "columnCreated": update.column.created,
        "successCount": update.writes.success_count,
        "failCount": update.writes.fail_count,
        "skipped": update.writes.skipped_count,
        "totalBilling": round2(update.billing.total_amount),
        "failures": [{"itemId": f.item_id, "error": f.error} for f in update.writes.failures],
    }


@billing_router.post("/recalculate-all")
def recalculate_all_route(
    payload: RecalculateRequest,
    client: BoardClient = Depends(get_board_client),
    today: date = Depends(get_today),
):
    board_id = _board_id(payload)
    year = _year(payload.year, today.year)
    run = recalculate_all(client, board_id, year, today=today)
    return {
        "success": True,
        "message": f"Recalculated {len(run.updates)} month(s) of {year}",
        "year": year,
        "months": [
            {
                "month": update.month - 1,
                "monthName": month_label(update.month, update.year),
                "totalBilling": round2(update.billing.total_amount),
                "successCount": update.writes.success_count,
                "failCount": update.writes.fail_count,
            }
            for update in run.updates
        ],
        "totalBilling": round2(run.total_amount),
        "cancelled": run.cancelled,
    }


@billing_router.post("/validate-board")
def validate_board_route(
    payload: BoardRequest,
    client: BoardClient = Depends(get_board_client),
):
    board_id = _board_id(payload)
    report = validate_board(client.get_columns(board_id))
    return {
        "success": True,
        "message": "Board is valid" if report["is_valid"] else "Board is missing required columns",
        "isValid": report["is_valid"],
        "foundColumns": report["found_columns"],
        "missingColumns": report["missing_columns"],
        "monthlyColumns": report["monthly_columns"],
        "totalColumns": report["total_columns"],
        "recommendations": report["recommendations"],
    }


@billing_router.post("/update-bill-dates")
def update_bill_dates_route(
    payload: BoardRequest,
    client: BoardClient = Depends(get_board_client),
):
    board_id = _board_id(payload)
    summary = update_bill_dates(client, board_id)
    return {
        "success": True,
        "message": f"Updated bill dates for {summary.success_count} item(s)",
        "successCount": summary.success_count,
        "failCount": summary.fail_count,
        "skipped": summary.skipped_count,
    }


@billing_router.get("/available-months")
def available_months(today: date = Depends(get_today)):
    months = []
    base = today.year * 12 + (today.month - 1)
    for offset in range(-AVAILABLE_MONTHS_BACK, AVAILABLE_MONTHS_FORWARD + 1):
        year, month_index = divmod(base + offset, 12)
        months.append(
            {
                "month": month_index,
                "year": year,
                "label": month_label(month_index + 1, year),
                "isCurrent": offset == 0,
            }
        )
    return {"success": True, "months": months}


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------
invoices_router = APIRouter(prefix="/invoices", tags=["invoices"])


@invoices_router.post("/generate-monthly")
def generate_monthly(
    payload: MonthRequest,
    client: BoardClient = Depends(get_board_client),
    today: date = Depends(get_today),
):
    board_id = _board_id(payload)
    month, year = _target_month(payload, previous_month(today))
    billing = calculate_board_billing(client, board_id, month, year, today=today)
    run = generate_monthly_invoices(billing, invoice_date=today)
    return {
        "success": True,
        "message": f"Generated {len(run.invoices)} invoice(s) for {month_label(month, year)}",
        "invoices": [invoice_to_dict(invoice) for invoice in run.invoices],
        "skippedCustomers": run.skipped_customers,
        "totalAmount": round2(run.total_amount),
    }


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------
webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@webhooks_router.post("/monday")
def board_webhook(
    payload: Dict[str, Any] = Body(default={}),  # board payloads are open-ended
    signature: Optional[str] = Header(default=None, alias="x-monday-signature"),
    client: BoardClient = Depends(get_board_client),
    today: date = Depends(get_today),
):
    if "challenge" in payload:
        return {"challenge": payload["challenge"]}

    secret = os.getenv("WEBHOOK_SECRET", "").strip()
    if secret and not hmac.compare_digest(signature or "", secret):
        raise RequestError(401, "Unauthorized", "Invalid webhook signature")

    event = payload.get("event")
    if event is None and (payload.get("type") or payload.get("eventType")):
        event = payload
    if not isinstance(event, Mapping):
        raise RequestError(400, "Invalid webhook", "Webhook payload has no event")
    outcome = handle_board_event(client, event, today=today)
    return {"success": True, **outcome}


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
app = FastAPI(title="Storage Billing")
app.include_router(billing_router)
app.include_router(invoices_router)
app.include_router(webhooks_router)


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.exception_handler(RequestError)
async def request_error_handler(request: Request, exc: RequestError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, **exc.extra},
    )


@app.exception_handler(BoardNotFound)
async def board_not_found_handler(request: Request, exc: BoardNotFound):
    return JSONResponse(status_code=404, content={"error": "Board not found", "message": str(exc)})


@app.exception_handler(BoardApiError)
async def board_api_error_handler(request: Request, exc: BoardApiError):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Board API error", "message": str(exc)})


@app.exception_handler(BillingEngineError)
async def billing_error_handler(request: Request, exc: BillingEngineError):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Billing failed", "message": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = []
    for error in exc.errors():
        field_path = ".".join(str(part) for part in error.get("loc", ()) if part != "body") or "body"
        details.append(f"{field_path}: {error.get('msg', '')}")
    return JSONResponse(status_code=400, content={"error": "Invalid request", "message": "; ".join(details)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "message": str(exc)})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Serve the storage billing HTTP API.")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "3000")))
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
