#!/usr/bin/env python3
"""Monthly storage invoices built from board billing.

One invoice per customer with billable storage in the month. Lines are the
customer's lots with a positive amount; VAT is added at a flat 20%. Output is an
invoice import CSV plus a detail workbook per invoice. Rendering PDFs is left to
the accounting system that imports the CSV.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

import pandas as pd

from billing_engine import (
    DEFAULT_OUTPUTS_DIR,
    BillingEngineError,
    BillingResult,
    BoardBilling,
    calculate_board_billing,
    month_label,
    previous_month,
    round2,
    safe_customer_display_name,
    utc_today,
)
from board_client import BoardApiError, client_from_env

VAT_RATE = 0.20
PAYMENT_TERMS_DAYS = 30
INVOICE_DIRNAME = "invoices"

INVOICE_IMPORT_COLUMNS = [
    "Invoice Number",
    "Customer",
    "Invoice Date",
    "Due Date",
    "Billing Period",
    "Item",
    "Description",
    "Quantity",
    "Rate",
    "Amount",
]

logger = logging.getLogger("invoice_engine")


class NoBillableItems(BillingEngineError):
    """Raised when a customer has nothing to invoice for the month."""


@dataclass
class InvoiceLine:
    item_id: str
    description: str
    billable_days: int
    cbm: float
    rate: float
    amount: float


@dataclass
class Invoice:
    invoice_number: str
    customer: str
    billing_period: str
    invoice_date: date
    due_date: date
    lines: List[InvoiceLine]
    subtotal: float
    vat: float
    total: float
    customer_email: Optional[str] = None


@dataclass
class InvoiceRun:
    month: int
    year: int
    invoices: List[Invoice] = field(default_factory=list)
    skipped_customers: List[str] = field(default_factory=list)

    @property
    def total_amount(self) -> float:
        return sum(invoice.total for invoice in self.invoices)

    @property
    def period_key(self) -> str:
        return f"{self.year:04d}.{self.month:02d}"


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    """E.g. INV-20250801093000-1A2B3C4D."""
    if now is None:
        now = datetime.now(timezone.utc)
    return f"INV-{now.strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8].upper()}"


def invoice_totals(subtotal: float) -> Tuple[float, float]:
    """(vat, total) for a subtotal; VAT is rounded, the total is not re-rounded."""
    vat = round2(subtotal * VAT_RATE)
    return vat, subtotal + vat


def _line_description(result: BillingResult) -> str:
    return (
        f"Storage - {result.item_name or result.item_id}: "
        f"{result.billable_days} days x {result.cbm:g} CBM @ {result.rate:g}/CBM/day"
    )


def assemble_invoice(
    customer: str,
    results: Iterable[BillingResult],
    invoice_date: Optional[date] = None,
    customer_email: Optional[str] = None,
) -> Invoice:
    """Build one customer's invoice from their month of billing results."""
    results = list(results)
    lines = [
        InvoiceLine(
            item_id=result.item_id,
            description=_line_description(result),
            billable_days=result.billable_days,
            cbm=result.cbm or 0.0,
            rate=result.rate or 0.0,
            amount=result.amount,
        )
        for result in results
        if result.amount > 0
    ]
    if not lines:
        raise NoBillableItems(f"No billable storage for {customer}")

    if invoice_date is None:
        invoice_date = utc_today()
    subtotal = sum(line.amount for line in lines)
    vat, total = invoice_totals(subtotal)
    first = results[0]
    return Invoice(
        invoice_number=generate_invoice_number(),
        customer=customer,
        billing_period=month_label(first.month, first.year),
        invoice_date=invoice_date,
        due_date=invoice_date + timedelta(days=PAYMENT_TERMS_DAYS),
        lines=lines,
        subtotal=subtotal,
        vat=vat,
        total=total,
        customer_email=customer_email,
    )


def generate_monthly_invoices(
    billing: BoardBilling,
    invoice_date: Optional[date] = None,
    customer_emails: Optional[Mapping[str, str]] = None,
) -> InvoiceRun:
    """One invoice per customer; customers with nothing billable are skipped."""
    run = InvoiceRun(month=billing.month, year=billing.year)
    emails = customer_emails or {}
    for customer, results in billing.by_customer().items():
        try:
            invoice = assemble_invoice(customer, results, invoice_date=invoice_date, customer_email=emails.get(customer))
        except NoBillableItems:
            logger.info("No billable storage for %s in %s", customer, month_label(billing.month, billing.year))
            run.skipped_customers.append(customer)
            continue
        run.invoices.append(invoice)

    logger.info(
        "Generated %d invoice(s) for %s, %d customer(s) skipped. Total: %.2f",
        len(run.invoices),
        month_label(billing.month, billing.year),
        len(run.skipped_customers),
        run.total_amount,
    )
    return run


def _import_rows(invoice: Invoice) -> List[Dict[str, Any]]:
    base = {
        "Invoice Number": invoice.invoice_number,
        "Customer": invoice.customer,
        "Invoice Date": invoice.invoice_date.strftime("%m/%d/%Y"),
        "Due Date": invoice.due_date.strftime("%m/%d/%Y"),
        "Billing Period": invoice.billing_period,
    }
    rows = [
        {
            **base,
            "Item": "Storage",
            "Description": line.description,
            "Quantity": line.billable_days,
            "Rate": round2(line.cbm * line.rate),
            "Amount": round2(line.amount),
        }
        for line in invoice.lines
    ]
    rows.append(
        {
            **base,
            "Item": "VAT",
            "Description": f"VAT @ {VAT_RATE:.0%}",
            "Quantity": 1,
            "Rate": invoice.vat,
            "Amount": invoice.vat,
        }
    )
    return rows


def write_invoice_outputs(run: InvoiceRun, outputs_dir: Path, logger: logging.Logger) -> Dict[str, Any]:
    """Write the invoice import CSV and one detail workbook per invoice."""
    invoice_dir = outputs_dir / INVOICE_DIRNAME / run.period_key
    invoice_dir.mkdir(parents=True, exist_ok=True)

    rows: List[Dict[str, Any]] = []
    for invoice in run.invoices:
        rows.extend(_import_rows(invoice))
    import_path = invoice_dir / f"{run.period_key}_Invoice_Import.csv"
    pd.DataFrame(rows, columns=INVOICE_IMPORT_COLUMNS).to_csv(import_path, index=False)
    logger.info("Wrote invoice import CSV: %s (%d lines)", import_path, len(rows))

    detail_paths: List[Path] = []
    for invoice in run.invoices:
        file_path = invoice_dir / f"{invoice.invoice_number} - {safe_customer_display_name(invoice.customer)}.xlsx"
        lines_df = pd.DataFrame(
            [
                {
                    "Item ID": line.item_id,
                    "Description": line.description,
                    "Billable Days": line.billable_days,
                    "CBM": line.cbm,
                    "Rate per CBM/Day": line.rate,
                    "Amount": round2(line.amount),
                }
                for line in invoice.lines
            ]
        )
        summary_df = pd.DataFrame(
            [
                {"Field": "Invoice Number", "Value": invoice.invoice_number},
                {"Field": "Customer", "Value": invoice.customer},
                {"Field": "Billing Period", "Value": invoice.billing_period},
                {"Field": "Invoice Date", "Value": invoice.invoice_date.isoformat()},
                {"Field": "Due Date", "Value": invoice.due_date.isoformat()},
                {"Field": "Subtotal", "Value": round2(invoice.subtotal)},
                {"Field": "VAT", "Value": invoice.vat},
                {"Field": "Total", "Value": round2(invoice.total)},
            ]
        )

        with pd.ExcelWriter(file_path, engine="xlsxwriter") as writer:
            summary_df.to_excel(writer, index=False, sheet_name="Invoice")
            lines_df.to_excel(writer, index=False, sheet_name="Lines")

            workbook = writer.book
            fmt_int = workbook.add_format({"num_format": "0"})
            fmt_money = workbook.add_format({"num_format": "#,##0.00"})
            writer.sheets["Invoice"].set_column(0, 1, 24)
            worksheet = writer.sheets["Lines"]
            for col_idx, col_name in enumerate(lines_df.columns):
                col_fmt = None
                if col_name == "Billable Days":
                    col_fmt = fmt_int
                elif col_name in ("Rate per CBM/Day", "Amount"):
                    col_fmt = fmt_money
                worksheet.set_column(col_idx, col_idx, 40 if col_name == "Description" else 18, col_fmt)

        detail_paths.append(file_path)
        logger.info("Wrote invoice detail file: %s", file_path)

    return {"invoice_import": import_path, "invoice_details": detail_paths}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate monthly storage invoices for a board.")
    parser.add_argument("--board-id", required=True, help="Storage board id.")
    parser.add_argument("--month", type=int, default=None, help="Calendar month 1-12 (default: last month).")
    parser.add_argument("--year", type=int, default=None, help="Year (default: year of last month).")
    parser.add_argument(
        "--outputs-dir",
        default=str(DEFAULT_OUTPUTS_DIR),
        help="Output directory for invoice files.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    run_logger = logging.getLogger("invoice_engine")

    today = utc_today()
    default_month, default_year = previous_month(today)
    month = args.month or default_month
    year = args.year or (default_year if args.month is None else today.year)

    try:
        client = client_from_env()
        billing = calculate_board_billing(client, args.board_id, month, year, today=today)
        run = generate_monthly_invoices(billing, invoice_date=today)
        write_invoice_outputs(run, Path(args.outputs_dir).resolve(), run_logger)
    except (BillingEngineError, BoardApiError, ValueError) as exc:
        run_logger.error("%s", exc)
        return 2
    except Exception:
        run_logger.exception("Unexpected failure while generating invoices.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
