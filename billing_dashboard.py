#!/usr/bin/env python3
"""Storage Billing Dashboard: read-only view of billing runs.

Shows the files written by the billing engine, invoice engine and month-end
watcher. No uploads, no manual triggers.

    streamlit run billing_dashboard.py
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st
from openpyxl import load_workbook

from billing_engine import (
    BILLING_LOG_DIRNAME,
    CUSTOMER_DETAILS_DIRNAME,
    DEFAULT_OUTPUTS_DIR,
)
from billing_watcher import ledger_path_for
from invoice_engine import INVOICE_DIRNAME

OUTPUTS_DIR = DEFAULT_OUTPUTS_DIR
BILLING_LOG_DIR = OUTPUTS_DIR / BILLING_LOG_DIRNAME
CUSTOMER_DETAILS_DIR = OUTPUTS_DIR / CUSTOMER_DETAILS_DIRNAME
INVOICE_DIR = OUTPUTS_DIR / INVOICE_DIRNAME
WATCHER_LEDGER = ledger_path_for(OUTPUTS_DIR)

logger = logging.getLogger("billing_dashboard")


# ---------------------------------------------------------------------------
# Data loaders
# ---------------------------------------------------------------------------
def find_billing_logs(log_dir: Path = BILLING_LOG_DIR) -> List[Path]:
    """Billing log CSVs, newest period first."""
    if not log_dir.exists():
        return []
    return sorted(log_dir.glob("*_Storage_Billing.csv"), reverse=True)


def billing_period_from_log(log_path: Path) -> str:
    stem = log_path.stem
    if "_" in stem:
        return stem.split("_")[0]
    return "Unknown"


def load_billing_log(log_path: Path) -> pd.DataFrame:
    df = pd.read_csv(log_path)
    for col in ["billable_days", "amount", "CBM", "RATE_PER_CBM_DAY"]:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0)
    return df


def customer_totals(df: pd.DataFrame) -> pd.DataFrame:
    """Per-customer lots, billable days and amount, largest amount first."""
    if df.empty or "CUSTOMER" not in df.columns:
        return pd.DataFrame(columns=["Customer", "Lots", "Billable Days", "Amount"])
    grouped = (
        df.groupby("CUSTOMER", dropna=False)
        .agg(Lots=("ITEM_ID", "count"), BillableDays=("billable_days", "sum"), Amount=("amount", "sum"))
        .reset_index()
        .rename(columns={"CUSTOMER": "Customer", "BillableDays": "Billable Days"})
    )
    grouped["Amount"] = grouped["Amount"].round(2)
    return grouped.sort_values("Amount", ascending=False, kind="stable").reset_index(drop=True)


def read_detail_workbook(path: Path) -> List[Dict[str, Any]]:
    """Rows of a customer detail workbook's first sheet."""
    wb = load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        rows = list(ws.iter_rows(values_only=True))
    finally:
        wb.close()
    if not rows:
        return []
    headers = [str(h) for h in rows[0]]
    out: List[Dict[str, Any]] = []
    for values in rows[1:]:
        row = {headers[idx]: values[idx] for idx in range(min(len(headers), len(values)))}
        if any(v is not None and str(v).strip() for v in row.values()):
            out.append(row)
    return out


def load_watcher_ledger(ledger_path: Path = WATCHER_LEDGER) -> Dict[str, Any]:
    if not ledger_path.exists():
        return {}
    try:
        with ledger_path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Could not read watcher ledger %s: %s", ledger_path, exc)
        return {}


def ledger_rows(ledger: Dict[str, Any]) -> List[Dict[str, Any]]:
    rows = []
    for run_key, info in sorted(ledger.get("runs", {}).items(), reverse=True):
        rows.append({
            "Board / Period": run_key,
            "Status": info.get("status", ""),
            "Run ID": info.get("run_id", ""),
            "Total Billing": info.get("total_billing", ""),
            "Board Writes OK": info.get("success_count", ""),
            "Board Writes Failed": info.get("fail_count", ""),
            "Invoices": info.get("invoice_count", ""),
            "Completed At": info.get("completed_at_utc", info.get("created_at_utc", "")),
        })
    return rows


def _zip_customer_details(period: str) -> Optional[bytes]:
    if not CUSTOMER_DETAILS_DIR.exists():
        return None
    files = [
        p for p in CUSTOMER_DETAILS_DIR.rglob(f"* - {period}.xlsx")
        if p.is_file() and not p.name.startswith("~$")
    ]
    if not files:
        return None
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for file_path in files:
            archive.write(file_path, arcname=file_path.relative_to(CUSTOMER_DETAILS_DIR))
    buf.seek(0)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# UI
# ---------------------------------------------------------------------------
def _render_summary_metrics(df: pd.DataFrame) -> None:
    total_billed = float(df["amount"].sum()) if "amount" in df.columns else 0.0
    lots = len(df)
    billable = int((df["billable_days"] > 0).sum()) if "billable_days" in df.columns else 0
    customers = df["CUSTOMER"].nunique() if "CUSTOMER" in df.columns else 0

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Total Billed", f"£{total_billed:,.2f}")
    col2.metric("Customers", f"{customers}")
    col3.metric("Storage Lots", f"{lots:,}")
    col4.metric("Billable Lots", f"{billable:,}")


def page_overview() -> None:
    logs = find_billing_logs()
    if not logs:
        st.info("No billing runs found yet. The watcher writes outputs here after each month-end run.")
        return

    selected_name = st.selectbox("Billing period", options=[p.name for p in logs])
    log_path = next(p for p in logs if p.name == selected_name)
    period = billing_period_from_log(log_path)
    df = load_billing_log(log_path)

    st.markdown(f"### {period}")
    _render_summary_metrics(df)

    st.markdown("---")
    st.markdown("### By Customer")
    totals = customer_totals(df)
    st.dataframe(
        totals.style.format({"Amount": "£{:,.2f}"}),
        use_container_width=True,
        hide_index=True,
    )

    st.markdown("---")
    st.markdown("### Storage Lots")
    st.dataframe(df, use_container_width=True, hide_index=True)

    st.markdown("---")
    st.markdown("### Customer Detail")
    detail_files = sorted(CUSTOMER_DETAILS_DIR.rglob(f"* - {period}.xlsx")) if CUSTOMER_DETAILS_DIR.exists() else []
    if detail_files:
        detail_name = st.selectbox("Customer file", options=[p.name for p in detail_files])
        detail_path = next(p for p in detail_files if p.name == detail_name)
        st.dataframe(pd.DataFrame(read_detail_workbook(detail_path)), use_container_width=True, hide_index=True)
    else:
        st.info("No customer detail files for this period.")

    st.markdown("---")
    st.markdown("### Downloads")
    cols = st.columns(2)
    with cols[0]:
        st.download_button(
            "Billing Log CSV",
            data=log_path.read_bytes(),
            file_name=log_path.name,
            mime="text/csv",
            key="overview_log",
            use_container_width=True,
        )
    with cols[1]:
        details_zip = _zip_customer_details(period)
        if details_zip:
            st.download_button(
                "Customer Details (ZIP)",
                data=details_zip,
                file_name=f"{period}_customer_details.zip",
                mime="application/zip",
                key="overview_details",
                use_container_width=True,
            )


def page_invoices() -> None:
    imports = sorted(INVOICE_DIR.glob("*/*_Invoice_Import.csv"), reverse=True) if INVOICE_DIR.exists() else []
    if not imports:
        st.info("No invoice imports found yet.")
        st.code("python3 invoice_engine.py --board-id <board id> --month 7 --year 2025", language="bash")
        return

    latest = imports[0]
    invoice_df = pd.read_csv(latest)
    invoice_count = invoice_df["Invoice Number"].nunique() if "Invoice Number" in invoice_df.columns else 0
    grand_total = pd.to_numeric(invoice_df.get("Amount", pd.Series(dtype=float)), errors="coerce").fillna(0).sum()

    st.caption(f"Period: {latest.parent.name}")
    col1, col2 = st.columns(2)
    col1.metric("Invoices", f"{invoice_count}")
    col2.metric("Total incl. VAT", f"£{grand_total:,.2f}")
    st.dataframe(invoice_df, use_container_width=True, hide_index=True)

    st.download_button(
        "Download Invoice Import CSV",
        data=latest.read_bytes(),
        file_name=latest.name,
        mime="text/csv",
        key="dl_invoice_import",
    )

    if len(imports) > 1:
        with st.expander("All invoice imports"):
            for f in imports:
                st.markdown(f"- `{f.parent.name}/{f.name}`")


def page_watcher_status() -> None:
    st.markdown("### Month-End Runs")
    rows = ledger_rows(load_watcher_ledger())
    if not rows:
        st.info("No month-end runs recorded yet.")
    else:
        st.dataframe(pd.DataFrame(rows), use_container_width=True, hide_index=True)

    st.markdown("---")
    st.markdown("### Watcher Configuration")
    st.markdown(f"- **Outputs:** `{OUTPUTS_DIR}`")
    st.markdown(f"- **Ledger:** `{WATCHER_LEDGER}`")


def main() -> None:
    st.set_page_config(
        page_title="Storage Billing Dashboard",
        page_icon="\U0001f4e6",
        layout="wide",
    )

    st.title("Storage Billing Dashboard")
    st.caption("Month-end storage billing results.")

    tab_overview, tab_invoices, tab_watcher = st.tabs([
        "Billing",
        "Invoices",
        "Watcher",
    ])

    with tab_overview:
        page_overview()

    with tab_invoices:
        page_invoices()

    with tab_watcher:
        page_watcher_status()


if __name__ == "__main__":
    main()
