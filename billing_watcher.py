#!/usr/bin/env python3
"""Month-end automation for storage billing boards.

Polls on an interval. Once the configured run day of a month is reached, bills
the previous month for every configured board: writes the monthly column on
the board, saves the billing log and customer detail files, and generates the
invoice import. Each board/month is recorded in a JSON ledger so it runs once.
Results are logged and optionally sent to Slack.

Usage:
    python3 billing_watcher.py --board-ids 123,456        # defaults (1-hour poll, day 1)
    python3 billing_watcher.py --once                     # single cycle, then exit
    python3 billing_watcher.py --dry-run                  # report what would run
    python3 billing_watcher.py --recalculate-year 2025    # rewrite a year, then exit
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import time
import traceback
import urllib.error
import urllib.request
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from billing_engine import (
    DEFAULT_OUTPUTS_DIR,
    BillingEngineError,
    month_label,
    previous_month,
    utc_today,
    write_billing_outputs,
)
from board_client import BoardApiError, BoardClient, client_from_env
from invoice_engine import generate_monthly_invoices, write_invoice_outputs
from monthly_columns import recalculate_all, update_monthly_column

DEFAULT_POLL_INTERVAL = 3600  # 1 hour
DEFAULT_RUN_DAY = 1  # day of month to bill the previous month

WATCHER_STATE_DIRNAME = "watcher_state"
LEDGER_FILENAME = "billing_runs.json"

logger = logging.getLogger("billing_watcher")


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------
_shutdown_requested = False


def _handle_signal(signum: int, frame: Any) -> None:
    global _shutdown_requested
    _shutdown_requested = True
    logger.info("Shutdown signal received (signal %d). Will exit after current cycle.", signum)


def _stop_requested() -> bool:
    return _shutdown_requested


# ---------------------------------------------------------------------------
# Ledger: one entry per board and billing month
# ---------------------------------------------------------------------------
def ledger_path_for(outputs_dir: Path) -> Path:
    return outputs_dir / WATCHER_STATE_DIRNAME / LEDGER_FILENAME


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def _load_ledger(ledger_path: Path) -> Dict[str, Any]:
    if not ledger_path.exists():
        return {"runs": {}}
    try:
        with ledger_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        logger.warning("Ledger file corrupt or unreadable. Starting fresh.")
        return {"runs": {}}
    if not isinstance(data, dict):
        return {"runs": {}}
    data.setdefault("runs", {})
    return data


def _save_ledger(ledger_path: Path, ledger: Dict[str, Any]) -> None:
    ledger_path.parent.mkdir(parents=True, exist_ok=True)
    tmp = ledger_path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(ledger, f, indent=2, sort_keys=True)
    tmp.replace(ledger_path)


def ledger_key(board_id: str, month: int, year: int) -> str:
    return f"{board_id}:{year:04d}-{month:02d}"


def _due_month(ledger: Dict[str, Any], board_id: str, run_day: int, today: date) -> Optional[Tuple[int, int]]:
    """Return (month, year) to bill if a run is due, else None.

    Due when today's day is on or after ``run_day`` and the previous month has
    no completed run for this board. Failed and partial runs are retried.
    """
    if today.day < run_day:
        return None
    month, year = previous_month(today)
    existing = ledger["runs"].get(ledger_key(board_id, month, year), {})
    if existing.get("status") == "completed":
        return None
    return month, year


# ---------------------------------------------------------------------------
# Slack notification
# ---------------------------------------------------------------------------
def _send_slack(webhook_url: str, record: Dict[str, Any]) -> Optional[str]:
    if not webhook_url or not webhook_url.strip():
        return None
    status_emoji = {"completed": "✅", "partial": "⚠️", "failed": "\U0001f6a8"}.get(record.get("status", ""), "❓")
    text = (
        f"{status_emoji} *Storage Billing Watcher* run `{record['run_id']}`\n"
        f"*Status:* {record.get('status', '').upper()}\n"
        f"*Board:* {record.get('board_id', 'N/A')}\n"
        f"*Billing period:* {record.get('billing_period') or 'Unknown'}\n"
        f"*Total billing:* {record.get('total_billing', 'N/A')}\n"
        f"*Board writes:* {record.get('success_count', 0)} ok, {record.get('fail_count', 0)} failed\n"
        f"*Invoices:* {record.get('invoice_count', 0)}"
    )
    req = urllib.request.Request(
        webhook_url.strip(),
        data=json.dumps({"text": text}).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        urllib.request.urlopen(req, timeout=15).read()
        return None
    except urllib.error.URLError as exc:
        return f"Slack notification failed: {exc}"


# ---------------------------------------------------------------------------
# Billing run execution
# ---------------------------------------------------------------------------
def _execute_billing_run(
    client: BoardClient,
    board_id: str,
    month: int,
    year: int,
    outputs_dir: Path,
    slack_webhook: str,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Bill one board for one month and return a record for the ledger."""
    run_id = f"{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}-{uuid4().hex[:8]}"
    record: Dict[str, Any] = {
        "run_id": run_id,
        "board_id": board_id,
        "billing_period": f"{year:04d}.{month:02d}",
        "created_at_utc": _utc_stamp(),
        "status": "running",
        "trigger": "watcher_schedule",
    }

    logger.info("=" * 60)
    logger.info("BILLING RUN STARTING  [%s]", run_id)
    logger.info("Board %s, %s", board_id, month_label(month, year))
    logger.info("=" * 60)

    try:
        update = update_monthly_column(client, board_id, month, year, today=today)
        billing_files = write_billing_outputs(update.billing, outputs_dir, logger)
        invoice_run = generate_monthly_invoices(update.billing, invoice_date=today)
        invoice_files = write_invoice_outputs(invoice_run, outputs_dir, logger)

        partial = update.writes.fail_count > 0 or update.billing.fail_count > 0
        record.update({
            "status": "partial" if partial else "completed",
            "completed_at_utc": _utc_stamp(),
            "total_billing": round(update.billing.total_amount, 2),
            "item_count": update.billing.item_count,
            "billable_count": update.billing.billable_count,
            "item_fail_count": update.billing.fail_count,
            "column_title": getattr(update.column, "title", ""),
            "success_count": update.writes.success_count,
            "fail_count": update.writes.fail_count,
            "skipped_count": update.writes.skipped_count,
            "invoice_count": len(invoice_run.invoices),
            "billing_log": str(billing_files["billing_log"]),
            "invoice_import": str(invoice_files["invoice_import"]),
        })

        logger.info("=" * 60)
        logger.info("BILLING RUN %s  [%s]", "PARTIAL" if partial else "COMPLETED", run_id)
        logger.info("Total billing: %.2f", update.billing.total_amount)
        logger.info("Board writes: %d ok, %d failed", update.writes.success_count, update.writes.fail_count)
        logger.info("Billing log: %s", billing_files["billing_log"])
        logger.info("Invoice import: %s", invoice_files["invoice_import"])
        logger.info("=" * 60)

    except Exception:
        tb = traceback.format_exc()
        record.update({
            "status": "failed",
            "completed_at_utc": _utc_stamp(),
            "error": tb,
        })
        logger.error("BILLING RUN FAILED  [%s]\n%s", run_id, tb)

    slack_err = _send_slack(slack_webhook, record)
    if slack_err:
        logger.warning(slack_err)
        record["slack_error"] = slack_err

    return record


def run_cycle(
    client: BoardClient,
    board_ids: List[str],
    outputs_dir: Path,
    ledger: Dict[str, Any],
    ledger_path: Path,
    run_day: int = DEFAULT_RUN_DAY,
    slack_webhook: str = "",
    dry_run: bool = False,
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """Run every due board once; returns the records written this cycle."""
    if today is None:
        today = utc_today()
    records: List[Dict[str, Any]] = []
    for board_id in board_ids:
        if _shutdown_requested:
            break
        due = _due_month(ledger, board_id, run_day, today)
        if due is None:
            continue
        month, year = due
        key = ledger_key(board_id, month, year)

        if dry_run:
            logger.info("[DRY RUN] Would bill board %s for %s", board_id, month_label(month, year))
            continue

        record = _execute_billing_run(client, board_id, month, year, outputs_dir, slack_webhook, today=today)
        ledger["runs"][key] = record
        _save_ledger(ledger_path, ledger)
        records.append(record)
    return records


# ---------------------------------------------------------------------------
# Core polling loop
# ---------------------------------------------------------------------------
def run_watcher(
    client: BoardClient,
    board_ids: List[str],
    outputs_dir: Path,
    poll_interval: int,
    slack_webhook: str,
    dry_run: bool = False,
    run_day: int = DEFAULT_RUN_DAY,
    once: bool = False,
) -> None:
    """Poll until shutdown, billing each board's previous month once it is due."""
    ledger_path = ledger_path_for(outputs_dir)
    ledger = _load_ledger(ledger_path)

    logger.info("=" * 60)
    logger.info("STORAGE BILLING WATCHER STARTED")
    logger.info("  Boards:        %s", ", ".join(board_ids))
    logger.info("  Outputs:       %s", outputs_dir)
    logger.info("  Run day:       %d", run_day)
    logger.info("  Poll interval: %d seconds (%d minutes)", poll_interval, poll_interval // 60)
    logger.info("  Slack:         %s", "configured" if slack_webhook else "not configured")
    logger.info("  Dry run:       %s", dry_run)
    logger.info("  Ledger:        %s", ledger_path)
    logger.info("  Runs so far:   %d", len(ledger["runs"]))
    logger.info("=" * 60)

    while not _shutdown_requested:
        try:
            run_cycle(
                client,
                board_ids,
                outputs_dir,
                ledger,
                ledger_path,
                run_day=run_day,
                slack_webhook=slack_webhook,
                dry_run=dry_run,
            )
        except Exception:
            logger.exception("Error during poll cycle. Will retry next cycle.")

        if once or _shutdown_requested:
            break

        logger.debug("Sleeping %d seconds until next poll...", poll_interval)
        wake_at = time.monotonic() + poll_interval
        while time.monotonic() < wake_at:
            if _shutdown_requested:
                break
            time.sleep(min(5, wake_at - time.monotonic()))

    logger.info("Watcher stopped.")


def run_recalculation(client: BoardClient, board_ids: List[str], year: int) -> bool:
    """Rewrite a full year per board; returns False if stopped early."""
    for board_id in board_ids:
        run = recalculate_all(client, board_id, year, should_stop=_stop_requested)
        logger.info(
            "Board %s: recalculated %d month(s) of %d, total %.2f",
            board_id,
            len(run.updates),
            year,
            run.total_amount,
        )
        if run.cancelled:
            return False
    return True


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def _split_board_ids(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bill storage boards automatically at month end."
    )
    parser.add_argument(
        "--board-ids",
        default=os.getenv("BILLING_BOARD_IDS", ""),
        help="Comma-separated board ids (or set BILLING_BOARD_IDS env var).",
    )
    parser.add_argument(
        "--outputs-dir",
        default=str(DEFAULT_OUTPUTS_DIR),
        help="Output directory for billing results and the watcher ledger.",
    )
    parser.add_argument(
        "--poll-interval",
        type=int,
        default=DEFAULT_POLL_INTERVAL,
        help="Seconds between checks (default: 3600 = 1 hour).",
    )
    parser.add_argument(
        "--run-day",
        type=int,
        default=DEFAULT_RUN_DAY,
        help=f"Day of month to bill the previous month (default: {DEFAULT_RUN_DAY}).",
    )
    parser.add_argument(
        "--slack-webhook",
        default=os.getenv("BILLING_SLACK_WEBHOOK", ""),
        help="Slack webhook URL for notifications (or set BILLING_SLACK_WEBHOOK env var).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report due runs but don't bill.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit.",
    )
    parser.add_argument(
        "--recalculate-year",
        type=int,
        default=None,
        help="Rewrite every month of this year on each board, then exit.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument(
        "--reset-ledger",
        action="store_true",
        help="Clear the billing runs ledger and start fresh.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s [watcher] %(message)s",
    )

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    outputs_dir = Path(args.outputs_dir).resolve()
    if args.reset_ledger:
        ledger_path = ledger_path_for(outputs_dir)
        if ledger_path.exists():
            ledger_path.unlink()
            logger.info("Ledger cleared.")

    board_ids = _split_board_ids(args.board_ids)
    if not board_ids:
        logger.error("No board ids configured (use --board-ids or BILLING_BOARD_IDS).")
        return 2
    if not 1 <= args.run_day <= 28:
        logger.error("--run-day must be between 1 and 28, got %d", args.run_day)
        return 2

    try:
        client = client_from_env()
        if args.recalculate_year is not None:
            return 0 if run_recalculation(client, board_ids, args.recalculate_year) else 1
        run_watcher(
            client=client,
            board_ids=board_ids,
            outputs_dir=outputs_dir,
            poll_interval=args.poll_interval,
            slack_webhook=args.slack_webhook,
            dry_run=args.dry_run,
            run_day=args.run_day,
            once=args.once,
        )
    except (BillingEngineError, BoardApiError) as exc:
        logger.error("%s", exc)
        return 2
    except Exception:
        logger.exception("Unexpected watcher failure.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
