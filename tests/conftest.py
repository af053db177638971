import json
import os
import sys
import threading
from typing import Any, Callable, Dict, List, Optional

# Ensure project root is on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest

from board_client import BoardApiError

STANDARD_COLUMNS = [
    {"id": "name", "title": "Name", "type": "name"},
    {"id": "date__1", "title": "Date Received", "type": "date"},
    {"id": "numeric_mkqfs7n9", "title": "Free Days", "type": "numbers"},
    {"id": "numbers5__1", "title": "CBM", "type": "numbers"},
    {"id": "numeric_mkqfs5t6", "title": "Rate per CBM/Day", "type": "numbers"},
    {"id": "date0__1", "title": "Date Out", "type": "date"},
    {"id": "status5__1", "title": "Status", "type": "status"},
    {"id": "text_customer", "title": "Customer Name", "type": "text"},
]


def build_item(
    item_id: str,
    name: str,
    received: Optional[str] = None,
    cbm: Any = None,
    rate: Any = None,
    free_days: Any = None,
    date_out: Optional[str] = None,
    customer: Optional[str] = None,
) -> Dict[str, Any]:
    """Raw board item in the API's column_values shape."""
    column_values: List[Dict[str, Any]] = []
    if received is not None:
        column_values.append({"id": "date__1", "value": json.dumps({"date": received}), "text": received})
    if cbm is not None:
        column_values.append({"id": "numbers5__1", "value": json.dumps(str(cbm)), "text": str(cbm)})
    if rate is not None:
        column_values.append({"id": "numeric_mkqfs5t6", "value": json.dumps(str(rate)), "text": str(rate)})
    if free_days is not None:
        column_values.append({"id": "numeric_mkqfs7n9", "value": json.dumps(str(free_days)), "text": str(free_days)})
    if date_out is not None:
        column_values.append({"id": "date0__1", "value": json.dumps({"date": date_out}), "text": date_out})
        column_values.append({"id": "status5__1", "value": json.dumps({"index": 1}), "text": "Scanned Out"})
    if customer is not None:
        column_values.append({"id": "text_customer", "value": json.dumps(customer), "text": customer})
    return {"id": item_id, "name": name, "column_values": column_values}


class FakeBoardClient:
    """In-memory board with the same methods as BoardClient."""

    def __init__(self, columns: Optional[List[Dict[str, Any]]] = None, items: Optional[List[Dict[str, Any]]] = None) -> None:
        self.columns = [dict(col) for col in (columns if columns is not None else STANDARD_COLUMNS)]
        self.items = list(items or [])
        self.cells: Dict[tuple, str] = {}
        self.writes: List[tuple] = []
        self.created: List[Dict[str, Any]] = []
        self.fail_simple: set = set()
        self.fail_multiple: set = set()
        self.create_error: Optional[str] = None
        self.missing_boards: set = set()
        self._lock = threading.Lock()

    def _check_board(self, board_id: str) -> None:
        if str(board_id) in self.missing_boards:
            from board_client import BoardNotFound

            raise BoardNotFound(f"Board {board_id} not found")

    def get_columns(self, board_id: str) -> List[Dict[str, Any]]:
        self._check_board(board_id)
        return [dict(col) for col in self.columns]

    def get_items(self, board_id: str) -> List[Dict[str, Any]]:
        self._check_board(board_id)
        return list(self.items)

    def get_item(self, board_id: str, item_id: str) -> Optional[Dict[str, Any]]:
        self._check_board(board_id)
        return next((item for item in self.items if str(item.get("id")) == str(item_id)), None)

    def create_column(self, board_id: str, title: str, column_type: str, settings: Any = None) -> Dict[str, Any]:
        if self.create_error:
            raise BoardApiError(self.create_error)
        column = {"id": f"numeric_new_{len(self.created) + 1}", "title": title, "type": column_type}
        self.columns.append(column)
        self.created.append(column)
        return column

    def update_column_value(self, board_id: str, item_id: str, column_id: str, value: str) -> Dict[str, Any]:
        if item_id in self.fail_simple:
            raise BoardApiError("simple write rejected")
        with self._lock:
            self.cells[(item_id, column_id)] = value
            self.writes.append(("simple", item_id, column_id, value))
        return {"change_simple_column_value": {"id": item_id}}

    def update_multiple_column_values(self, board_id: str, item_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        if item_id in self.fail_multiple:
            raise BoardApiError("multi write rejected")
        with self._lock:
            for column_id, value in values.items():
                self.cells[(item_id, column_id)] = value
                self.writes.append(("multiple", item_id, column_id, value))
        return {"change_multiple_column_values": {"id": item_id}}


@pytest.fixture
def make_item() -> Callable[..., Dict[str, Any]]:
    """Factory for raw board items."""

    return build_item


@pytest.fixture
def fake_board() -> FakeBoardClient:
    """Board with the standard storage columns and three lots.

    Acme has two lots, Globex one; one Acme lot is scanned out on 2025-07-10.
    """

    return FakeBoardClient(
        items=[
            build_item("101", "Pallets A", received="2025-07-01", cbm=2, rate=1.5, customer="Acme"),
            build_item("102", "Boxes B", received="2025-06-20", cbm=1, rate=2, date_out="2025-07-10", customer="Acme"),
            build_item("201", "Crates C", received="2025-07-15", cbm=3, rate=1, free_days=5, customer="Globex"),
        ]
    )
