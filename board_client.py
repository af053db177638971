#!/usr/bin/env python3
"""Thin GraphQL client for the work-management board API.

The client is an explicit object built from credentials; every billing
operation receives it as an argument. Transport errors, non-2xx responses and
GraphQL ``errors`` all surface as BoardApiError.
"""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

DEFAULT_API_URL = "https://api.monday.com/v2"
DEFAULT_API_VERSION = "2024-10"
DEFAULT_TIMEOUT = 30
ITEMS_PAGE_LIMIT = 500

logger = logging.getLogger("board_client")

ITEM_FIELDS = """
    id
    name
    column_values {
      id
      type
      value
      text
    }
"""

ITEMS_QUERY = """
query ($boardId: [ID!], $limit: Int!) {
  boards(ids: $boardId) {
    id
    items_page(limit: $limit) {
      cursor
      items { %s }
    }
  }
}
""" % ITEM_FIELDS

NEXT_ITEMS_QUERY = """
query ($cursor: String!, $limit: Int!) {
  next_items_page(cursor: $cursor, limit: $limit) {
    cursor
    items { %s }
  }
}
""" % ITEM_FIELDS

ITEM_QUERY = """
query ($itemId: [ID!]) {
  items(ids: $itemId) {
    %s
    board { id }
  }
}
""" % ITEM_FIELDS

COLUMNS_QUERY = """
query ($boardId: [ID!]) {
  boards(ids: $boardId) {
    id
    columns { id title type settings_str }
  }
}
"""

CREATE_COLUMN_MUTATION = """
mutation ($boardId: ID!, $title: String!, $columnType: ColumnType!, $defaults: JSON) {
  create_column(board_id: $boardId, title: $title, column_type: $columnType, defaults: $defaults) {
    id
    title
    type
  }
}
"""

CHANGE_SIMPLE_VALUE_MUTATION = """
mutation ($boardId: ID!, $itemId: ID!, $columnId: String!, $value: String) {
  change_simple_column_value(board_id: $boardId, item_id: $itemId, column_id: $columnId, value: $value) {
    id
  }
}
"""

CHANGE_MULTIPLE_VALUES_MUTATION = """
mutation ($boardId: ID!, $itemId: ID!, $values: JSON!) {
  change_multiple_column_values(board_id: $boardId, item_id: $itemId, column_values: $values) {
    id
  }
}
"""


class BoardApiError(Exception):
    """Raised when the board API cannot be reached or rejects a request."""


class BoardNotFound(BoardApiError):
    """Raised when a board id does not resolve to a board."""


class BoardClient:
    """GraphQL client bound to one API token."""

    def __init__(
        self,
        api_token: str,
        api_url: str = DEFAULT_API_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        if not api_token:
            raise BoardApiError("Board API token is required (set MONDAY_API_TOKEN).")
        self.api_token = api_token
        self.api_url = api_url
        self.api_version = api_version
        self.timeout = timeout

    def execute(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST one GraphQL document and return its ``data`` block."""
        payload = {"query": query, "variables": variables or {}}
        req = urllib.request.Request(
            self.api_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": self.api_token,
                "API-Version": self.api_version,
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise BoardApiError(f"Board API returned HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise BoardApiError(f"Board API request failed: {exc.reason}") from exc

        try:
            result = json.loads(body)
        except ValueError as exc:
            raise BoardApiError("Board API returned a non-JSON response") from exc

        errors = result.get("errors") or result.get("error_message")
        if errors:
            if isinstance(errors, list):
                message = "; ".join(str(err.get("message", err)) for err in errors if err)
            else:
                message = str(errors)
            raise BoardApiError(f"Board API error: {message}")
        return result.get("data") or {}

    def _board(self, data: Dict[str, Any], board_id: str) -> Dict[str, Any]:
        boards = data.get("boards") or []
        if not boards:
            raise BoardNotFound(f"Board {board_id} not found")
        return boards[0]

    # -- reads ---------------------------------------------------------------
    def get_items(self, board_id: str) -> List[Dict[str, Any]]:
        """All items on a board, following the items_page cursor."""
        data = self.execute(ITEMS_QUERY, {"boardId": [str(board_id)], "limit": ITEMS_PAGE_LIMIT})
        page = self._board(data, board_id).get("items_page") or {}
        items = list(page.get("items") or [])
        cursor = page.get("cursor")
        while cursor:
            data = self.execute(NEXT_ITEMS_QUERY, {"cursor": cursor, "limit": ITEMS_PAGE_LIMIT})
            page = data.get("next_items_page") or {}
            items.extend(page.get("items") or [])
            cursor = page.get("cursor")
        logger.debug("Fetched %d item(s) from board %s", len(items), board_id)
        return items

    def get_item(self, board_id: str, item_id: str) -> Optional[Dict[str, Any]]:
        """One item, or None when it does not exist on the board."""
        data = self.execute(ITEM_QUERY, {"itemId": [str(item_id)]})
        for item in data.get("items") or []:
            owner = (item.get("board") or {}).get("id")
            if owner is None or str(owner) == str(board_id):
                return item
        return None

    def get_columns(self, board_id: str) -> List[Dict[str, Any]]:
        data = self.execute(COLUMNS_QUERY, {"boardId": [str(board_id)]})
        return list(self._board(data, board_id).get("columns") or [])

    # -- writes --------------------------------------------------------------
    def create_column(
        self,
        board_id: str,
        title: str,
        column_type: str,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        variables = {
            "boardId": str(board_id),
            "title": title,
            "columnType": column_type,
            "defaults": json.dumps(settings) if settings else None,
        }
        data = self.execute(CREATE_COLUMN_MUTATION, variables)
        column = data.get("create_column")
        if not column:
            raise BoardApiError(f"Column '{title}' was not created on board {board_id}")
        logger.info("Created column '%s' (%s) on board %s", title, column.get("id"), board_id)
        return column

    def update_column_value(self, board_id: str, item_id: str, column_id: str, value: str) -> Dict[str, Any]:
        variables = {
            "boardId": str(board_id),
            "itemId": str(item_id),
            "columnId": column_id,
            "value": value,
        }
        return self.execute(CHANGE_SIMPLE_VALUE_MUTATION, variables)

    def update_multiple_column_values(
        self,
        board_id: str,
        item_id: str,
        values: Dict[str, Any],
    ) -> Dict[str, Any]:
        variables = {
            "boardId": str(board_id),
            "itemId": str(item_id),
            "values": json.dumps(values),
        }
        return self.execute(CHANGE_MULTIPLE_VALUES_MUTATION, variables)


def client_from_env() -> BoardClient:
    """Build a client from MONDAY_API_TOKEN / MONDAY_API_URL / MONDAY_API_VERSION."""
    return BoardClient(
        api_token=os.getenv("MONDAY_API_TOKEN", "").strip(),
        api_url=os.getenv("MONDAY_API_URL", DEFAULT_API_URL).strip() or DEFAULT_API_URL,
        api_version=os.getenv("MONDAY_API_VERSION", DEFAULT_API_VERSION).strip() or DEFAULT_API_VERSION,
    )
