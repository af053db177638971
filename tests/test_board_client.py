"""Tests for :mod:`board_client` request handling."""

import io
import json
import urllib.error
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

import board_client
from board_client import BoardApiError, BoardClient, BoardNotFound, client_from_env


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


@pytest.fixture
def responses(monkeypatch) -> SimpleNamespace:
    """Queue of GraphQL responses plus the requests that were sent."""

    queue: List[Dict[str, Any]] = []
    sent: List[Dict[str, Any]] = []

    def fake_urlopen(req, timeout=None):
        sent.append({"body": json.loads(req.data.decode("utf-8")), "headers": dict(req.header_items())})
        return _Response(json.dumps(queue.pop(0)).encode("utf-8"))

    monkeypatch.setattr(board_client.urllib.request, "urlopen", fake_urlopen)
    return SimpleNamespace(queue=queue, sent=sent)


def test_token_required() -> None:
    """A client without a token is refused."""

    with pytest.raises(BoardApiError):
        BoardClient("")


def test_client_from_env(monkeypatch) -> None:
    """Credentials come from the environment."""

    monkeypatch.setenv("MONDAY_API_TOKEN", "tok")
    monkeypatch.setenv("MONDAY_API_URL", "https://example.test/v2")
    client = client_from_env()
    assert client.api_token == "tok"
    assert client.api_url == "https://example.test/v2"


def test_get_items_follows_cursor(responses) -> None:
    """Items are collected across pages."""

    responses.queue.append({"data": {"boards": [{"id": "1", "items_page": {"cursor": "c1", "items": [{"id": "a"}]}}]}})
    responses.queue.append({"data": {"next_items_page": {"cursor": None, "items": [{"id": "b"}]}}})
    items = BoardClient("tok").get_items("1")
    assert [item["id"] for item in items] == ["a", "b"]
    assert responses.sent[1]["body"]["variables"]["cursor"] == "c1"
    assert responses.sent[0]["headers"]["Authorization"] == "tok"


def test_graphql_errors_raise(responses) -> None:
    """GraphQL errors become BoardApiError."""

    responses.queue.append({"errors": [{"message": "Column not found"}]})
    with pytest.raises(BoardApiError, match="Column not found"):
        BoardClient("tok").update_column_value("1", "2", "col", "5.00")


def test_missing_board(responses) -> None:
    """An empty boards list is BoardNotFound."""

    responses.queue.append({"data": {"boards": []}})
    with pytest.raises(BoardNotFound):
        BoardClient("tok").get_columns("1")


def test_multiple_values_are_json_encoded(responses) -> None:
    """Multi-column updates send column values as a JSON string."""

    responses.queue.append({"data": {"change_multiple_column_values": {"id": "2"}}})
    BoardClient("tok").update_multiple_column_values("1", "2", {"col": "5.00"})
    assert json.loads(responses.sent[0]["body"]["variables"]["values"]) == {"col": "5.00"}


def test_transport_error(monkeypatch) -> None:
    """Network failures become BoardApiError."""

    def broken(req, timeout=None):
        raise urllib.error.URLError("unreachable")

    monkeypatch.setattr(board_client.urllib.request, "urlopen", broken)
    with pytest.raises(BoardApiError, match="unreachable"):
        BoardClient("tok").get_columns("1")
