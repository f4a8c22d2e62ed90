"""Test helper functions."""

import io
import json
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock


def make_query(data: Any = None, error: Optional[Exception] = None) -> MagicMock:
    """Mock a chained Supabase query builder whose execute() returns ``data``.

    Every builder method returns the same mock, so any chain of
    select/eq/in_/order/limit/... ends in the same awaitable execute().
    """
    query = MagicMock()
    for method in (
        "select", "insert", "update", "delete", "eq", "in_", "ilike",
        "order", "limit", "is_",
    ):
        getattr(query, method).return_value = query
    query.not_ = query
    if error is not None:
        query.execute = AsyncMock(side_effect=error)
    else:
        query.execute = AsyncMock(return_value=MagicMock(data=data))
    return query


def make_supabase_client(tables: Optional[Dict[str, MagicMock]] = None) -> MagicMock:
    """Mock async Supabase client routing table() calls to per-table queries."""
    tables = tables or {}
    client = MagicMock()
    client.table = MagicMock(side_effect=lambda name: tables.setdefault(name, make_query([])))
    client.rpc = MagicMock(return_value=make_query([]))
    return client


def create_vercel_request(query: Optional[Dict[str, str]] = None, body: Any = None) -> Dict[str, Any]:
    """Create a Vercel request object for testing."""
    return {
        "method": "POST",
        "path": "/api/maintenance/reconcile",
        "headers": {"content-type": "application/json"},
        "body": json.dumps(body) if isinstance(body, dict) else body,
        "query": query or {},
    }


def make_http_handler(handler_cls, body: Any = None):
    """Instantiate a BaseHTTPRequestHandler subclass without a socket.

    The request body (dict, str or bytes) is readable from ``rfile`` and the
    response is captured in ``wfile``; status and headers are Mocks.
    """
    if isinstance(body, dict):
        body = json.dumps(body)
    if isinstance(body, str):
        body = body.encode("utf-8")
    body = body or b""

    handler = handler_cls.__new__(handler_cls)
    handler.headers = {"Content-Length": str(len(body)), "Content-Type": "application/json"}
    handler.rfile = io.BytesIO(body)
    handler.wfile = io.BytesIO()
    handler.send_response = MagicMock()
    handler.send_header = MagicMock()
    handler.end_headers = MagicMock()
    return handler


def read_http_response(handler) -> tuple[int, Any]:
    """Return (status_code, parsed JSON body) written by a handler."""
    status = handler.send_response.call_args[0][0]
    return status, json.loads(handler.wfile.getvalue().decode("utf-8"))
