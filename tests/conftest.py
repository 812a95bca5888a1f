# -*- coding: utf-8 -*-

"""
Shared fixtures for Request Gate tests.
Schemas used across test modules live in tests/schemas.py.
"""

from typing import Dict, Optional

import pytest
from fastapi import FastAPI
from starlette.requests import Request

from reqgate import default_gate
from reqgate.policy import default_error_handler
from reqgate.rules import PydanticRuleEngine


@pytest.fixture(autouse=True)
def reset_default_gate():
    """
    Restores the default gate's collaborators after each test.
    Tests replacing the error handler or rule engine must not leak into others.
    """
    gate = default_gate()
    engine = gate.rule_engine
    handler = gate.error_handler
    gate.set_error_handler(default_error_handler)
    gate.set_rule_engine(PydanticRuleEngine())
    yield
    gate.set_error_handler(handler)
    gate.set_rule_engine(engine)


@pytest.fixture
def make_request():
    """
    Factory for bare Starlette requests (no app, no routing).

    Usage:
        request = make_request(body=b'{"id": 1}', headers={"content-type": "application/json"})
    """
    def _make(
        body: bytes = b"",
        query: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
        path_params: Optional[Dict[str, object]] = None,
        method: str = "POST",
        disconnect: bool = False,
    ) -> Request:
        scope = {
            "type": "http",
            "method": method,
            "scheme": "http",
            "server": ("testserver", 80),
            "path": "/",
            "raw_path": b"/",
            "query_string": query,
            "headers": [
                (key.lower().encode("latin-1"), value.encode("latin-1"))
                for key, value in (headers or {}).items()
            ],
            "path_params": path_params or {},
        }

        async def receive():
            if disconnect:
                return {"type": "http.disconnect"}
            return {"type": "http.request", "body": body, "more_body": False}

        return Request(scope, receive)

    return _make


@pytest.fixture
def app():
    """Empty FastAPI application; tests register their own routes."""
    return FastAPI()
