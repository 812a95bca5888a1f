# -*- coding: utf-8 -*-

# Request Gate
# Copyright (C) 2025 Request Gate contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""
FastAPI exception handlers for gate failures raised from dependencies.
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import Response

from reqgate.errors import GateFailure
from reqgate.gate import RequestGate, default_gate, rejecting_gate


def install_exception_handlers(app: FastAPI, gate: Optional[RequestGate] = None) -> None:
    """
    Routes GateFailure exceptions to the error handler of the gate that raised them.

    Needed for RequestGate.dependency(); handler-wrapping middlewares
    produce their responses directly.

    Args:
        app: FastAPI application
        gate: Fallback gate for failures no gate dependency claimed
            (default gate when None)
    """
    target = gate or default_gate()

    async def gate_failure_handler(request: Request, exc: Exception) -> Response:
        return (rejecting_gate(request) or target).reject(request, exc)

    app.add_exception_handler(GateFailure, gate_failure_handler)
