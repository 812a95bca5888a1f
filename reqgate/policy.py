# -*- coding: utf-8 -*-

# Request Gate
# Copyright (C) 2025 Request Gate contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""
Error policies: turn a request failure into the response sent to the client.

An error handler is any callable taking a GateFailure and returning a
Starlette Response. It is called for decode and validation failures alike.
"""

from typing import Callable

from fastapi.responses import JSONResponse, PlainTextResponse, Response

from reqgate.config import ERROR_STATUS_CODE, VALIDATION_STATUS_CODE
from reqgate.errors import FailureOrigin, GateFailure

ErrorHandler = Callable[[GateFailure], Response]


def default_error_handler(failure: GateFailure) -> Response:
    """Plain-text response with the failure description (400 by default)."""
    return PlainTextResponse(failure.description, status_code=ERROR_STATUS_CODE)


def json_error_handler(failure: GateFailure) -> Response:
    """
    JSON response exposing the failure origin and structured details.

    Decode failures use ERROR_STATUS_CODE, validation failures use
    VALIDATION_STATUS_CODE (both 400 unless configured otherwise).

    Response body:
        {"detail": "...", "origin": "decode" | "validation", "errors": [...]}
    """
    if failure.origin == FailureOrigin.VALIDATION:
        status_code = VALIDATION_STATUS_CODE
    else:
        status_code = ERROR_STATUS_CODE

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": failure.description,
            "origin": failure.origin.value,
            "errors": failure.errors,
        },
    )
