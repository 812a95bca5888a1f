# -*- coding: utf-8 -*-

# Request Gate
# Copyright (C) 2025 Request Gate contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""
Hand-off of validated values from the gate to the downstream handler.

Values live in request.state under a private attribute, one entry per
source, so several gates (e.g. PARAMS and JSON) can run on one request
without clobbering each other or state set by unrelated middleware.
"""

from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import Request

from reqgate.errors import PropagationError
from reqgate.sources import Source

T = TypeVar("T")

# Private namespace inside request.state
_STATE_ATTR = "_reqgate_validated"


def _store(request: Request) -> Dict[Source, Any]:
    store = getattr(request.state, _STATE_ATTR, None)
    if store is None:
        store = {}
        setattr(request.state, _STATE_ATTR, store)
    return store


def publish(request: Request, source: Source, value: Any) -> Request:
    """
    Attaches a validated value to the request.

    Args:
        request: Request being processed
        source: Source the value was read from
        value: Validated schema instance

    Returns:
        The same request, now carrying the value
    """
    _store(request)[source] = value
    return request


def validated(request: Request, source: Source, expected: Optional[Type[T]] = None) -> T:
    """
    Retrieves the value published for a source.

    Args:
        request: Request passed to the handler
        source: Source declared when the gate was registered
        expected: Schema class the caller expects (checked when given)

    Returns:
        The validated schema instance

    Raises:
        PropagationError: Nothing was published for this source on this
            request, or the value is not an instance of `expected`

    Example:
        >>> async def get_user(request):
        ...     params = validated(request, Source.PARAMS, UserParams)
        ...     return JSONResponse({"id": params.id})
    """
    store = getattr(request.state, _STATE_ATTR, None) or {}
    if source not in store:
        raise PropagationError(
            f"no validated value for source {source!r} on this request; "
            f"is the handler wrapped with a {source!r} gate?"
        )

    value = store[source]
    if expected is not None and not isinstance(value, expected):
        raise PropagationError(
            f"validated value for source {source!r} is {type(value).__name__}, "
            f"not {expected.__name__}"
        )
    return value
