# -*- coding: utf-8 -*-

# Request Gate
# Copyright (C) 2025 Request Gate contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Failure taxonomy for the request gate.

Two kinds of errors exist and they never mix:

- Request failures (GateFailure and subclasses): bad client input. They are
  caught by the gate and turned into an HTTP response by the error handler.
    - DecodeFailure: malformed or type-incompatible input
    - ValidationFailure: well-formed input that violates a declared constraint
- Programming errors: wrong wiring by the integrating code. They propagate
  out of the request and are never converted into a 4xx response.
    - ConfigurationError: unknown source, non-model schema, unregistered rule
    - PropagationError: retrieving a value that was never published

Example:
    >>> failure = DecodeFailure("id: Input should be a valid integer")
    >>> failure.origin
    <FailureOrigin.DECODE: 'decode'>
    >>> str(failure)
    'id: Input should be a valid integer'
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError


class FailureOrigin(str, Enum):
    """Pipeline stage a request failure comes from."""

    DECODE = "decode"
    VALIDATION = "validation"


class GateFailure(Exception):
    """
    Base class for recoverable, request-level failures.

    Attributes:
        origin: Stage that produced the failure
        description: Human-readable description, used as the default response body
        source: Source the failing data was read from (None when unknown)
        errors: Structured details, one dict per problem with "loc", "msg" and "type"
    """

    origin: FailureOrigin

    def __init__(
        self,
        description: str,
        *,
        source: Optional[Any] = None,
        errors: Optional[List[Dict[str, str]]] = None,
    ):
        super().__init__(description)
        self.description = description
        self.source = source
        self.errors: List[Dict[str, str]] = errors or []

    def __str__(self) -> str:
        return self.description

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.description!r}, source={self.source!r})"


class DecodeFailure(GateFailure):
    """Malformed or type-incompatible input at any source."""

    origin = FailureOrigin.DECODE


class ValidationFailure(GateFailure):
    """Structurally valid input that violates one or more declared constraints."""

    origin = FailureOrigin.VALIDATION


class ConfigurationError(RuntimeError):
    """Incorrect wiring of the gate by the integrating code."""


class PropagationError(LookupError):
    """A validated value was retrieved for a (request, source) pair that never published one."""


def _join_loc(loc: Sequence[Union[str, int]], prefix: str = "") -> str:
    """Join a pydantic error location into a dotted field key."""
    parts = [str(part) for part in loc]
    if prefix:
        parts.insert(0, prefix)
    return ".".join(parts) or "__root__"


def format_pydantic_errors(
    exc: ValidationError, prefix: str = ""
) -> Tuple[str, List[Dict[str, str]]]:
    """
    Converts a pydantic ValidationError into a description and structured details.

    Only JSON-safe values are kept in the structured details (pydantic's
    "ctx" and "input" entries can hold arbitrary objects and are dropped).

    Args:
        exc: Error raised by pydantic
        prefix: Field key prepended to every location (for per-field coercion)

    Returns:
        Tuple of (description, errors). The description has one
        "loc: msg" line per error.

    Example:
        >>> description, errors = format_pydantic_errors(exc)
        >>> print(description)
        id: Input should be greater than 0
        profile.email: value is not a valid email address: ...
    """
    errors: List[Dict[str, str]] = []
    for error in exc.errors():
        errors.append(
            {
                "loc": _join_loc(error.get("loc", ()), prefix),
                "msg": str(error.get("msg", "Invalid value")),
                "type": str(error.get("type", "value_error")),
            }
        )

    description = "\n".join(f"{item['loc']}: {item['msg']}" for item in errors)
    return description, errors
