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
Request Gate - request validation for Starlette/FastAPI.

Decodes route parameters, query strings, form bodies, JSON bodies and XML
bodies into pydantic models, validates them, and hands the typed result to
the request handler. Invalid requests are answered by a configurable error
handler before the handler runs.

Modules:
    - config: Configuration and constants
    - errors: Failure taxonomy
    - sources: Source enum and per-source normalizers
    - decoder: Structural decoder (field map -> model instance)
    - rules: Rule engines (pydantic constraints + custom named rules)
    - propagation: Hand-off of validated values to handlers
    - policy: Error handlers
    - gate: Pipeline, middleware factory and FastAPI dependency
    - exceptions: FastAPI exception handlers
    - logging_setup: loguru sink configuration
"""

# Version is imported from config.py - the single source of truth
from reqgate.config import APP_VERSION as __version__

# Pipeline
from reqgate.gate import (
    RequestGate,
    default_gate,
    register_rule,
    set_error_handler,
    set_rule_engine,
    validate,
)
from reqgate.exceptions import install_exception_handlers

# Sources and decoding
from reqgate.sources import FieldMap, Source
from reqgate.decoder import StructuralDecoder

# Validation
from reqgate.rules import PydanticRuleEngine, Rule, RuleEngine

# Propagation
from reqgate.propagation import publish, validated

# Error handling
from reqgate.policy import ErrorHandler, default_error_handler, json_error_handler
from reqgate.errors import (
    ConfigurationError,
    DecodeFailure,
    FailureOrigin,
    GateFailure,
    PropagationError,
    ValidationFailure,
)

# Logging
from reqgate.logging_setup import setup_logging

__all__ = [
    # Version
    "__version__",

    # Pipeline
    "RequestGate",
    "default_gate",
    "validate",
    "set_error_handler",
    "set_rule_engine",
    "register_rule",
    "install_exception_handlers",

    # Sources and decoding
    "Source",
    "FieldMap",
    "StructuralDecoder",

    # Validation
    "RuleEngine",
    "PydanticRuleEngine",
    "Rule",

    # Propagation
    "publish",
    "validated",

    # Error handling
    "ErrorHandler",
    "default_error_handler",
    "json_error_handler",
    "GateFailure",
    "DecodeFailure",
    "ValidationFailure",
    "FailureOrigin",
    "ConfigurationError",
    "PropagationError",

    # Logging
    "setup_logging",
]
