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
Request Gate Configuration.

Centralized storage for all settings and constants.
Loads environment variables and provides typed access to them.
"""

import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_flag(var_name: str, default: str) -> bool:
    """
    Read a boolean flag from the environment.

    Args:
        var_name: Environment variable name
        default: Raw default used when the variable is not set

    Returns:
        True for "true", "1" or "yes" (case-insensitive), False otherwise
    """
    return os.getenv(var_name, default).lower() in ("true", "1", "yes")


# ==================================================================================================
# Error Responses
# ==================================================================================================

# Status code used by the default error handler for every rejected request.
# Decode failures and validation failures share it.
DEFAULT_ERROR_STATUS_CODE: int = 400
ERROR_STATUS_CODE: int = int(
    os.getenv("GATE_ERROR_STATUS_CODE", str(DEFAULT_ERROR_STATUS_CODE))
)

# Status code used by json_error_handler for validation failures only.
# Set to 422 to tell clients apart "could not parse" from "parsed but invalid".
VALIDATION_STATUS_CODE: int = int(
    os.getenv("GATE_VALIDATION_STATUS_CODE", str(DEFAULT_ERROR_STATUS_CODE))
)

# ==================================================================================================
# Structural Decoding
# ==================================================================================================

# Ignore request keys that do not map to any schema field.
# Set to false to reject such requests with a decode failure.
IGNORE_UNKNOWN_KEYS: bool = _env_flag("GATE_IGNORE_UNKNOWN_KEYS", "true")

# Separator used when flattening nested JSON/XML documents into field keys
# (e.g. {"profile": {"email": ...}} -> "profile.email").
KEY_SEPARATOR: str = "."

# ==================================================================================================
# Logging
# ==================================================================================================

# Log level for the loguru sink installed by setup_logging()
# Options: TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# ==================================================================================================
# Application Version
# ==================================================================================================

APP_VERSION: str = "0.3.0"
