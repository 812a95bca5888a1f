# -*- coding: utf-8 -*-

# Request Gate
# Copyright (C) 2025 Request Gate contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Loguru sink configuration."""

import sys
from typing import Optional

from loguru import logger

from reqgate.config import LOG_LEVEL

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def setup_logging(level: Optional[str] = None) -> int:
    """
    Replaces loguru's default sink with a stderr sink at the configured level.

    Args:
        level: Log level name; LOG_LEVEL from config when None

    Returns:
        Id of the added sink (for logger.remove())
    """
    logger.remove()
    return logger.add(
        sys.stderr,
        level=(level or LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        colorize=True,
    )
