#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared helpers for the bulk meta SEO generator: logger setup and string coercion.
"""

import logging
from typing import Any
import pandas as pd

LOGGER_NAME = "bulk_meta_seo"

# ---------- Logger Setup ----------
def setup_logger(name: str = LOGGER_NAME, level: int = logging.INFO) -> logging.Logger:
    """Setup logger with custom formatting."""
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S")
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger

def get_logger(component: str) -> logging.Logger:
    """Child logger of the project logger, configured by a single setup_logger call."""
    return logging.getLogger(f"{LOGGER_NAME}.{component}")

# ---------- Utility Functions ----------
def truncate_chars(s: str, max_chars: int) -> str:
    """Truncate string to max_chars with ellipsis."""
    s = s or ""
    return s if len(s) <= max_chars else (s[:max_chars] + "…")

def cell_to_str(value: Any) -> str:
    """Coerce a spreadsheet cell to a string; missing cells become ''."""
    if value is None:
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return value if isinstance(value, str) else str(value)
