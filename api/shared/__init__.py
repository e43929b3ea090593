"""
Shared utilities for the survey studio API.
"""
from .logger import get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
]
