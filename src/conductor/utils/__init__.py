"""Conductor utility modules."""

from .errors import (
    ErrorCategory,
    ErrorInfo,
    error_from_exception,
    format_conflict,
    format_error,
    is_debug_mode,
    set_debug_mode,
)

__all__ = [
    "ErrorCategory",
    "ErrorInfo",
    "error_from_exception",
    "format_conflict",
    "format_error",
    "is_debug_mode",
    "set_debug_mode",
]
