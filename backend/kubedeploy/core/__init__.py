"""
Core module initialization.
Exports logging setup and request context helpers.
"""
from .logging import setup_logging
from .request_context import request_id_var, application_var

__all__ = [
    "setup_logging",
    "request_id_var",
    "application_var",
]
