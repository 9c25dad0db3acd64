"""
Request-scoped context variables.

Lets log records carry the request id and the application being reconciled
without threading them through every call.
"""

from __future__ import annotations

from contextvars import ContextVar
from typing import Optional


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
application_var: ContextVar[Optional[str]] = ContextVar("application", default=None)
