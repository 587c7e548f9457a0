"""
Exception classes for ownership tracing.
"""

from typing import Any, Optional


class TraceError(Exception):
    """Base exception for tracing failures that are local to one asset."""

    def __init__(self, message: str, asset_id: Optional[str] = None):
        self.asset_id = asset_id
        super().__init__(message)


class TraceIncomplete(TraceError):
    """The hop ceiling was reached before an unspent tip or a burn."""

    def __init__(self, message: str, result: Any = None, asset_id: Optional[str] = None):
        self.result = result
        super().__init__(message, asset_id)


class UnresolvableState(TraceError):
    """No recognizable state output where one is required."""
    pass
