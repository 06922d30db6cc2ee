"""
Typed failures raised by the analytics engine.

Callers must be able to tell "no data" apart from "zero": nothing in this
package converts a ``DataUnavailable`` into zero-valued results.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class AnalyticsError(Exception):
    code = "analytics_error"

    def as_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class InvalidParameter(AnalyticsError):
    """Unsupported metric/anchor/period combination. Never retried."""

    code = "invalid_parameter"

    def __init__(self, parameter: str, value: Any, allowed: Optional[Iterable[Any]] = None) -> None:
        self.parameter = parameter
        self.value = value
        self.allowed = tuple(allowed) if allowed is not None else None
        message = f"Unsupported {parameter}: {value!r}"
        if self.allowed:
            message += f" (expected one of: {', '.join(str(item) for item in self.allowed)})"
        super().__init__(message)

    def as_dict(self) -> Dict[str, Any]:
        payload = super().as_dict()
        payload["parameter"] = self.parameter
        if self.allowed is not None:
            payload["allowed"] = [str(item) for item in self.allowed]
        return payload


class DataUnavailable(AnalyticsError):
    """The event or user store could not be read. Eligible for caller retry."""

    code = "data_unavailable"

    def __init__(self, source: str, reason: str = "") -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"{source} unavailable" + (f": {reason}" if reason else ""))


class InsufficientData(AnalyticsError):
    """No part of the population has reached the requested horizon yet."""

    code = "insufficient_data"

    def __init__(self, what: str) -> None:
        self.what = what
        super().__init__(f"{what} is not yet available")


class QueryCancelled(AnalyticsError):
    code = "query_cancelled"

    def __init__(self) -> None:
        super().__init__("query was cancelled before completion")
