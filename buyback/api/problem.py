# buyback/api/problem.py
"""
Problem JSON body shared by every error response.

    {error_code, message, http_status, context?, details?, trace_id?}

Empty optional members are omitted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, TypedDict

from buyback.core.errors import EngineError


class ProblemDetail(TypedDict, total=False):
    type: str  # validation | state | external
    path: str  # e.g. validation[0]
    reason: str
    order_id: str
    label_id: str
    device_key: str


@dataclass(frozen=True)
class Problem:
    error_code: str
    message: str
    http_status: int
    context: Optional[Dict[str, Any]] = None
    details: Optional[List[ProblemDetail]] = None
    trace_id: Optional[str] = None

    @classmethod
    def from_error(
        cls,
        exc: EngineError,
        *,
        context: Optional[Mapping[str, Any]] = None,
        trace_id: Optional[str] = None,
    ) -> "Problem":
        merged = dict(context or {})
        merged.update(exc.context)
        detail_type = "external" if exc.http_status >= 500 else "state"
        return cls(
            error_code=exc.error_code,
            message=exc.message,
            http_status=int(exc.http_status),
            context=merged,
            details=[{"type": detail_type, "reason": exc.message}],
            trace_id=trace_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
            "http_status": int(self.http_status),
        }
        for name in ("context", "details", "trace_id"):
            value = getattr(self, name)
            if value:
                out[name] = value
        return out


def make_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    return Problem(
        error_code=str(error_code),
        message=str(message),
        http_status=int(status_code),
        context=context,
        details=list(details) if details else None,
        trace_id=trace_id,
    ).to_dict()
