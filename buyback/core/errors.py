# buyback/core/errors.py
"""
Engine exception taxonomy.

- TransientExternalError: carrier / label provider timeouts and 5xx.
  Sweeps retry on the next cycle; HTTP callers get 502.
- CredentialsMissing: no API key configured. Fatal for the operation.
- OrderNotFound: stale reference. HTTP 404, sweeps skip.
- InvalidRequest / CancellationNotAllowed: caller error, HTTP 400.
- IllegalTransition: a status edge that is not in the transition table.
- WriteConflict: an order kept changing underneath a merge write.

Each class carries its Problem `error_code` and `http_status` so the HTTP
layer can render it without a lookup table.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    error_code: str = "engine_error"
    http_status: int = 500

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})


class OrderNotFound(EngineError):
    error_code = "order_not_found"
    http_status = 404

    def __init__(self, order_id: str) -> None:
        super().__init__("Order not found", context={"order_id": order_id})
        self.order_id = order_id


class InvalidRequest(EngineError):
    error_code = "invalid_request"
    http_status = 400


class CancellationNotAllowed(InvalidRequest):
    error_code = "cancellation_not_allowed"


class IllegalTransition(EngineError):
    error_code = "illegal_transition"
    http_status = 409


class WriteConflict(EngineError):
    error_code = "write_conflict"
    http_status = 409


class CredentialsMissing(EngineError):
    error_code = "credentials_missing"
    http_status = 500


class TransientExternalError(EngineError):
    error_code = "external_service_error"
    http_status = 502


class TrackingUnavailable(TransientExternalError):
    error_code = "tracking_unavailable"


class LabelVoidFailed(TransientExternalError):
    error_code = "label_void_failed"
