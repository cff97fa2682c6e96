# buyback/adapters/shipengine.py
from __future__ import annotations

import logging
from typing import Optional

import httpx

from buyback.core.errors import CredentialsMissing, LabelVoidFailed, TrackingUnavailable
from buyback.domain.ports import TrackingInfo, VoidResponse
from buyback.services.tracking_normalizer import extract_tracking_fields

logger = logging.getLogger("buyback.adapters.shipengine")


def _error_message(resp: httpx.Response, fallback: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"{fallback} (HTTP {resp.status_code})"
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            msg = errors[0].get("message")
            if msg:
                return str(msg)
        if body.get("message"):
            return str(body["message"])
    return f"{fallback} (HTTP {resp.status_code})"


class ShipEngineClient:
    """
    ShipEngine REST adapter (tracking + label void) over httpx.AsyncClient.

    - one short-lived client per call, bounded timeouts
    - timeouts / transport errors / 5xx → TransientExternalError subclasses
    - `transport` lets tests inject httpx.MockTransport
    """

    name = "shipengine"

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = "https://api.shipengine.com",
        tracking_timeout: float = 20.0,
        void_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = (api_key or "").strip() or None
        self.base_url = base_url.rstrip("/")
        self.tracking_timeout = tracking_timeout
        self.void_timeout = void_timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self.api_key is not None

    def _client(self, timeout: float) -> httpx.AsyncClient:
        if not self.configured:
            raise CredentialsMissing("ShipEngine API key not configured.")
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"API-Key": self.api_key or "", "Content-Type": "application/json"},
            timeout=timeout,
            transport=self._transport,
        )

    async def fetch_tracking(self, tracking_number: str, carrier_code: str) -> Optional[TrackingInfo]:
        if not tracking_number:
            raise TrackingUnavailable("Tracking number is required.")
        async with self._client(self.tracking_timeout) as client:
            try:
                resp = await client.get(
                    "/v1/tracking",
                    params={"carrier_code": carrier_code, "tracking_number": tracking_number},
                )
            except httpx.TimeoutException as e:
                raise TrackingUnavailable(
                    "Carrier tracking request timed out.",
                    context={"tracking_number": tracking_number},
                ) from e
            except httpx.HTTPError as e:
                raise TrackingUnavailable(
                    f"Carrier tracking request failed: {e}",
                    context={"tracking_number": tracking_number},
                ) from e

        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise TrackingUnavailable(
                _error_message(resp, "Carrier tracking request failed"),
                context={"tracking_number": tracking_number, "http_status": resp.status_code},
            )
        try:
            data = resp.json()
        except ValueError:
            return None
        if not isinstance(data, dict) or not data:
            return None
        return extract_tracking_fields(data)

    async def void_label(self, label_id: str) -> VoidResponse:
        async with self._client(self.void_timeout) as client:
            try:
                resp = await client.put(f"/v1/labels/{label_id}/void")
            except httpx.TimeoutException as e:
                raise LabelVoidFailed(
                    "Label void request timed out.", context={"label_id": label_id}
                ) from e
            except httpx.HTTPError as e:
                raise LabelVoidFailed(
                    f"Label void request failed: {e}", context={"label_id": label_id}
                ) from e

        if resp.status_code >= 400:
            raise LabelVoidFailed(
                _error_message(resp, "Label void request failed"),
                context={"label_id": label_id, "http_status": resp.status_code},
            )
        try:
            data = resp.json()
        except ValueError:
            data = {}
        data = data if isinstance(data, dict) else {}
        approved = bool(data.get("approved"))
        message = str(data.get("message") or ("Label voided." if approved else "Void request denied."))
        logger.info("label %s void approved=%s", label_id, approved)
        return VoidResponse(approved=approved, message=message)
