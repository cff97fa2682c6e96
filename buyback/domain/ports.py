# buyback/domain/ports.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

Order = Dict[str, Any]


@dataclass(frozen=True)
class TrackingInfo:
    """Carrier tracking snapshot, provider-neutral."""

    status_code: Optional[str]
    status_description: Optional[str] = None
    carrier_status_code: Optional[str] = None
    carrier_status_description: Optional[str] = None
    estimated_delivery: Optional[str] = None
    updated_at: Optional[str] = None
    events: List[Dict[str, Any]] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statusCode": self.status_code,
            "statusDescription": self.status_description,
            "carrierStatusCode": self.carrier_status_code,
            "carrierStatusDescription": self.carrier_status_description,
            "estimatedDelivery": self.estimated_delivery,
            "updatedAt": self.updated_at,
            "events": list(self.events),
        }


@dataclass(frozen=True)
class VoidResponse:
    approved: bool
    message: str = ""


class OrderStore(Protocol):
    async def get(self, order_id: str) -> Optional[Order]:
        ...

    async def merge_write(
        self,
        order_id: str,
        fields: Mapping[str, Any],
        *,
        log_entries: Sequence[Mapping[str, Any]] = (),
        auto_log_status: bool = True,
        now: Optional[datetime] = None,
    ) -> Order:
        ...

    async def query(
        self,
        *,
        statuses: Iterable[str],
        limit: int,
        status_updated_before: Optional[datetime] = None,
    ) -> List[Order]:
        ...

    async def rollback(self) -> None:
        """Drop whatever a failed operation left pending."""
        ...


class TrackingClient(Protocol):
    configured: bool

    async def fetch_tracking(self, tracking_number: str, carrier_code: str) -> Optional[TrackingInfo]:
        """None when the provider has no data for the shipment yet."""
        ...


class LabelVoidClient(Protocol):
    configured: bool

    async def void_label(self, label_id: str) -> VoidResponse:
        ...


class Notifier(Protocol):
    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        ...
