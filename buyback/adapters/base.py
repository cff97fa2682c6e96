# buyback/adapters/base.py
from __future__ import annotations

from typing import Optional, Protocol

from buyback.domain.ports import TrackingInfo, VoidResponse


class CarrierAdapter(Protocol):
    """
    Carrier / label-provider adapter (minimal shape):
    - tracking lookup by tracking number + carrier code
    - label void by provider label id
    - `configured` is False when credentials are missing; calls then raise
      CredentialsMissing instead of hitting the network
    """

    name: str
    configured: bool

    async def fetch_tracking(self, tracking_number: str, carrier_code: str) -> Optional[TrackingInfo]:
        """
        Latest tracking snapshot, or None when the provider knows nothing
        about the shipment yet.
        """
        ...

    async def void_label(self, label_id: str) -> VoidResponse:
        """
        Ask the provider to void a label.
        approved=False is a definitive denial (terminal), not an error.
        """
        ...


class MailAdapter(Protocol):
    name: str

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        ...
