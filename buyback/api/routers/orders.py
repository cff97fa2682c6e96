# buyback/api/routers/orders.py
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from buyback.api.deps import get_context
from buyback.api.schemas import (
    CancelOrderIn,
    RefreshTrackingIn,
    ReofferIn,
    ReofferResponseIn,
)
from buyback.jobs.context import EngineContext

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/{order_id}/refresh-kit-tracking")
async def refresh_kit_tracking(
    order_id: str,
    body: Optional[RefreshTrackingIn] = Body(default=None),
    ctx: EngineContext = Depends(get_context),
) -> Dict[str, Any]:
    """
    Refresh the kit leg that is currently moving.

    - outbound (kit on its way to the customer) until it is delivered,
      then the inbound leg
    - a refresh inside the cooldown window returns {skipped, reason}
    """
    body = body or RefreshTrackingIn()
    result = await ctx.reconciler.refresh_kit_tracking(order_id, force=body.force, source="admin_manual")
    return result.to_payload()


@router.post("/{order_id}/sync-label-tracking")
async def sync_label_tracking(
    order_id: str,
    body: Optional[RefreshTrackingIn] = Body(default=None),
    ctx: EngineContext = Depends(get_context),
) -> Dict[str, Any]:
    body = body or RefreshTrackingIn()
    return await ctx.reconciler.sync_label_tracking(order_id, force=body.force, source="admin_manual")


@router.post("/{order_id}/sync-outbound-tracking")
async def sync_outbound_tracking(
    order_id: str,
    ctx: EngineContext = Depends(get_context),
) -> Dict[str, Any]:
    return await ctx.reconciler.sync_outbound_tracking(order_id, source="admin_manual")


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: Optional[CancelOrderIn] = Body(default=None),
    ctx: EngineContext = Depends(get_context),
) -> Dict[str, Any]:
    body = body or CancelOrderIn()
    outcome = await ctx.labels.cancel_order(
        order_id,
        reason=body.reason,
        initiated_by=body.initiated_by,
        notify_customer=body.notify_customer,
        void_labels=body.void_labels,
    )
    return outcome.to_payload()


@router.post("/{order_id}/re-offer")
async def create_reoffer(
    order_id: str,
    body: ReofferIn,
    ctx: EngineContext = Depends(get_context),
) -> Dict[str, Any]:
    return await ctx.reoffers.create_reoffer(
        order_id,
        new_price=body.new_price,
        reasons=body.reasons,
        comments=body.comments,
        device_key=body.device_key,
    )


@router.post("/{order_id}/re-offer/accept")
async def accept_reoffer(
    order_id: str,
    body: Optional[ReofferResponseIn] = Body(default=None),
    ctx: EngineContext = Depends(get_context),
) -> Dict[str, Any]:
    body = body or ReofferResponseIn()
    return await ctx.reoffers.accept_reoffer(order_id, device_key=body.device_key)


@router.post("/{order_id}/re-offer/decline")
async def decline_reoffer(
    order_id: str,
    body: Optional[ReofferResponseIn] = Body(default=None),
    ctx: EngineContext = Depends(get_context),
) -> Dict[str, Any]:
    body = body or ReofferResponseIn()
    return await ctx.reoffers.decline_reoffer(order_id, device_key=body.device_key)
