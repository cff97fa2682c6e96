# buyback/api/routers/admin.py
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from buyback.api.deps import get_context
from buyback.api.schemas import BulkVoidIn
from buyback.jobs.bulk_void import run_admin_bulk_void
from buyback.jobs.context import EngineContext

router = APIRouter(prefix="/orders/admin", tags=["admin"])


@router.post("/bulk-void-aged")
async def bulk_void_aged(
    body: Optional[BulkVoidIn] = Body(default=None),
    ctx: EngineContext = Depends(get_context),
) -> Dict[str, Any]:
    """
    Void every still-active label on orders older than minDays.

    Bounded per call by `limit` (default ADMIN_BULK_VOID_MAX_PER_RUN);
    `hasMore` tells the caller to run it again.
    """
    body = body or BulkVoidIn()
    return await run_admin_bulk_void(ctx, min_days=body.min_days, max_orders=body.limit)
