# buyback/services/order_store.py
"""
Document store over the order_documents table.

- get:         full order document (a deep copy, safe to mutate) or None
- create:      insert a new order document
- merge_write: partial update; dotted keys reach into nested maps
               ("shipEngineLabels.primary.status"), DELETE removes a key,
               SERVER_TIMESTAMP is replaced by the write's timestamp
- query:       orders by status (and optionally lastStatusUpdateAt cutoff)

Every merge_write stamps updatedAt; writing `status` also stamps
lastStatusUpdateAt and (unless auto_log_status=False) appends a
"Status changed to ..." entry to the activity log. Each write is
committed on its own: there are no transactions across orders.

merge_write reads the row under FOR UPDATE and the UPDATE is conditioned
on the row version, so a write that raced another one is re-applied on
the fresh document instead of overwriting it.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from buyback.core.errors import OrderNotFound, WriteConflict
from buyback.domain.statuses import normalize_status
from buyback.models.order_document import OrderDocument
from buyback.services.activity_log import ActivityLogWriter
from buyback.utils.time import iso, to_datetime, utcnow

logger = logging.getLogger("buyback.store")

# re-read and re-apply a merge this many times before giving up
MERGE_ATTEMPTS = 20


class _Sentinel:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"<{self.name}>"


DELETE = _Sentinel("DELETE")
SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")


def _to_json(value: Any, stamp: str) -> Any:
    if value is SERVER_TIMESTAMP:
        return stamp
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return iso(value)
    if isinstance(value, Mapping):
        return {str(k): _to_json(v, stamp) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(v, stamp) for v in value]
    return value


def _apply_path(doc: Dict[str, Any], dotted: str, value: Any, stamp: str) -> None:
    parts = dotted.split(".")
    cur = doc
    for key in parts[:-1]:
        nxt = cur.get(key)
        if not isinstance(nxt, dict):
            if value is DELETE:
                return
            nxt = {}
            cur[key] = nxt
        cur = nxt
    leaf = parts[-1]
    if value is DELETE:
        cur.pop(leaf, None)
    else:
        cur[leaf] = _to_json(value, stamp)


def _as_order(row: OrderDocument) -> Dict[str, Any]:
    data = copy.deepcopy(row.data or {})
    data["id"] = row.id
    return data


def _patch_row(
    row: OrderDocument,
    fields: Mapping[str, Any],
    log_entries: Sequence[Mapping[str, Any]],
    auto_log_status: bool,
    stamp: str,
    now: datetime,
) -> None:
    data = copy.deepcopy(row.data or {})
    for key, value in fields.items():
        _apply_path(data, key, value, stamp)

    data["updatedAt"] = stamp
    entries: List[Mapping[str, Any]] = list(log_entries)
    if "status" in fields:
        if "lastStatusUpdateAt" not in fields:
            data["lastStatusUpdateAt"] = stamp
        if auto_log_status:
            entries.insert(0, ActivityLogWriter.status_changed(data.get("status")))

    if entries:
        log = data.get("activityLog")
        log = list(log) if isinstance(log, list) else []
        log.extend(ActivityLogWriter.stamp(e, stamp) for e in entries)
        data["activityLog"] = log

    # JSON column: assign a fresh object so the change is tracked
    row.data = data
    row.status = normalize_status(data.get("status")) or None
    row.last_status_update_at = to_datetime(data.get("lastStatusUpdateAt"))
    row.updated_at = now


class SqlOrderStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, order_id: str) -> Optional[Dict[str, Any]]:
        row = await self.session.get(OrderDocument, order_id)
        if row is None:
            return None
        return _as_order(row)

    async def create(
        self, order: Mapping[str, Any], *, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        now = now or utcnow()
        stamp = iso(now)
        data = _to_json(dict(order), stamp)
        order_id = str(data.pop("id"))
        data.setdefault("createdAt", stamp)
        data.setdefault("updatedAt", stamp)
        data.setdefault("activityLog", [])
        row = OrderDocument(
            id=order_id,
            status=normalize_status(data.get("status")) or None,
            data=data,
            last_status_update_at=to_datetime(data.get("lastStatusUpdateAt")),
            created_at=to_datetime(data.get("createdAt")) or now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.commit()
        return _as_order(row)

    async def rollback(self) -> None:
        await self.session.rollback()

    async def _lock(self, order_id: str) -> Optional[OrderDocument]:
        # FOR UPDATE on postgres; sqlite ignores it and relies on the version check
        stmt = (
            select(OrderDocument)
            .where(OrderDocument.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def merge_write(
        self,
        order_id: str,
        fields: Mapping[str, Any],
        *,
        log_entries: Sequence[Mapping[str, Any]] = (),
        auto_log_status: bool = True,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        stamp = iso(now)

        for attempt in range(1, MERGE_ATTEMPTS + 1):
            row = await self._lock(order_id)
            if row is None:
                await self.session.rollback()
                raise OrderNotFound(order_id)

            _patch_row(row, fields, log_entries, auto_log_status, stamp, now)
            try:
                await self.session.commit()
            except StaleDataError:
                await self.session.rollback()
                logger.debug("order %s changed during merge (attempt %d), re-reading", order_id, attempt)
                continue

            logger.debug("order %s merged fields=%s", order_id, sorted(fields))
            return _as_order(row)

        logger.warning("order %s: merge gave up after %d attempts", order_id, MERGE_ATTEMPTS)
        raise WriteConflict(
            "Order was modified concurrently, please retry",
            context={"order_id": order_id, "attempts": MERGE_ATTEMPTS},
        )

    async def query(
        self,
        *,
        statuses: Iterable[str],
        limit: int,
        status_updated_before: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        wanted = sorted({normalize_status(s) for s in statuses if normalize_status(s)})
        stmt = select(OrderDocument).where(OrderDocument.status.in_(wanted))
        if status_updated_before is not None:
            stmt = stmt.where(OrderDocument.last_status_update_at <= status_updated_before)
        stmt = stmt.order_by(OrderDocument.created_at.asc(), OrderDocument.id.asc()).limit(
            int(limit)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [_as_order(r) for r in rows]
