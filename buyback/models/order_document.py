# buyback/models/order_document.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from buyback.db.base import Base


class OrderDocument(Base):
    """
    One buyback order stored as a JSON document.

    - data:   the full order document (camelCase keys, nested label and
              device maps, append-only activityLog)
    - status: mirror of data["status"], indexed for sweep queries
    - last_status_update_at: mirror of data["lastStatusUpdateAt"]
    - version: bumped on every write; an UPDATE against a stale version
               raises StaleDataError
    """

    __tablename__ = "order_documents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    last_status_update_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")

    __table_args__ = (
        Index("ix_order_documents_status_last_update", "status", "last_status_update_at"),
    )
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<OrderDocument id={self.id} status={self.status}>"
