# buyback/jobs/context.py
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from buyback.adapters.base import CarrierAdapter, MailAdapter
from buyback.adapters.registry import build_carrier_adapter, build_mailer
from buyback.core.config import AppSettings, get_settings
from buyback.db.session import AsyncSessionLocal
from buyback.services.label_lifecycle import LabelLifecycleManager
from buyback.services.notifications import NotificationDispatcher
from buyback.services.order_store import SqlOrderStore
from buyback.services.reoffer_service import ReofferService
from buyback.services.tracking_reconciler import TrackingReconciler


@dataclass
class EngineContext:
    """Everything one request or one sweep run needs, wired explicitly."""

    settings: AppSettings
    store: SqlOrderStore
    carrier: CarrierAdapter
    mailer: MailAdapter
    dispatcher: NotificationDispatcher
    reconciler: TrackingReconciler
    labels: LabelLifecycleManager
    reoffers: ReofferService


def build_context(
    session: AsyncSession,
    settings: Optional[AppSettings] = None,
    *,
    carrier: Optional[CarrierAdapter] = None,
    mailer: Optional[MailAdapter] = None,
) -> EngineContext:
    settings = settings or get_settings()
    carrier = carrier or build_carrier_adapter(settings)
    mailer = mailer or build_mailer(settings)

    store = SqlOrderStore(session)
    dispatcher = NotificationDispatcher(mailer, store)
    return EngineContext(
        settings=settings,
        store=store,
        carrier=carrier,
        mailer=mailer,
        dispatcher=dispatcher,
        reconciler=TrackingReconciler(store, carrier, dispatcher, settings),
        labels=LabelLifecycleManager(store, carrier, dispatcher, settings),
        reoffers=ReofferService(store, dispatcher, settings),
    )


@asynccontextmanager
async def open_context(
    settings: Optional[AppSettings] = None,
    *,
    carrier: Optional[CarrierAdapter] = None,
    mailer: Optional[MailAdapter] = None,
) -> AsyncIterator[EngineContext]:
    async with AsyncSessionLocal() as session:
        yield build_context(session, settings, carrier=carrier, mailer=mailer)
