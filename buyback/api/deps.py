# buyback/api/deps.py
from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from buyback.adapters.base import CarrierAdapter, MailAdapter
from buyback.adapters.registry import build_carrier_adapter, build_mailer
from buyback.core.config import AppSettings, get_settings
from buyback.db.session import get_session
from buyback.jobs.context import EngineContext, build_context


def get_app_settings() -> AppSettings:
    return get_settings()


def get_carrier(settings: AppSettings = Depends(get_app_settings)) -> CarrierAdapter:
    """Carrier adapter for the request (tests override this with a fake)."""
    return build_carrier_adapter(settings)


def get_mailer(settings: AppSettings = Depends(get_app_settings)) -> MailAdapter:
    return build_mailer(settings)


async def get_context(
    session: AsyncSession = Depends(get_session),
    settings: AppSettings = Depends(get_app_settings),
    carrier: CarrierAdapter = Depends(get_carrier),
    mailer: MailAdapter = Depends(get_mailer),
) -> EngineContext:
    """
    Per-request engine wiring:
    - one AsyncSession (closed by get_session after the response)
    - store / reconciler / label manager / re-offer service share it
    """
    return build_context(session, settings, carrier=carrier, mailer=mailer)
