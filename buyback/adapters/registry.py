# buyback/adapters/registry.py
from __future__ import annotations

from typing import Callable, Dict

from buyback.adapters.base import MailAdapter
from buyback.adapters.mailer import LoggingMailer, SmtpMailer
from buyback.adapters.shipengine import ShipEngineClient
from buyback.core.config import AppSettings
from buyback.core.errors import CredentialsMissing


def build_carrier_adapter(settings: AppSettings) -> ShipEngineClient:
    return ShipEngineClient(
        settings.SHIPENGINE_API_KEY,
        base_url=settings.SHIPENGINE_API_BASE_URL,
        tracking_timeout=settings.TRACKING_TIMEOUT_SECONDS,
        void_timeout=settings.LABEL_VOID_TIMEOUT_SECONDS,
    )


def _build_smtp(settings: AppSettings) -> MailAdapter:
    if not settings.SMTP_HOST:
        raise CredentialsMissing("MAIL_BACKEND=smtp but SMTP_HOST is not set.")
    return SmtpMailer(
        host=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        username=settings.SMTP_USERNAME,
        password=settings.SMTP_PASSWORD,
        use_tls=settings.SMTP_USE_TLS,
        sender=settings.MAIL_FROM,
        timeout=settings.SMTP_TIMEOUT_SECONDS,
    )


# mail backends by MAIL_BACKEND
_MAILERS: Dict[str, Callable[[AppSettings], MailAdapter]] = {
    "log": lambda _settings: LoggingMailer(),
    "smtp": _build_smtp,
}


def build_mailer(settings: AppSettings) -> MailAdapter:
    key = (settings.MAIL_BACKEND or "log").strip().lower()
    factory = _MAILERS.get(key, _MAILERS["log"])
    return factory(settings)
