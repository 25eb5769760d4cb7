# FILE: storecredit/server.py
import logging
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.middleware.cors import CORSMiddleware

from storecredit.api.credits import admin_router as admin_credits_router
from storecredit.api.credits import router as credits_router
from storecredit.api.webhooks import router as webhooks_router
from storecredit.core.config import Settings
from storecredit.core.database import build_engine, build_sessionmaker, init_models
from storecredit.core.logging_config import setup_logging
from storecredit.services.collaborators import (
    AnalyticsSink,
    DiscountRecorder,
    HttpNotificationSender,
    LoggingNotificationSender,
    NotificationSender,
)
from storecredit.services.credit_ledger import CreditLedger
from storecredit.services.ledger_store import LedgerStore
from storecredit.services.order_store import OrderStore
from storecredit.services.payment_gateway import PaymentGateway, StripeGateway
from storecredit.services.payment_reconciler import PaymentWebhookReconciler
from storecredit.services.reclamation import JobLock, ReclamationJobs

logger = logging.getLogger("storecredit.server")


def build_services(
        settings: Settings,
        engine: AsyncEngine,
        *,
        gateway: Optional[PaymentGateway] = None,
        notifications: Optional[NotificationSender] = None,
        analytics: Optional[AnalyticsSink] = None,
        discounts: Optional[DiscountRecorder] = None,
        job_lock: Optional[JobLock] = None,
) -> SimpleNamespace:
    """Wire stores, ledger, jobs and reconciler on top of one engine."""
    sessionmaker = build_sessionmaker(engine)
    retry = dict(
        retry_attempts=settings.store_retry_attempts,
        retry_backoff_seconds=settings.store_retry_backoff_seconds,
    )
    ledger_store = LedgerStore(sessionmaker, **retry)
    orders = OrderStore(sessionmaker, atomic_updates=settings.order_atomic_updates, **retry)
    ledger = CreditLedger(
        ledger_store,
        earn_rate=settings.earn_rate,
        balance_cap=settings.balance_cap,
        reservation_ttl_hours=settings.reservation_ttl_hours,
    )
    if notifications is None:
        if settings.notification_webhook_url:
            notifications = HttpNotificationSender(settings.notification_webhook_url)
        else:
            notifications = LoggingNotificationSender()

    reconciler = PaymentWebhookReconciler(
        ledger,
        orders,
        gateway or StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret),
        notifications=notifications,
        analytics=analytics,
        discounts=discounts,
        recovery_window_minutes=settings.recovery_window_minutes,
        session_retry_delay_seconds=settings.session_retry_delay_seconds,
    )
    return SimpleNamespace(
        ledger=ledger,
        orders=orders,
        reclamation=ReclamationJobs(ledger, orders, job_lock),
        reconciler=reconciler,
    )


def create_app(settings: Optional[Settings] = None, **service_overrides) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_dir)
        engine = build_engine(settings.database_url)
        await init_models(engine)
        services = build_services(settings, engine, **service_overrides)
        app.state.ledger = services.ledger
        app.state.orders = services.orders
        app.state.reclamation = services.reclamation
        app.state.reconciler = services.reconciler
        logger.info("Store credit service started")
        try:
            yield
        finally:
            await engine.dispose()

    app = FastAPI(title="Store Credit", lifespan=lifespan)
    app.state.settings = settings

    app.include_router(credits_router)
    app.include_router(admin_credits_router)
    app.include_router(webhooks_router)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
