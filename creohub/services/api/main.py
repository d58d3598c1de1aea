"""Process entrypoint: `uvicorn creohub.services.api.main:app`."""

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from creohub.common.config import settings
from creohub.common.db import Base, SessionLocal, engine
from creohub.common.logging import configure_logging, logger
from creohub.common.startup import log_startup_config
from creohub.common.tracing import instrument_app, setup_tracing
from creohub.currency.registry import registry
from creohub.services.api.app import create_app
from creohub.services.gateways.factory import build_bank_transfer_client, build_gateway_clients
from creohub.services.orchestrator.attempts import AttemptLedger
from creohub.services.orchestrator.service import PaymentOrchestrator
from creohub.services.orders.store import SqlOrderStore
from creohub.services.reconciler.service import NotificationReconciler

# Model modules register their tables on `Base.metadata`.
import creohub.services.orchestrator.models  # noqa: F401
import creohub.services.orders.models  # noqa: F401
import creohub.services.reconciler.models  # noqa: F401

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_URL",
        "PUBLIC_BASE_URL",
        "MPESA_ENVIRONMENT",
        "MPESA_CONSUMER_KEY",
        "PESAPAL_ENVIRONMENT",
        "PESAPAL_CONSUMER_KEY",
        "FLUTTERWAVE_SECRET_KEY",
        "FLUTTERWAVE_WEBHOOK_HASH",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "PAYPAL_ENVIRONMENT",
        "PAYPAL_CLIENT_ID",
        "BANK_TRANSFER_API_KEY",
        "BANK_TRANSFER_WEBHOOK_SECRET",
    ],
    settings,
)
# Local SQLite runs without migrations; Postgres deployments run alembic first.
Base.metadata.create_all(bind=engine)

http = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
clients = build_gateway_clients(http, settings, registry)
store = SqlOrderStore(SessionLocal)
orchestrator = PaymentOrchestrator(clients, registry, AttemptLedger(SessionLocal))
bank_transfer = build_bank_transfer_client(settings, registry)
reconciler = NotificationReconciler(store, clients, SessionLocal, bank_transfer=bank_transfer)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Close the shared outbound HTTP pool with the app."""

    yield
    for client in clients.values():
        await client.aclose()
    await http.aclose()
    logger.info("gateway clients closed")


app = create_app(orchestrator, reconciler, store, registry, lifespan=lifespan, bank_transfer=bank_transfer)
instrument_app(app)
