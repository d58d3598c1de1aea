"""Shared fixtures: an in-memory database and a scripted provider HTTP stub."""

import os

# The process-wide engine is built at import time; keep it off disk under test.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import json
from typing import Any, Callable

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from creohub.common.db import Base
import creohub.services.orchestrator.models  # noqa: F401
import creohub.services.orders.models  # noqa: F401
import creohub.services.reconciler.models  # noqa: F401


class ProviderStub:
    """Routes requests by `(method, path suffix)` to scripted JSON replies and records every call."""

    def __init__(self) -> None:
        self.routes: list[tuple[str, str, Any]] = []
        self.calls: list[httpx.Request] = []

    def on(self, method: str, path: str, reply: Any, status_code: int = 200) -> "ProviderStub":
        if not callable(reply):
            body = reply
            reply = lambda _request: (status_code, body)  # noqa: E731
        self.routes.insert(0, (method, path, reply))
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        for method, path, reply in self.routes:
            if request.method == method and request.url.path.endswith(path):
                outcome = reply(request)
                if isinstance(outcome, httpx.Response):
                    return outcome
                status_code, body = outcome
                if isinstance(body, str):
                    return httpx.Response(status_code, text=body)
                return httpx.Response(status_code, json=body)
        return httpx.Response(404, json={"error": f"no stub for {request.method} {request.url.path}"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def count(self, path: str) -> int:
        return sum(1 for request in self.calls if request.url.path.endswith(path))

    def last_json(self, path: str) -> dict[str, Any]:
        for request in reversed(self.calls):
            if request.url.path.endswith(path):
                return json.loads(request.content)
        raise AssertionError(f"no call to {path}")


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def stub() -> ProviderStub:
    return ProviderStub()


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> Callable[[], float]:
    return FakeClock()


@pytest.fixture
def pesapal_client(stub, clock):
    from creohub.services.gateways.base import TokenCache
    from creohub.services.gateways.pesapal import PesapalClient, PesapalConfig

    config = PesapalConfig(
        consumer_key="ck",
        consumer_secret="cs",
        ipn_url="https://creohub.test/api/payments/customer/pesapal/ipn",
        callback_url="https://creohub.test/api/payments/customer/pesapal/callback",
    )
    return PesapalClient(config, stub.client(), timeout=5.0, token_cache=TokenCache(60, clock=clock))


@pytest.fixture
def mpesa_client(stub):
    from datetime import datetime, timezone

    from creohub.services.gateways.mpesa import MpesaClient, MpesaConfig

    config = MpesaConfig(
        consumer_key="ck",
        consumer_secret="cs",
        business_short_code="174379",
        passkey="passkey",
        callback_url="https://creohub.test/api/payments/customer/mpesa/callback",
    )
    return MpesaClient(
        config,
        stub.client(),
        timeout=5.0,
        clock=lambda: datetime(2024, 3, 1, 9, 30, 15, tzinfo=timezone.utc),
    )


@pytest.fixture
def flutterwave_client(stub):
    from creohub.services.gateways.flutterwave import FlutterwaveClient, FlutterwaveConfig

    config = FlutterwaveConfig(
        public_key="FLWPUBK_TEST",
        secret_key="FLWSECK_TEST",
        webhook_hash="s3cret-hash",
        public_base_url="https://creohub.test",
    )
    return FlutterwaveClient(config, stub.client(), timeout=5.0, millis=lambda: 1700000000000)


@pytest.fixture
def stripe_client():
    from creohub.services.gateways.stripe_gateway import StripeClient, StripeConfig

    return StripeClient(StripeConfig(secret_key="sk_test_123", webhook_secret="whsec_test"), timeout=5.0)


@pytest.fixture
def paypal_client(stub):
    from creohub.services.gateways.paypal import PaypalClient, PaypalConfig

    config = PaypalConfig(client_id="cid", client_secret="csecret", public_base_url="https://creohub.test")
    return PaypalClient(config, stub.client(), timeout=5.0)


@pytest.fixture
def bank_transfer_client():
    from creohub.services.gateways.bank_transfer import BankAccount, BankTransferClient, BankTransferConfig

    config = BankTransferConfig(
        accounts=[
            BankAccount(bank_name="Equity Bank Kenya", account_number="0123456789", account_name="Creohub Limited"),
            BankAccount(
                bank_name="Standard Chartered Bank",
                account_number="8901234567",
                account_name="Creohub Limited",
                swift_code="SCBLKENX",
                currency="USD",
            ),
        ],
        api_key="ops-key",
        webhook_secret="bt-secret",
    )
    return BankTransferClient(config, millis=lambda: 1700000000000)


@pytest.fixture
def gateway_clients(pesapal_client, mpesa_client, flutterwave_client, stripe_client, paypal_client):
    from creohub.services.gateways.base import Provider

    return {
        Provider.PESAPAL: pesapal_client,
        Provider.MPESA: mpesa_client,
        Provider.FLUTTERWAVE: flutterwave_client,
        Provider.STRIPE: stripe_client,
        Provider.PAYPAL: paypal_client,
    }
