"""Build one client per provider from process settings."""

import httpx

from creohub.common.config import CommonSettings, settings
from creohub.currency.registry import CurrencyRegistry, registry as default_registry
from creohub.services.gateways.bank_transfer import BankTransferClient, BankTransferConfig
from creohub.services.gateways.base import GatewayClient, Provider
from creohub.services.gateways.flutterwave import FlutterwaveClient, FlutterwaveConfig
from creohub.services.gateways.mpesa import MpesaClient, MpesaConfig
from creohub.services.gateways.paypal import PaypalClient, PaypalConfig
from creohub.services.gateways.pesapal import PesapalClient, PesapalConfig
from creohub.services.gateways.stripe_gateway import StripeClient, StripeConfig


def build_gateway_clients(
    http: httpx.AsyncClient,
    s: CommonSettings = settings,
    currencies: CurrencyRegistry = default_registry,
) -> dict[Provider, GatewayClient]:
    """Clients are always built; missing credentials surface on first use."""

    timeout = s.http_timeout_seconds
    return {
        Provider.MPESA: MpesaClient(MpesaConfig.from_settings(s), http, timeout=timeout, currencies=currencies),
        Provider.PESAPAL: PesapalClient(PesapalConfig.from_settings(s), http, timeout=timeout),
        Provider.FLUTTERWAVE: FlutterwaveClient(FlutterwaveConfig.from_settings(s), http, timeout=timeout),
        Provider.STRIPE: StripeClient(StripeConfig.from_settings(s), timeout=timeout, currencies=currencies),
        Provider.PAYPAL: PaypalClient(PaypalConfig.from_settings(s), http, timeout=timeout, currencies=currencies),
    }


def build_bank_transfer_client(
    s: CommonSettings = settings,
    currencies: CurrencyRegistry = default_registry,
) -> BankTransferClient:
    return BankTransferClient(BankTransferConfig.from_settings(s), currencies=currencies)
