"""Central environment-driven settings for the payments service.

The process loads this once at startup. Provider credentials and endpoints are
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "creohub-payments"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./creohub_payments.db"
    otel_exporter_otlp_endpoint: str = ""
    public_base_url: str = "http://localhost:5000"
    http_timeout_seconds: float = 20.0
    token_safety_margin_seconds: int = 60

    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_business_short_code: str = "174379"
    mpesa_passkey: str = "bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919"
    mpesa_callback_url: str = "http://localhost:5000/api/payments/customer/mpesa/callback"
    mpesa_environment: str = "sandbox"

    pesapal_consumer_key: str = ""
    pesapal_consumer_secret: str = ""
    pesapal_ipn_url: str = "http://localhost:5000/api/payments/customer/pesapal/ipn"
    pesapal_callback_url: str = "http://localhost:5000/api/payments/customer/pesapal/callback"
    pesapal_environment: str = "sandbox"

    flutterwave_public_key: str = ""
    flutterwave_secret_key: str = ""
    flutterwave_encryption_key: str = ""
    flutterwave_environment: str = "sandbox"
    flutterwave_webhook_hash: str = ""

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300

    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_environment: str = "sandbox"

    # JSON list of receiving accounts, e.g. [{"bankName": "...", "accountNumber": "...", "accountName": "..."}]
    bank_accounts: str = ""
    bank_transfer_api_key: str = ""
    bank_transfer_webhook_secret: str = ""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
