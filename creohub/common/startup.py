"""Boot-time diagnostics: redacted config and which providers can take payments."""

import os

from creohub.common.config import CommonSettings
from creohub.common.logging import logger


SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "PASSKEY", "HASH")

# Settings a provider cannot authenticate without.
PROVIDER_CREDENTIALS = {
    "mpesa": ("mpesa_consumer_key", "mpesa_consumer_secret", "mpesa_passkey"),
    "pesapal": ("pesapal_consumer_key", "pesapal_consumer_secret"),
    "flutterwave": ("flutterwave_secret_key",),
    "stripe": ("stripe_secret_key",),
    "paypal": ("paypal_client_id", "paypal_client_secret"),
    "bank_transfer": ("bank_accounts",),
}


def _safe_env(name: str) -> str:
    """Return env value, redacted when the name looks like a credential."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def provider_readiness(s: CommonSettings) -> dict[str, bool]:
    """Which providers have every credential they need; missing ones fail on first use."""

    return {
        provider: all(getattr(s, field) for field in fields)
        for provider, fields in PROVIDER_CREDENTIALS.items()
    }


def log_startup_config(service_name: str, keys: list[str], s: CommonSettings | None = None) -> None:
    """Log selected env keys plus provider readiness for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)
    if s is not None:
        readiness = provider_readiness(s)
        missing = sorted(provider for provider, ready in readiness.items() if not ready)
        if missing:
            logger.warning("providers_not_configured=%s", ",".join(missing))
        logger.info("provider_readiness=%s", readiness)
