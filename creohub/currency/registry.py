"""Supported currencies, USD-pivot conversion, display formatting and detection.

Rates are approximate units of each currency per 1 USD. Every pair converts
through USD, so adding a currency only needs its USD rate.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Mapping

from pydantic import BaseModel, ConfigDict

from creohub.common.errors import UnknownCurrencyError
from creohub.common.logging import logger


Amount = Decimal | int | float | str


class CurrencyInfo(BaseModel):
    """One row of the static currency table."""

    model_config = ConfigDict(frozen=True)

    code: str
    symbol: str
    name: str
    countries: frozenset[str]
    exchange_rate: Decimal


def _currency(code: str, symbol: str, name: str, countries: list[str], rate: str) -> CurrencyInfo:
    return CurrencyInfo(
        code=code,
        symbol=symbol,
        name=name,
        countries=frozenset(countries),
        exchange_rate=Decimal(rate),
    )


SUPPORTED_CURRENCIES: dict[str, CurrencyInfo] = {
    info.code: info
    for info in [
        _currency("USD", "$", "US Dollar", ["US", "PR", "VG", "VI"], "1"),
        _currency("KES", "KSh", "Kenyan Shilling", ["KE"], "150"),
        _currency("NGN", "₦", "Nigerian Naira", ["NG"], "800"),
        _currency("ZAR", "R", "South African Rand", ["ZA"], "18"),
        _currency("GHS", "₵", "Ghanaian Cedi", ["GH"], "12"),
        _currency("EGP", "£", "Egyptian Pound", ["EG"], "31"),
        _currency(
            "EUR",
            "€",
            "Euro",
            ["DE", "FR", "IT", "ES", "NL", "BE", "AT", "IE", "PT", "FI", "GR"],
            "0.92",
        ),
        _currency("GBP", "£", "British Pound", ["GB"], "0.79"),
        _currency("CAD", "C$", "Canadian Dollar", ["CA"], "1.35"),
        _currency("AUD", "A$", "Australian Dollar", ["AU"], "1.52"),
        _currency(
            "XOF",
            "CFA",
            "West African CFA Franc",
            ["SN", "CI", "BF", "ML", "NE", "TG", "BJ", "GW"],
            "600",
        ),
        _currency("XAF", "FCFA", "Central African CFA Franc", ["CM", "CF", "TD", "CG", "GQ", "GA"], "600"),
        _currency("MAD", "DH", "Moroccan Dirham", ["MA"], "10"),
        _currency("TND", "د.ت", "Tunisian Dinar", ["TN"], "3.1"),
        _currency("ETB", "Br", "Ethiopian Birr", ["ET"], "55"),
        _currency("UGX", "USh", "Ugandan Shilling", ["UG"], "3700"),
        _currency("TZS", "TSh", "Tanzanian Shilling", ["TZ"], "2500"),
        _currency("RWF", "RF", "Rwandan Franc", ["RW"], "1300"),
    ]
}

# Currencies that card processors expect without a fractional part.
ZERO_DECIMAL_CURRENCIES = frozenset({"XOF", "XAF", "UGX", "RWF"})

TIMEZONE_COUNTRIES: dict[str, str] = {
    "Africa/Nairobi": "KE",
    "Africa/Lagos": "NG",
    "Africa/Johannesburg": "ZA",
    "Africa/Accra": "GH",
    "Africa/Cairo": "EG",
    "America/New_York": "US",
    "America/Los_Angeles": "US",
    "America/Chicago": "US",
    "America/Toronto": "CA",
    "Europe/London": "GB",
    "Europe/Berlin": "DE",
    "Europe/Paris": "FR",
    "Australia/Sydney": "AU",
}

DEFAULT_CURRENCY = "USD"
CENTS = Decimal("0.01")


def _to_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    # str() first so floats keep their printed value instead of binary noise.
    return Decimal(str(amount))


class CurrencyRegistry:
    """Pure lookups and arithmetic over an immutable currency table."""

    def __init__(self, currencies: Mapping[str, CurrencyInfo] | None = None) -> None:
        self._currencies = dict(currencies if currencies is not None else SUPPORTED_CURRENCIES)
        self._country_map: dict[str, str] = {}
        for info in self._currencies.values():
            for country in info.countries:
                self._country_map.setdefault(country, info.code)

    def codes(self) -> list[str]:
        return sorted(self._currencies)

    def all(self) -> list[CurrencyInfo]:
        return [self._currencies[code] for code in self.codes()]

    def is_supported(self, code: str | None) -> bool:
        return bool(code) and code.upper() in self._currencies

    def get(self, code: str) -> CurrencyInfo:
        info = self._currencies.get((code or "").upper())
        if info is None:
            raise UnknownCurrencyError(code)
        return info

    def symbol(self, code: str) -> str:
        info = self._currencies.get((code or "").upper())
        return info.symbol if info else code

    def convert(self, amount: Amount, from_code: str, to_code: str) -> Decimal:
        """Convert through the USD pivot: `amount / rate[from] * rate[to]`."""

        source = self.get(from_code)
        target = self.get(to_code)
        value = _to_decimal(amount)
        if source.code == target.code:
            return value
        return value / source.exchange_rate * target.exchange_rate

    def convert_or_usd(self, amount: Amount, from_code: str, to_code: str) -> Decimal:
        """Caller-side fallback that treats unknown codes as USD-equivalent."""

        value = _to_decimal(amount)
        if from_code == to_code:
            return value
        from_rate = self._rate_or_usd(from_code)
        to_rate = self._rate_or_usd(to_code)
        return value / from_rate * to_rate

    def _rate_or_usd(self, code: str) -> Decimal:
        try:
            return self.get(code).exchange_rate
        except UnknownCurrencyError:
            logger.warning("unknown_currency_treated_as_usd code=%s", code)
            return Decimal(1)

    def format(self, amount: Amount, code: str) -> str:
        """Render `amount` with the currency symbol and en-US digit grouping."""

        info = self._currencies.get((code or "").upper())
        if info is None:
            return f"{amount} {code}"
        try:
            value = _to_decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)
            sign = "-" if value < 0 else ""
            return f"{sign}{info.symbol}{abs(value):,}"
        except (InvalidOperation, ValueError):
            return f"{info.symbol}{amount}"

    def detect_from_country(self, country_code: str | None) -> str:
        if not country_code:
            return DEFAULT_CURRENCY
        return self._country_map.get(country_code.strip().upper(), DEFAULT_CURRENCY)

    def detect_from_locale(self, locale: str | None) -> str:
        """Use the region subtag of `en-KE`, `sw_KE` or `en_KE.UTF-8`."""

        if not locale:
            return DEFAULT_CURRENCY
        tag = locale.split(".", 1)[0].replace("_", "-")
        parts = [part for part in tag.split("-") if part]
        for part in parts[1:]:
            if len(part) == 2 and part.isalpha():
                return self.detect_from_country(part)
        return DEFAULT_CURRENCY

    def detect_from_timezone(self, timezone_name: str | None) -> str:
        return self.detect_from_country(TIMEZONE_COUNTRIES.get(timezone_name or ""))

    def minor_units(self, code: str) -> int:
        return 0 if self.get(code).code in ZERO_DECIMAL_CURRENCIES else 2

    def to_minor_units(self, amount: Amount, code: str) -> int:
        """Integer amount in the currency's smallest unit (cents, or whole francs)."""

        exponent = Decimal(10) ** self.minor_units(code)
        return int((_to_decimal(amount) * exponent).quantize(Decimal(1), rounding=ROUND_HALF_UP))


registry = CurrencyRegistry()

convert = registry.convert
format_amount = registry.format
detect_from_country = registry.detect_from_country
detect_from_locale = registry.detect_from_locale
detect_from_timezone = registry.detect_from_timezone
