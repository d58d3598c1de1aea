"""Manual bank transfer rail.

Nothing is submitted to a provider. The payer receives the details of one of
the configured receiving accounts plus a `BT_...` transfer id; the order stays
`pending` until an operator (or the bank's notification) confirms the money
arrived.
"""

import hmac
import secrets
import string
import time
from decimal import Decimal
from typing import Callable

from pydantic import BaseModel, ConfigDict, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from creohub.common.config import CommonSettings, settings
from creohub.common.errors import ConfigurationError, SignatureVerificationError, ValidationError
from creohub.common.logging import logger
from creohub.common.state_machine import OrderPaymentStatus
from creohub.currency.registry import CurrencyRegistry, registry as default_registry
from creohub.services.gateways.base import Provider


PENDING_CONFIRMATION = "pending_confirmation"
TRANSFER_ID_ALPHABET = string.ascii_lowercase + string.digits

TRANSFER_STATUS_MAP = {
    "verified": OrderPaymentStatus.COMPLETED,
    "completed": OrderPaymentStatus.COMPLETED,
    "successful": OrderPaymentStatus.COMPLETED,
    "failed": OrderPaymentStatus.FAILED,
    "rejected": OrderPaymentStatus.FAILED,
    "reversed": OrderPaymentStatus.FAILED,
}


class BankAccount(BaseModel):
    """Receiving account shown to the payer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    bank_name: str
    account_number: str
    account_name: str
    routing_number: str | None = None
    swift_code: str | None = None
    branch: str | None = None
    currency: str | None = None


class BankTransferConfig(BaseModel):
    accounts: list[BankAccount] = []
    api_key: str = ""
    webhook_secret: str = ""

    @classmethod
    def from_settings(cls, s: CommonSettings = settings) -> "BankTransferConfig":
        return cls(
            accounts=parse_bank_accounts(s.bank_accounts),
            api_key=s.bank_transfer_api_key,
            webhook_secret=s.bank_transfer_webhook_secret,
        )


class BankTransferInstructions(BaseModel):
    """What the payer needs to make the transfer themselves."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    transfer_id: str
    bank_details: BankAccount
    amount: Decimal
    currency: str
    reference: str
    instructions: str
    status: str = PENDING_CONFIRMATION


def parse_bank_accounts(raw: str) -> list[BankAccount]:
    """`BANK_ACCOUNTS` is a JSON list; a bad value disables the rail instead of the service."""

    if not raw.strip():
        return []
    try:
        return TypeAdapter(list[BankAccount]).validate_json(raw)
    except PydanticValidationError as exc:
        logger.error("bank_accounts_unparseable error=%s", exc)
        return []


def map_transfer_status(status: str | None) -> OrderPaymentStatus:
    return TRANSFER_STATUS_MAP.get((status or "").strip().lower(), OrderPaymentStatus.PENDING)


def _base36(length: int) -> str:
    return "".join(secrets.choice(TRANSFER_ID_ALPHABET) for _ in range(length))


class BankTransferClient:
    """Hands out transfer instructions and guards the two confirmation channels."""

    provider = Provider.BANK_TRANSFER

    def __init__(
        self,
        config: BankTransferConfig,
        *,
        currencies: CurrencyRegistry = default_registry,
        millis: Callable[[], int] | None = None,
    ) -> None:
        self.config = config
        self.currencies = currencies
        self.millis = millis or (lambda: int(time.time() * 1000))

    def accounts(self) -> list[BankAccount]:
        return list(self.config.accounts)

    def select_account(self, currency: str) -> BankAccount:
        """First account in the transfer currency, else the first account listed."""

        if not self.config.accounts:
            raise ConfigurationError("Bank accounts not configured", provider=self.provider.value)
        for account in self.config.accounts:
            if account.currency and account.currency.upper() == currency.upper():
                return account
        return self.config.accounts[0]

    def new_transfer_id(self) -> str:
        return f"BT_{self.millis()}_{_base36(9)}"

    def instructions(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        transfer_id: str | None = None,
    ) -> BankTransferInstructions:
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero", provider=self.provider.value)
        code = self.currencies.get(currency).code
        account = self.select_account(code)
        return BankTransferInstructions(
            transfer_id=transfer_id or self.new_transfer_id(),
            bank_details=account,
            amount=amount,
            currency=code,
            reference=reference,
            instructions=(
                f"Please transfer {amount} {code} to the account details provided. "
                f"Use reference: {reference}"
            ),
        )

    def check_operator_key(self, api_key: str | None) -> None:
        """Manual confirmation marks money as received, so it needs the operator key."""

        if not self.config.api_key:
            raise ConfigurationError("BANK_TRANSFER_API_KEY not configured", provider=self.provider.value)
        if not api_key or not hmac.compare_digest(api_key, self.config.api_key):
            raise SignatureVerificationError("operator key mismatch", provider=self.provider.value)

    def verify_webhook_secret(self, secret: str | None) -> bool:
        # An unset secret rejects every notification.
        if not self.config.webhook_secret or not secret:
            return False
        return hmac.compare_digest(secret, self.config.webhook_secret)
