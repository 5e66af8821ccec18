"""On-chain settlement verifier for NFT-class items.

There is no provider-side payment object: ``initiate`` tells the wallet where
and how much to pay, and ``confirm`` inspects the submitted transaction on
chain. A transaction counts once it succeeded, pays the merchant address at
least the expected amount (native value or an ERC-20 Transfer log) and sits
under enough blocks.
"""

import hashlib
import hmac
import json
from decimal import ROUND_HALF_UP, Decimal

import structlog

from checkout.config import get_settings
from checkout.errors import (
    ChainVerificationFailed,
    ConfirmationTimeout,
    IntentCreationFailed,
    MalformedCallback,
    RefundNotSupported,
    TransientProviderError,
    WebhookVerificationError,
)
from checkout.gateway.chain import (
    SUPPORTED_CHAIN_IDS,
    ChainClient,
    is_address,
    is_tx_hash,
)
from checkout.gateway.port import (
    AttemptRef,
    CallbackResult,
    ConfirmResult,
    IntentResult,
    ProviderAdapter,
    ProviderStatus,
    RefundResult,
)
from checkout.utils.retry import provider_retrying

logger = structlog.get_logger(__name__)

NATIVE_CURRENCY = {1: "ETH", 5: "ETH", 137: "MATIC", 80001: "MATIC"}
DECIMALS = {"ETH": 18, "MATIC": 18, "USDC": 6, "USDT": 6}
SIGNATURE_HEADER = "x-chain-signature"


def to_base_units(amount: Decimal, currency: str) -> int:
    scaled = Decimal(amount) * (Decimal(10) ** DECIMALS[currency])
    return int(scaled.to_integral_value(rounding=ROUND_HALF_UP))


def from_base_units(value: int, currency: str) -> Decimal:
    return Decimal(value) / (Decimal(10) ** DECIMALS[currency])


class OnchainAdapter(ProviderAdapter):
    """Verifies EVM payments to the merchant wallet."""

    rail = "onchain"

    def __init__(
        self,
        chain: ChainClient,
        payee_address: str | None = None,
        chain_id: int | None = None,
        min_confirmations: int | None = None,
        token_contracts: dict[str, str] | None = None,
        webhook_secret: str | None = None,
    ) -> None:
        settings = get_settings()
        self.chain = chain
        payee = payee_address or settings.onchain_payee_address
        # an address with a broken checksum is treated as not configured
        self.payee = payee.lower() if is_address(payee) else ""
        self.chain_id = chain_id or settings.onchain_chain_id
        self.min_confirmations = min_confirmations or settings.onchain_min_confirmations
        self.token_contracts = {
            k: v.lower() for k, v in (token_contracts or settings.onchain_token_contracts).items()
        }
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.onchain_webhook_secret

        if self.chain_id not in SUPPORTED_CHAIN_IDS:
            raise ValueError(f"Unsupported chain id {self.chain_id}")

    def _token_contract(self, currency: str) -> str | None:
        return self.token_contracts.get(f"{self.chain_id}:{currency}")

    def _is_native(self, currency: str) -> bool:
        return NATIVE_CURRENCY[self.chain_id] == currency

    def initiate(self, amount, currency, metadata, idempotency_key) -> IntentResult:
        if not self.payee:
            raise IntentCreationFailed("Merchant wallet is not configured", provider=self.rail)
        if currency not in DECIMALS:
            raise IntentCreationFailed(f"{currency} cannot be settled on chain", provider=self.rail)

        payload = {
            "chain_id": self.chain_id,
            "payee": self.payee,
            "currency": currency,
            "amount": str(amount),
            "amount_base_units": str(to_base_units(amount, currency)),
        }
        if not self._is_native(currency):
            token = self._token_contract(currency)
            if token is None:
                raise IntentCreationFailed(
                    f"No {currency} contract configured for chain {self.chain_id}", provider=self.rail
                )
            payload["token_contract"] = token

        return IntentResult(external_reference=f"onchain_{idempotency_key[:24]}", client_payload=payload)

    def _paid_amount(self, attempt: AttemptRef, tx: dict, receipt: dict) -> int:
        if self._is_native(attempt.currency):
            if tx["to"] != self.payee:
                return 0
            return tx["value"]

        token = self._token_contract(attempt.currency)
        return sum(
            transfer["value"]
            for transfer in receipt["transfers"]
            if transfer["token"] == token and transfer["to"] == self.payee
        )

    def _read_chain(self, tx_hash: str):
        tx = self.chain.get_transaction(tx_hash)
        receipt = self.chain.get_receipt(tx_hash)
        head = self.chain.block_number()
        return tx, receipt, head

    def confirm(self, attempt: AttemptRef) -> ConfirmResult:
        if not attempt.tx_hash:
            return ConfirmResult(status=ProviderStatus.PENDING.value)
        if not is_tx_hash(attempt.tx_hash):
            raise ChainVerificationFailed("Malformed transaction hash", tx_hash=attempt.tx_hash)

        try:
            tx, receipt, head = provider_retrying()(self._read_chain, attempt.tx_hash)
        except TransientProviderError as exc:
            raise ConfirmationTimeout("Chain RPC did not answer", provider=self.rail) from exc

        if tx is None or receipt is None:
            logger.info("onchain_tx_not_mined", tx_hash=attempt.tx_hash)
            return ConfirmResult(status=ProviderStatus.PENDING.value)

        if receipt["status"] != 1:
            raise ChainVerificationFailed("Transaction reverted", tx_hash=attempt.tx_hash)

        expected = to_base_units(attempt.amount, attempt.currency)
        paid = self._paid_amount(attempt, tx, receipt)
        if paid == 0:
            raise ChainVerificationFailed("Transaction does not pay the merchant", tx_hash=attempt.tx_hash)
        if paid < expected:
            raise ChainVerificationFailed(
                "Transaction pays less than the amount due",
                tx_hash=attempt.tx_hash,
                expected=str(expected),
                paid=str(paid),
            )

        confirmations = head - receipt["block_number"] + 1
        if confirmations < self.min_confirmations:
            logger.info(
                "onchain_tx_awaiting_depth",
                tx_hash=attempt.tx_hash,
                confirmations=confirmations,
                required=self.min_confirmations,
            )
            return ConfirmResult(status=ProviderStatus.PENDING.value, provider_transaction_id=attempt.tx_hash)

        return ConfirmResult(
            status=ProviderStatus.SUCCEEDED.value,
            settled_amount=from_base_units(paid, attempt.currency),
            provider_transaction_id=attempt.tx_hash,
        )

    def accept_callback(self, raw_body: bytes, headers: dict) -> CallbackResult:
        signature = {k.lower(): v for k, v in headers.items()}.get(SIGNATURE_HEADER)
        if not self.webhook_secret or not signature:
            raise WebhookVerificationError("Missing chain callback signature", provider=self.rail)
        computed = hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(computed, signature):
            raise WebhookVerificationError("Invalid chain callback signature", provider=self.rail)

        try:
            payload = json.loads(raw_body)
            tx_hash = payload.get("tx_hash")
            if tx_hash is not None and not is_tx_hash(tx_hash):
                raise ValueError("tx_hash")
            return CallbackResult(
                external_reference=payload["reference"],
                status=ProviderStatus.PENDING.value,
                currency=payload.get("currency"),
                tx_hash=tx_hash.lower() if tx_hash else None,
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise MalformedCallback("Invalid chain callback payload", provider=self.rail) from exc

    def refund(self, attempt: AttemptRef, amount, reason, idempotency_key) -> RefundResult:
        raise RefundNotSupported(
            "On-chain payments cannot be refunded automatically",
            reference=attempt.external_reference,
            amount=str(amount),
        )
