"""Checkout service settings loaded from the environment.

Protean infrastructure (databases, brokers, event store) is configured in
``domain.toml``. Everything the checkout orchestration itself needs, such as
provider credentials, retry bounds and the on-chain payee, lives here.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TOKEN_CONTRACTS = {
    # Ethereum mainnet
    "1:USDC": "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48",
    "1:USDT": "0xdac17f958d2ee523a2206206994597c13d831ec7",
    # Polygon PoS
    "137:USDC": "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359",
    "137:USDT": "0xc2132d05d31c914a87c6611c10748aeb04b58e8f",
}


class Settings(BaseSettings):
    """Application settings loaded from CHECKOUT_* environment variables."""

    # Adapter selection: "fake" for development/tests, "live" for real providers
    adapters: str = Field(default="fake", description="Provider adapter mode (fake/live)")

    # Card gateway (Stripe)
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")

    # Mobile money gateway (Flutterwave)
    flutterwave_secret_key: str = Field(default="", description="Flutterwave secret key")
    flutterwave_secret_hash: str = Field(default="", description="Flutterwave webhook secret hash")
    flutterwave_base_url: str = Field(default="https://api.flutterwave.com/v3")
    flutterwave_redirect_url: str = Field(default="", description="Where Flutterwave returns the customer")

    # On-chain settlement
    onchain_rpc_url: str = Field(default="", description="EVM JSON-RPC endpoint")
    onchain_chain_id: int = Field(default=1, description="EVM chain id (1, 5, 137, 80001)")
    onchain_payee_address: str = Field(default="", description="Merchant wallet receiving payments")
    onchain_min_confirmations: int = Field(default=12, ge=1)
    onchain_webhook_secret: str = Field(default="", description="HMAC secret for chain indexer callbacks")
    onchain_token_contracts: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_TOKEN_CONTRACTS))

    # Inventory / catalog service
    inventory_adapter: str = Field(default="fake", description="Inventory adapter (fake/http)")
    inventory_base_url: str = Field(default="http://localhost:8100")

    # Provider call behaviour
    provider_timeout_seconds: float = Field(default=10.0, gt=0)
    provider_retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=8.0, ge=0)
    refund_retry_attempts: int = Field(default=5, ge=1)

    # Background re-poll of attempts awaiting confirmation
    repoll_base_delay: float = Field(default=15.0, ge=0)
    repoll_max_delay: float = Field(default=900.0, ge=0)
    repoll_batch_size: int = Field(default=100, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="CHECKOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("adapters", "inventory_adapter")
    @classmethod
    def validate_adapter_mode(cls, v: str) -> str:
        if v.lower() not in ("fake", "live", "http"):
            raise ValueError("Adapter mode must be one of: fake, live, http")
        return v.lower()

    @field_validator("onchain_payee_address")
    @classmethod
    def normalise_payee(cls, v: str) -> str:
        # case is kept so the adapter can check an EIP-55 checksum
        return v.strip()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
