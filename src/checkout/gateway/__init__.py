"""Payment provider factory.

Provides get_adapter() / set_adapter() to swap implementations per rail:
- FakeProviderAdapter for development and testing
- StripeCardAdapter, FlutterwaveAdapter and OnchainAdapter in live mode
"""

from checkout.config import get_settings
from checkout.gateway.fake_adapter import FakeProviderAdapter
from checkout.gateway.port import ProviderAdapter

RAILS = ("card", "mobile_money", "onchain")

_adapters: dict[str, ProviderAdapter] = {}


def _build_live_adapter(provider: str) -> ProviderAdapter:
    settings = get_settings()
    if provider == "card":
        from checkout.gateway.card_adapter import StripeCardAdapter

        return StripeCardAdapter()
    if provider == "mobile_money":
        from checkout.gateway.mobile_money_adapter import FlutterwaveAdapter

        return FlutterwaveAdapter()

    from checkout.gateway.chain import JsonRpcChainClient
    from checkout.gateway.onchain_adapter import OnchainAdapter

    return OnchainAdapter(
        chain=JsonRpcChainClient(settings.onchain_rpc_url, timeout=settings.provider_timeout_seconds)
    )


def get_adapter(provider: str) -> ProviderAdapter:
    """Return the adapter for a rail. Defaults to FakeProviderAdapter."""
    if provider not in RAILS:
        raise KeyError(provider)
    if provider not in _adapters:
        if get_settings().adapters == "live":
            _adapters[provider] = _build_live_adapter(provider)
        else:
            _adapters[provider] = FakeProviderAdapter(provider)
    return _adapters[provider]


def set_adapter(provider: str, adapter: ProviderAdapter) -> None:
    """Override the adapter for a rail (useful for tests)."""
    _adapters[provider] = adapter


def reset_adapters() -> None:
    """Reset every rail to its default adapter."""
    _adapters.clear()
