"""Inventory service factory.

Provides get_inventory() / set_inventory() to swap implementations:
- FakeInventory for development and testing
- HttpInventory for the real catalog service
"""

from checkout.config import get_settings
from checkout.inventory.port import InventoryPort

_current_inventory: InventoryPort | None = None


def get_inventory() -> InventoryPort:
    """Return the current inventory adapter. Defaults to FakeInventory."""
    global _current_inventory
    if _current_inventory is None:
        settings = get_settings()
        if settings.inventory_adapter == "fake":
            from checkout.inventory.fake_adapter import FakeInventory

            _current_inventory = FakeInventory()
        else:
            from checkout.inventory.http_adapter import HttpInventory

            _current_inventory = HttpInventory(
                base_url=settings.inventory_base_url,
                timeout=settings.provider_timeout_seconds,
            )
    return _current_inventory


def set_inventory(inventory: InventoryPort) -> None:
    """Override the active inventory adapter (useful for tests)."""
    global _current_inventory
    _current_inventory = inventory


def reset_inventory() -> None:
    """Reset to default inventory adapter."""
    global _current_inventory
    _current_inventory = None
