"""Checkout bounded context: multi-currency, multi-rail checkout orchestration.

Partitions carts into currency groups, creates provider-specific payment
attempts idempotently, reconciles provider confirmations, and converts fully
settled carts into orders with compensating refunds where needed.
"""

import structlog
from protean.domain import Domain

from checkout.utils.logging import configure_logging

configure_logging()

checkout = Domain(name="checkout")

logger = structlog.get_logger(__name__)
