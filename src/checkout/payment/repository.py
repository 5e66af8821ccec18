"""Repository for the PaymentAttempt aggregate."""

from datetime import datetime

from checkout.domain import checkout
from checkout.payment.attempt import AttemptStatus, PaymentAttempt


@checkout.repository(part_of=PaymentAttempt)
class PaymentAttemptRepository:
    def _first(self, **filters) -> PaymentAttempt | None:
        items = self._dao.query.filter(**filters).all().items
        return items[0] if items else None

    def find_by_idempotency_key(self, idempotency_key: str) -> PaymentAttempt | None:
        return self._first(idempotency_key=idempotency_key)

    def find_by_reference(self, provider: str, external_reference: str) -> PaymentAttempt | None:
        return self._first(provider=provider, external_reference=external_reference)

    def find_by_tx_hash(self, tx_hash: str) -> PaymentAttempt | None:
        return self._first(tx_hash=tx_hash.lower())

    def for_cart(self, cart_id) -> list[PaymentAttempt]:
        """All attempts of a cart, oldest first."""
        attempts = self._dao.query.filter(cart_id=str(cart_id)).all().items
        return sorted(attempts, key=lambda a: a.created_at)

    def due_for_poll(self, now: datetime, limit: int) -> list[PaymentAttempt]:
        """Attempts awaiting confirmation whose next poll time has passed."""
        awaiting = self._dao.query.filter(status=AttemptStatus.AWAITING_CONFIRMATION.value).all().items
        due = [a for a in awaiting if a.next_poll_at is None or a.next_poll_at <= now]
        return sorted(due, key=lambda a: a.next_poll_at or a.created_at)[:limit]
