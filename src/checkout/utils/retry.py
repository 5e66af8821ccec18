"""Exponential backoff policies shared by adapters and refund issuance."""

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from checkout.config import get_settings
from checkout.errors import TransientProviderError


def provider_retrying(attempts: int | None = None) -> Retrying:
    """Retry transient provider errors with exponential backoff, then re-raise."""
    settings = get_settings()
    return Retrying(
        retry=retry_if_exception_type(TransientProviderError),
        stop=stop_after_attempt(attempts or settings.provider_retry_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_base_delay,
            max=settings.retry_max_delay,
        ),
        reraise=True,
    )


def next_poll_delay(poll_count: int) -> float:
    """Seconds until the next background re-poll of an unconfirmed attempt."""
    settings = get_settings()
    return min(settings.repoll_base_delay * (2 ** max(poll_count - 1, 0)), settings.repoll_max_delay)
