"""Exceptions raised by the billing subsystem."""
from __future__ import annotations


class BillingError(Exception):
    """Base class for billing failures that abort an operation."""


class WebhookSignatureError(BillingError):
    """The webhook body could not be authenticated against the signing secret."""


class InvalidEventMetadataError(BillingError, ValueError):
    """An event is missing the correlation metadata required to apply it.

    Retrying will not help; the event is recorded as failed for manual follow-up.
    """


class ConcurrentModificationError(BillingError):
    """A compare-and-swap write lost to a concurrent writer of the same row."""

    def __init__(self, user_id: str, expected_version: object) -> None:
        super().__init__(
            f"Subscription for user {user_id} changed concurrently (expected version {expected_version})"
        )
        self.user_id = user_id
        self.expected_version = expected_version


class ProviderError(BillingError):
    """An outbound call to the payment provider failed."""


__all__ = [
    "BillingError",
    "ConcurrentModificationError",
    "InvalidEventMetadataError",
    "ProviderError",
    "WebhookSignatureError",
]
