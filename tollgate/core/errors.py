from __future__ import annotations


class TollgateError(Exception):
    """Base error for Tollgate."""


class WebhookConfigError(TollgateError):
    """Webhook signing secret missing or unusable."""


class WebhookHeadersMissingError(TollgateError):
    """Required webhook transport headers are absent."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"missing_required_headers:{','.join(missing)}")
        self.missing = missing


class SubscriberIdentityMissingError(TollgateError):
    """Webhook payload does not carry a usable subscriber id."""


class UnknownSubscriptionStatusError(TollgateError):
    """Provider reported a subscription status with no internal mapping."""


class BillingProviderError(TollgateError):
    """Billing provider API request failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BillingSubscriptionNotFoundError(BillingProviderError):
    """Provider confirmed the subscriber has no billing subscription."""

    def __init__(self, subscriber_id: str) -> None:
        super().__init__(f"No billing subscription for subscriber {subscriber_id}", status_code=404)
        self.subscriber_id = subscriber_id


class RateLimitExceeded(TollgateError):
    """AI admission denied; carries enough structure to render a retry time."""

    def __init__(
        self,
        *,
        kind: str,
        operation: str,
        reset_at_ms: int,
        retry_after_ms: int,
        detail: str,
        cost_remaining: float | None = None,
    ) -> None:
        super().__init__(detail)
        self.kind = kind
        self.operation = operation
        self.reset_at_ms = reset_at_ms
        self.retry_after_ms = retry_after_ms
        self.detail = detail
        self.cost_remaining = cost_remaining
