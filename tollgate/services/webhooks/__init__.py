from __future__ import annotations

# Re-export webhook services for centralized imports.

from tollgate.services.webhooks.events import (
    SubscriptionSnapshot,
    WebhookAction,
    WebhookEvent,
    clerk_snapshot_from_subscription,
    parse_clerk_event,
    parse_polar_event,
)
from tollgate.services.webhooks.idempotency import build_idempotency_key, normalize_timestamp_ms
from tollgate.services.webhooks.reconciler import ReconcileOutcome, WebhookReconciler, get_webhook_reconciler
from tollgate.services.webhooks.signatures import (
    SvixHeaders,
    VerificationResult,
    compute_signature,
    compute_svix_signature,
    parse_svix_headers,
    verify_signature,
    verify_svix_signature,
)
