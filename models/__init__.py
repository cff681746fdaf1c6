from .billing import (  # noqa: F401
    BillingOrder,
    BillingSubscription,
    BillingWebhookEventLog,
    RefundEvent,
    RefundRequest,
)
