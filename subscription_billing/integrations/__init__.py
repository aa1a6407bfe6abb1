"""Payment provider integrations."""
from .stripe_webhook import StripeWebhookReceiver, translate_event_type

__all__ = ["StripeWebhookReceiver", "translate_event_type"]
