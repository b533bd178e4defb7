"""External integrations for settlement."""
from .stripe_client import StripeClient, StripeError

__all__ = ["StripeClient", "StripeError"]
