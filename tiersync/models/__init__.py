"""TierSync - Database Models"""

from tiersync.models.user import User
from tiersync.models.checkout_session import CheckoutSession
from tiersync.models.payment import Payment

__all__ = ["User", "CheckoutSession", "Payment"]
