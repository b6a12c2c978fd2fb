"""CryptoScope — Database Models"""

from app.models.user import User
from app.models.subscription import Subscription
from app.models.crypto_payment import CryptoPayment

__all__ = ["User", "Subscription", "CryptoPayment"]
