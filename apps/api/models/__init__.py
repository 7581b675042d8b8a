"""Models package."""

from .account import Account
from .credit_transaction import CreditTransaction
from .generation import Generation
from .payment import Payment
