"""Models package."""

from .credit_ledger import CreditLedgerEntry, CreditsSource
from .credits_account import CreditsAccount
from .subscription import Subscription
from .stripe_event import StripeEvent
from .user_role import UserRole
