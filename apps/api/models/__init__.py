"""Models package."""

from .user import User
from .credit_balance import CreditBalance
from .credit_log import CreditLogEntry
from .subscription import Subscription
from .payment_order import PaymentOrder
from .processed_payment import ProcessedPayment
