from marketplace.models.user import User
from marketplace.models.booking import Booking
from marketplace.models.escrow import Escrow
from marketplace.models.escrow_transaction import EscrowTransaction
from marketplace.models.payout import Payout
from marketplace.models.webhook_event import WebhookEvent
from marketplace.models.notification import Notification

__all__ = [
    "User",
    "Booking",
    "Escrow",
    "EscrowTransaction",
    "Payout",
    "WebhookEvent",
    "Notification",
]
