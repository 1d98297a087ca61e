# app/models/__init__.py
from app.models.balance import UserBalance
from app.models.credit import CreditTransaction, TransactionType
from app.models.subscription_credit import SubscriptionCredit, SubscriptionCreditStatus
from app.models.stripe_customer import StripeCustomer, MatchConfidence
from app.models.webhook_event import WebhookEvent, WebhookEventState
from app.models.face_swap import FaceSwapHistory

__all__ = [
    'UserBalance',
    'CreditTransaction',
    'TransactionType',
    'SubscriptionCredit',
    'SubscriptionCreditStatus',
    'StripeCustomer',
    'MatchConfidence',
    'WebhookEvent',
    'WebhookEventState',
    'FaceSwapHistory',
]
