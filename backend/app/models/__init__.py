from .base import Base
from .boost_queue import BoostQueueEntry, BoostStatus, CategoryQueue
from .business import Business, BusinessOwner
from .category import Category
from .subscription import RefundStatus, Subscription, SubscriptionStatus, SubscriptionType

__all__ = [
    "Base",
    "BoostQueueEntry",
    "BoostStatus",
    "Business",
    "BusinessOwner",
    "Category",
    "CategoryQueue",
    "RefundStatus",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionType",
]
