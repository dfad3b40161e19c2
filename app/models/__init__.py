"""
SQLAlchemy models.
All models are imported here for easy access.
"""
from app.models.user import User
from app.models.subscription import Subscription, SubscriptionStatus, LIVE_STATUSES
from app.models.pending_association import PendingAssociation

__all__ = [
    'User',
    'Subscription',
    'SubscriptionStatus',
    'LIVE_STATUSES',
    'PendingAssociation',
]
