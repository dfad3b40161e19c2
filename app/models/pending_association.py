"""
Durable pending association between a Stripe subscription and its owner.
Used by the 'database' pending-association backend.
"""
from datetime import datetime

from app.extensions import db


class PendingAssociation(db.Model):
    """Subscription id -> customer (and user, once checkout named one)."""

    __tablename__ = 'pending_associations'

    stripe_subscription_id = db.Column(db.String(255), primary_key=True)
    stripe_customer_id = db.Column(db.String(255), nullable=False)
    user_id = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f'<PendingAssociation {self.stripe_subscription_id} user={self.user_id}>'
