"""
Subscription model.
One row per Stripe subscription, kept in sync by the webhook reconciler.
"""
import enum
from datetime import datetime

from app.extensions import db


class SubscriptionStatus(str, enum.Enum):
    """Stripe-aligned subscription statuses."""
    ACTIVE = 'active'
    TRIALING = 'trialing'
    PAST_DUE = 'past_due'
    CANCELED = 'canceled'
    INCOMPLETE = 'incomplete'
    INCOMPLETE_EXPIRED = 'incomplete_expired'
    UNPAID = 'unpaid'
    PAUSED = 'paused'


# Statuses that count as "the customer is already subscribed"
LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class Subscription(db.Model):
    """Local mirror of a Stripe subscription."""

    __tablename__ = 'subscriptions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.String(36),
        db.ForeignKey('users.id'),
        nullable=False,
        index=True,
    )

    # Stripe IDs
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=False, index=True,
    )
    stripe_customer_id = db.Column(db.String(255), nullable=False, index=True)

    status = db.Column(
        db.Enum(SubscriptionStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    price_id = db.Column(db.String(255), nullable=False)

    # Billing period
    current_period_end = db.Column(db.DateTime, nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    user = db.relationship('User', backref=db.backref('subscriptions', lazy='dynamic'))

    def __repr__(self):
        return f'<Subscription {self.stripe_subscription_id} status={self.status.value}>'

    @classmethod
    def get_by_stripe_id(cls, stripe_subscription_id):
        return cls.query.filter_by(stripe_subscription_id=stripe_subscription_id).first()

    def to_dict(self):
        """Serialize subscription to dict."""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'stripe_customer_id': self.stripe_customer_id,
            'stripe_subscription_id': self.stripe_subscription_id,
            'status': self.status.value,
            'price_id': self.price_id,
            'current_period_end': self.current_period_end.isoformat() if self.current_period_end else None,
            'cancel_at_period_end': self.cancel_at_period_end,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
