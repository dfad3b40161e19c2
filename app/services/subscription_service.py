"""
Subscription service.
Keeps local subscription rows consistent with Stripe's authoritative state.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import stripe
from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.extensions import db
from app.models.subscription import Subscription, SubscriptionStatus, LIVE_STATUSES
from app.services.errors import (
    DuplicateSubscriptionError,
    IdentityResolutionError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from app.services.identity_service import IdentityService


def as_plain_dict(obj):
    """Convert a StripeObject (not a dict subclass in current SDKs) to nested dicts."""
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return obj


def _timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.utcfromtimestamp(value)


def parse_status(value) -> SubscriptionStatus:
    """Map a Stripe status string onto SubscriptionStatus."""
    try:
        return SubscriptionStatus(value)
    except ValueError:
        raise ValidationError(f'Unknown subscription status: {value!r}')


@dataclass(frozen=True)
class ProviderSubscription:
    """The fields of a Stripe subscription the reconciler stores."""
    id: str
    customer_id: Optional[str]
    status: SubscriptionStatus
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    price_id: Optional[str]

    @classmethod
    def from_stripe(cls, data) -> 'ProviderSubscription':
        """Build from a Stripe subscription object or webhook payload."""
        data = as_plain_dict(data)
        items = (data.get('items') or {}).get('data') or []
        first_item = items[0] if items else {}

        # Newer API versions moved the billing period onto subscription items
        period_end = data.get('current_period_end') or first_item.get('current_period_end')

        price = first_item.get('price') or {}
        customer = data.get('customer')
        if customer is not None and not isinstance(customer, str):
            customer = customer.get('id')

        return cls(
            id=data.get('id'),
            customer_id=customer,
            status=parse_status(data.get('status')),
            current_period_end=_timestamp(period_end),
            cancel_at_period_end=bool(data.get('cancel_at_period_end', False)),
            price_id=price.get('id'),
        )


class SubscriptionService:
    """Service for reconciling subscription rows with Stripe."""

    # =========================================================================
    # Stripe API
    # =========================================================================

    @staticmethod
    def fetch_provider_subscription(subscription_id: str) -> ProviderSubscription:
        """Retrieve authoritative subscription details from Stripe.

        Raises:
            ProviderError: If the Stripe call fails
        """
        try:
            data = as_plain_dict(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            raise ProviderError(f'Failed to retrieve subscription {subscription_id}: {e}') from e
        current_app.logger.debug('Retrieved Stripe subscription %s', subscription_id)
        return ProviderSubscription.from_stripe(data)

    @staticmethod
    def cancel_provider_subscription(subscription_id: str) -> None:
        """Cancel a subscription on Stripe (compensating action for duplicates).

        Raises:
            ProviderError: If the Stripe call fails
        """
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise ProviderError(f'Failed to cancel subscription {subscription_id}: {e}') from e
        current_app.logger.info('Cancelled duplicate subscription %s', subscription_id)

    # =========================================================================
    # Duplicate prevention
    # =========================================================================

    @staticmethod
    def find_live_subscription(customer_id: str, exclude_subscription_id: Optional[str] = None):
        """Return the customer's active/trialing subscription, if any.

        Args:
            customer_id: Stripe customer id
            exclude_subscription_id: Subscription to ignore (the one being reconciled)
        """
        query = Subscription.query.filter(
            Subscription.stripe_customer_id == customer_id,
            Subscription.status.in_(LIVE_STATUSES),
        )
        if exclude_subscription_id:
            query = query.filter(Subscription.stripe_subscription_id != exclude_subscription_id)
        try:
            return query.first()
        except SQLAlchemyError as e:
            raise PersistenceError(f'Failed to check existing subscriptions: {e}') from e

    @staticmethod
    def ensure_single_live_subscription(customer_id: str, subscription_id: str) -> None:
        """Refuse a second live subscription for the same customer.

        A redelivered event for a subscription already on record is not a
        duplicate of itself.

        Raises:
            DuplicateSubscriptionError: If the customer already has one
        """
        existing = SubscriptionService.find_live_subscription(customer_id, subscription_id)
        if existing is not None:
            raise DuplicateSubscriptionError(
                customer_id=customer_id,
                subscription_id=subscription_id,
                existing_subscription_id=existing.stripe_subscription_id,
            )

    # =========================================================================
    # Upsert / update
    # =========================================================================

    @staticmethod
    def _apply(record: Subscription, details: ProviderSubscription) -> None:
        record.status = details.status
        record.current_period_end = details.current_period_end
        record.cancel_at_period_end = details.cancel_at_period_end
        record.updated_at = datetime.utcnow()

    @staticmethod
    def find_subscription(subscription_id: str) -> Optional[Subscription]:
        try:
            return Subscription.get_by_stripe_id(subscription_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f'Failed to read subscription {subscription_id}: {e}') from e

    @staticmethod
    def _commit(action: str) -> None:
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f'Failed to {action}: {e}') from e

    @staticmethod
    def upsert_subscription(subscription_id: str, user_id: str, customer_id: str) -> Subscription:
        """Create or refresh the local row for a Stripe subscription.

        Args:
            subscription_id: Stripe subscription id
            user_id: Owning user id (must exist)
            customer_id: Stripe customer id

        Returns:
            The created or updated Subscription

        Raises:
            ValidationError: If an argument is missing
            IdentityResolutionError: If the user does not exist
            ProviderError: If Stripe cannot be reached
            PersistenceError: If the store write fails
        """
        current_app.logger.info(
            'Upserting subscription %s (user=%s, customer=%s)',
            subscription_id, user_id, customer_id,
        )
        if not (subscription_id and user_id and customer_id):
            raise ValidationError('Missing required parameters for subscription upsert')

        if not IdentityService.user_exists(user_id):
            raise IdentityResolutionError(f'User ID {user_id} not found in database')

        details = SubscriptionService.fetch_provider_subscription(subscription_id)

        existing = SubscriptionService.find_subscription(subscription_id)
        if existing is not None:
            current_app.logger.info('Found existing subscription %s, updating', subscription_id)
            SubscriptionService._apply(existing, details)
            SubscriptionService._commit(f'update subscription {subscription_id}')
            return existing

        now = datetime.utcnow()
        record = Subscription(
            user_id=user_id,
            stripe_customer_id=customer_id,
            stripe_subscription_id=subscription_id,
            status=details.status,
            price_id=details.price_id or current_app.config['UNKNOWN_PRICE_ID'],
            current_period_end=details.current_period_end,
            cancel_at_period_end=details.cancel_at_period_end,
            created_at=now,
            updated_at=now,
        )
        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent delivery inserted the same subscription first
            db.session.rollback()
            current_app.logger.warning(
                'Subscription %s inserted concurrently, updating instead', subscription_id
            )
            existing = SubscriptionService.find_subscription(subscription_id)
            if existing is None:
                raise PersistenceError(f'Failed to insert subscription {subscription_id}')
            SubscriptionService._apply(existing, details)
            SubscriptionService._commit(f'update subscription {subscription_id}')
            return existing
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f'Failed to insert subscription {subscription_id}: {e}') from e

        try:
            verified = Subscription.get_by_stripe_id(subscription_id)
        except SQLAlchemyError as e:
            current_app.logger.warning('Failed to verify subscription %s: %s', subscription_id, e)
            verified = None
        if verified is None:
            current_app.logger.warning(
                'Subscription %s was written but could not be read back', subscription_id
            )
            return record

        current_app.logger.info('Created subscription %s for user %s', subscription_id, user_id)
        return verified

    @staticmethod
    def update_from_event(data) -> Optional[Subscription]:
        """Apply a subscription event payload to the matching row.

        Returns:
            The updated Subscription, or None if there is no row yet
        """
        details = ProviderSubscription.from_stripe(data)
        if not details.id:
            raise ValidationError('Missing subscription ID')

        record = SubscriptionService.find_subscription(details.id)
        if record is None:
            current_app.logger.info('No subscription %s on record, nothing to update', details.id)
            return None

        SubscriptionService._apply(record, details)
        SubscriptionService._commit(f'update subscription {details.id}')
        return record

    @staticmethod
    def mark_deleted(data) -> Optional[Subscription]:
        """Record that a subscription ended on Stripe.

        Status takes the provider's terminal status, the cancel flag is
        cleared and the period ends now. Rows are never deleted.

        Returns:
            The updated Subscription, or None if there is no row
        """
        subscription_id = data.get('id')
        if not subscription_id:
            raise ValidationError('Missing subscription ID')

        record = SubscriptionService.find_subscription(subscription_id)
        if record is None:
            current_app.logger.info('No subscription %s on record, nothing to delete', subscription_id)
            return None

        now = datetime.utcnow()
        record.status = parse_status(data.get('status') or SubscriptionStatus.CANCELED.value)
        record.cancel_at_period_end = False
        record.current_period_end = now
        record.updated_at = now
        SubscriptionService._commit(f'mark subscription {subscription_id} deleted')
        return record
