"""
Stripe webhook reconciliation.
Verifies incoming events and applies the matching subscription state change.
"""
import enum
from dataclasses import dataclass, field
from typing import Optional

import stripe
from flask import current_app

from app.extensions import pending_associations
from app.services.errors import (
    DuplicateSubscriptionError,
    IdentityResolutionError,
    SignatureVerificationError,
    ValidationError,
)
from app.services.identity_service import IdentityService
from app.services.subscription_service import SubscriptionService, as_plain_dict


class Outcome(str, enum.Enum):
    """What happened to an event."""
    OK = 'ok'
    DEFERRED = 'deferred'   # stored until the matching checkout arrives
    IGNORED = 'ignored'     # event type not handled
    BLOCKED = 'blocked'     # duplicate subscription cancelled
    REJECTED = 'rejected'   # event unusable, operator attention needed
    FAILED = 'failed'       # acknowledged despite a processing error


@dataclass(frozen=True)
class ReconcileResult:
    """Structured result of reconciling one event."""
    event_type: str
    outcome: Outcome
    subscription_id: Optional[str] = None
    message: Optional[str] = None
    warning: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def handled(self) -> bool:
        return self.outcome in (Outcome.OK, Outcome.DEFERRED, Outcome.BLOCKED)

    def to_dict(self) -> dict:
        data = {
            'event_type': self.event_type,
            'status': self.outcome.value,
            'handled': self.handled,
        }
        if self.subscription_id:
            data['subscription_id'] = self.subscription_id
        if self.message:
            data['message'] = self.message
        if self.warning:
            data['warning'] = self.warning
        data.update(self.details)
        return data


CHECKOUT_COMPLETED = 'checkout.session.completed'
SUBSCRIPTION_CREATED = 'customer.subscription.created'
SUBSCRIPTION_DELETED = 'customer.subscription.deleted'
SUBSCRIPTION_UPDATE_EVENTS = frozenset({
    'customer.subscription.updated',
    'customer.subscription.pending_update_applied',
    'customer.subscription.pending_update_expired',
    'customer.subscription.trial_will_end',
})


def _object_id(value) -> Optional[str]:
    """Stripe sends either an id or an expanded object for references."""
    if value is None or isinstance(value, str):
        return value
    return value.get('id')


class WebhookService:
    """Entry point for Stripe webhook events."""

    @staticmethod
    def construct_event(payload: bytes, sig_header: str):
        """Verify the Stripe signature and parse the event.

        Raises:
            SignatureVerificationError: If the payload cannot be trusted
        """
        webhook_secret = current_app.config.get('STRIPE_WEBHOOK_SECRET')
        if not webhook_secret:
            raise SignatureVerificationError('Webhook secret is not configured')
        if not sig_header:
            raise SignatureVerificationError('Missing Stripe-Signature header')

        try:
            event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError('Webhook signature verification failed') from e
        except ValueError as e:
            raise SignatureVerificationError(f'Invalid webhook payload: {e}') from e
        return as_plain_dict(event)

    @staticmethod
    def handle_webhook_event(payload: bytes, sig_header: str) -> ReconcileResult:
        """Handle an incoming Stripe webhook request.

        Args:
            payload: Raw request body
            sig_header: Stripe-Signature header value

        Returns:
            ReconcileResult describing what was done

        Raises:
            SignatureVerificationError: If signature verification fails
            WebhookError: For failures on events other than checkout completion
        """
        event = WebhookService.construct_event(payload, sig_header)
        return WebhookService.dispatch(event)

    @staticmethod
    def dispatch(event) -> ReconcileResult:
        """Route a verified event to its handler."""
        event = as_plain_dict(event)
        event_type = event['type']
        data = event['data']['object']
        current_app.logger.info(
            'Event received: %s (event=%s, object=%s, object_type=%s)',
            event_type, event.get('id'), data.get('id'), data.get('object'),
        )

        if event_type == CHECKOUT_COMPLETED:
            return WebhookService._handle_checkout_completed(data)

        if event_type == SUBSCRIPTION_CREATED:
            return WebhookService._handle_subscription_created(data)

        if event_type in SUBSCRIPTION_UPDATE_EVENTS:
            return WebhookService._handle_subscription_updated(event_type, data)

        if event_type == SUBSCRIPTION_DELETED:
            return WebhookService._handle_subscription_deleted(data)

        return ReconcileResult(event_type=event_type, outcome=Outcome.IGNORED)

    # =========================================================================
    # Handlers
    # =========================================================================

    @staticmethod
    def _handle_checkout_completed(session) -> ReconcileResult:
        """Process checkout.session.completed.

        Malformed sessions and unknown users are rejected so an operator
        notices. Every other failure is logged and acknowledged, so Stripe
        does not keep redelivering an event that cannot succeed.
        """
        subscription_id = _object_id(session.get('subscription'))
        customer_id = _object_id(session.get('customer'))
        customer_details = session.get('customer_details') or {}
        email = customer_details.get('email') or session.get('customer_email')

        current_app.logger.info(
            'Processing checkout session %s (client_reference_id=%s, customer=%s, '
            'subscription=%s, email=%s, payment_status=%s)',
            session.get('id'), session.get('client_reference_id'), customer_id,
            subscription_id, email, session.get('payment_status'),
        )

        try:
            if not subscription_id:
                raise ValidationError('Missing subscription ID')
            if not customer_id:
                raise ValidationError('Missing customer ID')

            user_id = IdentityService.resolve_user_id(session.get('client_reference_id'), email)
        except (ValidationError, IdentityResolutionError) as e:
            current_app.logger.warning('Rejected checkout session %s: %s', session.get('id'), e.message)
            return ReconcileResult(
                event_type=CHECKOUT_COMPLETED,
                outcome=Outcome.REJECTED,
                subscription_id=subscription_id,
                message=e.message,
            )
        except Exception:
            current_app.logger.exception('Failed to resolve user for checkout session %s', session.get('id'))
            return WebhookService._checkout_failed(subscription_id)

        try:
            try:
                SubscriptionService.ensure_single_live_subscription(customer_id, subscription_id)
            except DuplicateSubscriptionError as e:
                return WebhookService._block_duplicate(CHECKOUT_COMPLETED, e)

            pending_associations.remember_owner(subscription_id, user_id, customer_id)
            subscription = SubscriptionService.upsert_subscription(subscription_id, user_id, customer_id)
            pending_associations.discard(subscription_id)
        except Exception:
            current_app.logger.exception(
                'Failed to process checkout session %s', session.get('id')
            )
            return WebhookService._checkout_failed(subscription_id)

        return ReconcileResult(
            event_type=CHECKOUT_COMPLETED,
            outcome=Outcome.OK,
            subscription_id=subscription_id,
            details={'user_id': subscription.user_id, 'subscription': subscription.to_dict()},
        )

    @staticmethod
    def _checkout_failed(subscription_id: Optional[str]) -> ReconcileResult:
        return ReconcileResult(
            event_type=CHECKOUT_COMPLETED,
            outcome=Outcome.FAILED,
            subscription_id=subscription_id,
            warning='Error processing checkout session',
        )

    @staticmethod
    def _block_duplicate(event_type: str, error: DuplicateSubscriptionError) -> ReconcileResult:
        """Cancel a second live subscription at Stripe and drop anything pending for it."""
        current_app.logger.warning(
            'Duplicate subscription attempt blocked (customer=%s, existing=%s, new=%s)',
            error.customer_id, error.existing_subscription_id, error.subscription_id,
        )
        SubscriptionService.cancel_provider_subscription(error.subscription_id)
        pending_associations.discard(error.subscription_id)
        return ReconcileResult(
            event_type=event_type,
            outcome=Outcome.BLOCKED,
            subscription_id=error.subscription_id,
            message=error.message,
        )

    @staticmethod
    def _handle_subscription_created(sub_data) -> ReconcileResult:
        """Process customer.subscription.created.

        Completes the link if checkout already named the user. If checkout
        already stored the subscription there is nothing to do; otherwise the
        customer is stashed until checkout arrives.
        """
        subscription_id = sub_data.get('id')
        customer_id = _object_id(sub_data.get('customer'))
        if not subscription_id or not customer_id:
            raise ValidationError('Missing subscription or customer ID')

        entry = pending_associations.get(subscription_id)
        if entry is not None and entry.is_linked:
            try:
                SubscriptionService.ensure_single_live_subscription(entry.customer_id, subscription_id)
            except DuplicateSubscriptionError as e:
                return WebhookService._block_duplicate(SUBSCRIPTION_CREATED, e)

            subscription = SubscriptionService.upsert_subscription(
                subscription_id, entry.user_id, entry.customer_id
            )
            pending_associations.discard(subscription_id)
            current_app.logger.info('Linked subscription %s from pending checkout', subscription_id)
            return ReconcileResult(
                event_type=SUBSCRIPTION_CREATED,
                outcome=Outcome.OK,
                subscription_id=subscription_id,
                details={'user_id': entry.user_id, 'subscription': subscription.to_dict()},
            )

        if SubscriptionService.find_subscription(subscription_id) is not None:
            if entry is not None:
                pending_associations.discard(subscription_id)
            current_app.logger.info('Subscription %s already recorded by checkout', subscription_id)
            return ReconcileResult(
                event_type=SUBSCRIPTION_CREATED,
                outcome=Outcome.OK,
                subscription_id=subscription_id,
                details={'updated': False},
            )

        pending_associations.remember_customer(subscription_id, customer_id)
        current_app.logger.info(
            'Subscription %s created before checkout, waiting for owner', subscription_id
        )
        return ReconcileResult(
            event_type=SUBSCRIPTION_CREATED,
            outcome=Outcome.DEFERRED,
            subscription_id=subscription_id,
        )

    @staticmethod
    def _subscription_result(event_type: str, sub_data, record) -> ReconcileResult:
        details = {'updated': record is not None}
        if record is not None:
            details['subscription'] = record.to_dict()
        return ReconcileResult(
            event_type=event_type,
            outcome=Outcome.OK,
            subscription_id=sub_data.get('id'),
            details=details,
        )

    @staticmethod
    def _handle_subscription_updated(event_type: str, sub_data) -> ReconcileResult:
        record = SubscriptionService.update_from_event(sub_data)
        return WebhookService._subscription_result(event_type, sub_data, record)

    @staticmethod
    def _handle_subscription_deleted(sub_data) -> ReconcileResult:
        record = SubscriptionService.mark_deleted(sub_data)
        if record is not None:
            current_app.logger.info(
                'Subscription %s ended with status %s', record.stripe_subscription_id, record.status.value
            )
        return WebhookService._subscription_result(SUBSCRIPTION_DELETED, sub_data, record)
