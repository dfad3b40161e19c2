# =============================================================================
# Subscription Webhook - Pytest Fixtures Configuration
# =============================================================================

import time

import pytest

from app import create_app
from app.extensions import db
from app.models.user import User
from app.models.subscription import Subscription, SubscriptionStatus


USER_ID = '3f1c2a4e-8b9d-4c7e-a1f2-0d9e8c7b6a51'
OTHER_USER_ID = '9a7b6c5d-4e3f-4a2b-9c1d-0e2f3a4b5c6d'
PERIOD_END = 1767225600  # 2026-01-01 00:00:00 UTC


# =============================================================================
# Application Fixtures
# =============================================================================

@pytest.fixture(scope='function')
def app():
    """Create and configure test application with SQLite in-memory database."""
    application = create_app('testing')

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Test client for HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """CLI test runner."""
    return app.test_cli_runner()


# =============================================================================
# User Fixtures
# =============================================================================

@pytest.fixture
def user(app):
    """User whose id checkout sessions send as client_reference_id."""
    record = User(id=USER_ID, email='Jane.Doe@Example.com', full_name='Jane Doe')
    db.session.add(record)
    db.session.commit()
    db.session.expire_all()
    return db.session.get(User, USER_ID)


@pytest.fixture
def other_user(app):
    """A second, unrelated user."""
    record = User(id=OTHER_USER_ID, email='someone@example.com', full_name='Someone Else')
    db.session.add(record)
    db.session.commit()
    db.session.expire_all()
    return db.session.get(User, OTHER_USER_ID)


# =============================================================================
# Subscription Fixtures
# =============================================================================

@pytest.fixture
def active_subscription(app, user):
    """Active subscription sub_existing for customer cus_123."""
    record = Subscription(
        user_id=user.id,
        stripe_customer_id='cus_123',
        stripe_subscription_id='sub_existing',
        status=SubscriptionStatus.ACTIVE,
        price_id='price_pro',
        cancel_at_period_end=False,
    )
    db.session.add(record)
    db.session.commit()
    return record


# =============================================================================
# Stripe payload helpers
# =============================================================================

def stripe_subscription(sub_id='sub_new', customer='cus_123', status='active',
                        period_end=PERIOD_END, cancel_at_period_end=False,
                        price_id='price_pro'):
    """Subscription object as returned by the Stripe API / sent in events."""
    items = []
    if price_id:
        items.append({'id': f'si_{sub_id}', 'price': {'id': price_id}, 'quantity': 1})
    return {
        'id': sub_id,
        'object': 'subscription',
        'customer': customer,
        'status': status,
        'current_period_end': period_end,
        'cancel_at_period_end': cancel_at_period_end,
        'items': {'object': 'list', 'data': items},
    }


def checkout_session(subscription='sub_new', customer='cus_123',
                     client_reference_id=USER_ID, email=None):
    """checkout.session.completed payload object."""
    return {
        'id': 'cs_test_123',
        'object': 'checkout.session',
        'client_reference_id': client_reference_id,
        'customer': customer,
        'subscription': subscription,
        'customer_details': {'email': email} if email else None,
        'customer_email': None,
        'payment_status': 'paid',
    }


def stripe_event(event_type, obj, event_id=None):
    """Stripe event envelope."""
    return {
        'id': event_id or f'evt_{int(time.time() * 1000)}',
        'object': 'event',
        'type': event_type,
        'data': {'object': obj},
    }
