"""
Identity resolution for Stripe checkouts.
Works out which existing user a completed checkout belongs to.
"""
import re
from typing import Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from app.models.user import User
from app.services.errors import IdentityResolutionError, PersistenceError

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE,
)


class IdentityService:
    """Resolve and validate user ids coming from checkout sessions."""

    @staticmethod
    def looks_like_user_id(value: Optional[str]) -> bool:
        """Check that a value has the UUID shape used for user ids."""
        return bool(value) and bool(UUID_PATTERN.match(value))

    @staticmethod
    def find_user_id_by_email(email: str) -> Optional[str]:
        """Look up a user id by case-insensitive email.

        Args:
            email: Email from the checkout session

        Returns:
            The user id, or None if no user has this email
        """
        current_app.logger.info('Looking up user by email: %s', email)
        try:
            user = User.find_by_email(email)
        except SQLAlchemyError as e:
            raise PersistenceError(f'Failed to look up user by email: {e}') from e

        if not user:
            current_app.logger.info('No user found with email: %s', email)
            return None

        current_app.logger.info('Found user %s by email %s', user.id, email)
        return user.id

    @staticmethod
    def user_exists(user_id: str) -> bool:
        try:
            return User.exists(user_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f'Failed to validate user id: {e}') from e

    @staticmethod
    def resolve_user_id(candidate_id: Optional[str], email: Optional[str]) -> str:
        """Resolve the user a checkout belongs to.

        Order, first success wins:
        1. A UUID-shaped candidate id is accepted provisionally.
        2. Otherwise the user is looked up by email.
        3. The chosen id must exist; if it does not, the email lookup is
           retried once.

        Args:
            candidate_id: client_reference_id from the checkout session
            email: customer email from the checkout session

        Returns:
            An id of an existing user

        Raises:
            IdentityResolutionError: If no existing user can be matched
        """
        user_id = candidate_id if IdentityService.looks_like_user_id(candidate_id) else None

        if user_id is None:
            current_app.logger.info(
                'Invalid or missing client_reference_id %r, trying to find user by email',
                candidate_id,
            )
            if not email:
                raise IdentityResolutionError('No email to identify user')
            user_id = IdentityService.find_user_id_by_email(email)
            if user_id is None:
                raise IdentityResolutionError('User not found')

        if IdentityService.user_exists(user_id):
            current_app.logger.info('Confirmed user id %s exists', user_id)
            return user_id

        current_app.logger.warning('User id %s not found in database', user_id)
        if not email:
            raise IdentityResolutionError('User ID not valid and no email to retry')

        fallback_id = IdentityService.find_user_id_by_email(email)
        if fallback_id is None:
            raise IdentityResolutionError('User ID not valid')

        current_app.logger.info('Found alternative user id %s by email', fallback_id)
        return fallback_id
