"""
Pending associations between Stripe subscriptions and their owners.

`checkout.session.completed` names the user, `customer.subscription.created`
does not, and Stripe delivers the two in either order. Whichever arrives
first leaves an entry here keyed by subscription id; the other consumes it.

Two backends:
    memory    process-local dict, lost on restart
    database  `pending_associations` table, shared by all workers
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.services.errors import PersistenceError


@dataclass(frozen=True)
class PendingEntry:
    """One pending association. `user_id` is None until checkout names the user."""
    subscription_id: str
    customer_id: str
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_linked(self) -> bool:
        return bool(self.user_id)


class MemoryBackend:
    """Unsynchronized in-process store."""

    # Expired entries are dropped on every write
    prune_on_write = True

    def __init__(self):
        self._entries: Dict[str, PendingEntry] = {}

    def get(self, subscription_id: str) -> Optional[PendingEntry]:
        return self._entries.get(subscription_id)

    def put(self, entry: PendingEntry) -> None:
        self._entries[entry.subscription_id] = entry

    def discard(self, subscription_id: str) -> None:
        self._entries.pop(subscription_id, None)

    def prune(self, cutoff: datetime) -> int:
        expired = [k for k, e in self._entries.items() if e.created_at < cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)


class DatabaseBackend:
    """Store backed by the `pending_associations` table."""

    prune_on_write = False

    def get(self, subscription_id: str) -> Optional[PendingEntry]:
        from app.extensions import db
        from app.models.pending_association import PendingAssociation

        try:
            row = db.session.get(PendingAssociation, subscription_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f'Failed to read pending association: {e}') from e
        if row is None:
            return None
        return PendingEntry(
            subscription_id=row.stripe_subscription_id,
            customer_id=row.stripe_customer_id,
            user_id=row.user_id,
            created_at=row.created_at,
        )

    def put(self, entry: PendingEntry) -> None:
        from app.extensions import db
        from app.models.pending_association import PendingAssociation

        try:
            db.session.merge(PendingAssociation(
                stripe_subscription_id=entry.subscription_id,
                stripe_customer_id=entry.customer_id,
                user_id=entry.user_id,
                created_at=entry.created_at,
            ))
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f'Failed to store pending association: {e}') from e

    def discard(self, subscription_id: str) -> None:
        from app.extensions import db
        from app.models.pending_association import PendingAssociation

        try:
            PendingAssociation.query.filter_by(stripe_subscription_id=subscription_id).delete()
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f'Failed to discard pending association: {e}') from e

    def prune(self, cutoff: datetime) -> int:
        from app.extensions import db
        from app.models.pending_association import PendingAssociation

        try:
            count = PendingAssociation.query.filter(
                PendingAssociation.created_at < cutoff
            ).delete(synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f'Failed to prune pending associations: {e}') from e
        return count


BACKENDS = {
    'memory': MemoryBackend,
    'database': DatabaseBackend,
}


class PendingAssociations:
    """Flask extension exposing the configured pending-association backend."""

    def __init__(self, app=None):
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        name = app.config.get('PENDING_ASSOCIATION_BACKEND', 'memory')
        if name not in BACKENDS:
            raise ValueError(
                f"Unknown PENDING_ASSOCIATION_BACKEND '{name}'. "
                f"Expected one of: {', '.join(sorted(BACKENDS))}"
            )
        app.extensions['pending_associations'] = BACKENDS[name]()

    @property
    def backend(self):
        from flask import current_app
        return current_app.extensions['pending_associations']

    @staticmethod
    def _ttl() -> Optional[timedelta]:
        from flask import current_app
        seconds = current_app.config.get('PENDING_ASSOCIATION_TTL_SECONDS') or 0
        return timedelta(seconds=seconds) if seconds > 0 else None

    def get(self, subscription_id: str) -> Optional[PendingEntry]:
        """Return the live entry for a subscription, dropping it if expired."""
        entry = self.backend.get(subscription_id)
        if entry is None:
            return None
        ttl = self._ttl()
        if ttl and entry.created_at and entry.created_at < datetime.utcnow() - ttl:
            self.backend.discard(subscription_id)
            return None
        return entry

    def remember_customer(self, subscription_id: str, customer_id: str) -> PendingEntry:
        """Stash the customer of a subscription whose owner is not known yet."""
        entry = PendingEntry(
            subscription_id=subscription_id,
            customer_id=customer_id,
            created_at=datetime.utcnow(),
        )
        self._put(entry)
        return entry

    def remember_owner(self, subscription_id: str, user_id: str, customer_id: str) -> PendingEntry:
        """Record the user a checkout resolved for this subscription."""
        entry = PendingEntry(
            subscription_id=subscription_id,
            customer_id=customer_id,
            user_id=user_id,
            created_at=datetime.utcnow(),
        )
        self._put(entry)
        return entry

    def _put(self, entry: PendingEntry) -> None:
        if self.backend.prune_on_write:
            self.prune()
        self.backend.put(entry)

    def discard(self, subscription_id: str) -> None:
        self.backend.discard(subscription_id)

    def prune(self) -> int:
        """Delete expired entries. Returns the number removed."""
        ttl = self._ttl()
        if ttl is None:
            return 0
        return self.backend.prune(datetime.utcnow() - ttl)
